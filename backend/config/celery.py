# config/celery.py
import os
import logging
from celery import Celery
from celery.schedules import crontab
from celery.signals import before_task_publish, task_failure, task_postrun, task_prerun
from kombu import Queue

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('settlement')
app.config_from_object('django.conf:settings', namespace='CELERY')

# ------------------------------------------------------------------------------
# QUEUES
# Confirmation email is customer-facing; sweeps can wait behind it.
# ------------------------------------------------------------------------------
app.conf.task_queues = (
    Queue('default', routing_key='default'),
    Queue('high_priority', routing_key='high_priority'),
    Queue('low_priority', routing_key='low_priority'),
)
app.conf.task_default_queue = 'default'
app.conf.task_default_exchange = 'default'
app.conf.task_default_routing_key = 'default'

app.conf.task_routes = {
    'apps.notifications.tasks.send_order_confirmation_email': {'queue': 'high_priority'},
    'apps.payments.tasks.*': {'queue': 'default'},
    'apps.core.tasks.*': {'queue': 'default'},
    'apps.shipping.tasks.*': {'queue': 'low_priority'},
}

# A task is acknowledged only once it finished, so a killed worker hands it back
app.conf.task_acks_late = True
app.conf.task_reject_on_worker_lost = True
app.conf.worker_prefetch_multiplier = 1
app.conf.broker_connection_retry_on_startup = True

app.autodiscover_tasks()

# ------------------------------------------------------------------------------
# PERIODIC SWEEPS
# ------------------------------------------------------------------------------
app.conf.beat_schedule = {
    'reconcile-pending-payments': {
        'task': 'apps.payments.tasks.reconcile_pending_payments',
        'schedule': crontab(minute='*/10'),
    },
    'retry-draft-shipments': {
        'task': 'apps.shipping.tasks.retry_draft_shipments',
        'schedule': crontab(minute='*/15'),
    },
    'beat-heartbeat': {
        'task': 'apps.core.tasks.beat_heartbeat',
        'schedule': crontab(minute='*'),
    },
}

# ------------------------------------------------------------------------------
# CORRELATION: the id of the webhook/verify request follows its tasks
# ------------------------------------------------------------------------------
from apps.core.middleware import bind_correlation_id, get_correlation_id, reset_correlation_id  # noqa: E402

CORRELATION_HEADER = 'X-Request-ID'
_bound_tokens = {}


@before_task_publish.connect
def attach_correlation_id(headers=None, **kwargs):
    request_id = get_correlation_id()
    if headers is not None and request_id:
        headers[CORRELATION_HEADER] = request_id


@task_prerun.connect
def bind_task_correlation_id(task_id=None, task=None, **kwargs):
    if task is None:
        return
    headers = getattr(task.request, 'headers', None) or {}
    request_id = getattr(task.request, CORRELATION_HEADER, None) or headers.get(CORRELATION_HEADER)
    if request_id:
        _bound_tokens[task_id] = bind_correlation_id(request_id)


@task_postrun.connect
def unbind_task_correlation_id(task_id=None, **kwargs):
    token = _bound_tokens.pop(task_id, None)
    if token is not None:
        reset_correlation_id(token)


@task_prerun.connect
def close_stale_db_connections(**kwargs):
    """Workers outlive the DB connection timeout between sweeps."""
    from django.db import close_old_connections
    close_old_connections()


# ------------------------------------------------------------------------------
# DEAD LETTERS: a task out of retries is logged for manual replay
# ------------------------------------------------------------------------------
dlq_logger = logging.getLogger('celery.dlq')


@task_failure.connect
def log_dead_letter(sender=None, task_id=None, exception=None, args=None, kwargs=None, **opts):
    task_name = sender.name if sender else 'unknown_task'
    dlq_logger.critical(
        f"[DLQ] {task_name} ({task_id}) failed for good: {exception}",
        extra={
            'metadata': {
                'task_name': task_name,
                'task_id': task_id,
                'args': args,
                'exception': repr(exception),
            }
        }
    )
