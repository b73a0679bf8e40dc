# apps/payments/tasks.py
from celery import shared_task
from celery.utils.log import get_task_logger
from .services import ReconciliationService

logger = get_task_logger(__name__)

@shared_task
def reconcile_pending_payments():
    """
    Beat-driven (every 10 mins). Settles gateway orders that were paid
    but whose webhook and checkout callback both never arrived.
    """
    result = ReconciliationService().reconcile_stuck_payments()
    logger.info(f"Payment reconciliation: {result['checked']} checked, {result['settled']} settled")
    return result
