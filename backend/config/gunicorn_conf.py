# ==============================================================================
# GUNICORN CONFIGURATION
# gunicorn config.wsgi:application -c config/gunicorn_conf.py
# ==============================================================================

import os
import multiprocessing

# ==============================================================================
# WORKERS
# Verify/webhook requests block on carrier calls, so threads carry the load
# ==============================================================================
CPU_COUNT = multiprocessing.cpu_count()
workers = int(os.getenv("GUNICORN_WORKERS", CPU_COUNT + 1))
worker_class = "gthread"
threads = int(os.getenv("GUNICORN_THREADS", 4))

port = int(os.getenv("PORT", 8000))
bind = [f"0.0.0.0:{port}"]
proc_name = "settlement-api"

# Carrier order creation plus AWB fallbacks can take several round trips
timeout = int(os.getenv("GUNICORN_TIMEOUT", 90))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", 30))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", 5))

# ==============================================================================
# LOGGING (stdout/stderr for containers)
# ==============================================================================
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
access_log_format = '%(h)s %(t)s "%(r)s" %(s)s %(b)s %(D)s %({x-request-id}i)s'

max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", 1000))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", 100))
forwarded_allow_ips = "*"
preload_app = True


def when_ready(server):
    print(f"[GUNICORN] Ready: {workers} workers x {threads} threads on port {port}")


def on_exit(server):
    print("[GUNICORN] Server shutting down")
