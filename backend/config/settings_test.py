# config/settings_test.py
# Test settings: sqlite, local-memory cache, eager Celery, no external services
import os

os.environ.setdefault("DJANGO_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DJANGO_SECRET_KEY", "test-secret-key")
os.environ.pop("SENTRY_DSN", None)

from .settings import *  # noqa: E402,F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "settlement-tests",
    }
}

CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = None
CELERY_TASK_ALWAYS_EAGER = True
CELERY_TASK_EAGER_PROPAGATES = True

EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"
DEFAULT_FROM_EMAIL = "orders@example.com"

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "test_key_secret"
RAZORPAY_WEBHOOK_SECRET = "test_webhook_secret"

SHIPROCKET_BASE_URL = "https://carrier.test/v1/external"
SHIPROCKET_EMAIL = "ops@example.com"
SHIPROCKET_PASSWORD = "carrier-password"
SHIPROCKET_DEFAULT_HSN = "123456789"

# Carrier calls run inline so mocks and the test transaction are shared
SETTLEMENT_SHIPMENT_WORKERS = 1

STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
}
