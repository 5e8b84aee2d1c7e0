from .settings import *  # noqa: F401,F403

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": ":memory:",
    }
}

SECRET_KEY = "test-secret-key"
CELERY_TASK_ALWAYS_EAGER = True
CELERY_BROKER_URL = "memory://"
CELERY_RESULT_BACKEND = "cache+memory://"

TELEGRAM_ENABLED = False

EXCHANGE_RETRY_BASE_DELAY_SECONDS = 0.0
EXCHANGE_RETRY_MAX_DELAY_SECONDS = 0.0
RETRY_BASE_DELAY_SECONDS = 0.0
RETRY_MAX_DELAY_SECONDS = 0.0
RETRY_JITTER_SECONDS = 0.0
STORE_CONFLICT_BASE_DELAY_SECONDS = 0.0
STORE_CONFLICT_MAX_DELAY_SECONDS = 0.0
STORE_CONFLICT_JITTER_SECONDS = 0.0
RECONCILE_BATCH_PAUSE_SECONDS = 0.0
SCHEDULER_JITTER_SECONDS = 0.0

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "handlers": {"null": {"class": "logging.NullHandler"}},
    "root": {"handlers": ["null"], "level": "WARNING"},
}
