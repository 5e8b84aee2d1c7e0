from __future__ import annotations

import os
import warnings
from datetime import timedelta
from pathlib import Path

from celery.schedules import crontab
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent

DEBUG = os.getenv("DEBUG", "false").lower() == "true"
SECRET_KEY = os.getenv("SECRET_KEY", "changeme-in-prod")
if not DEBUG and SECRET_KEY.strip() in {"", "changeme-in-prod", "change-me"}:
    warnings.warn(
        "Insecure SECRET_KEY detected with DEBUG=false. Set a strong SECRET_KEY in environment.",
        RuntimeWarning,
    )
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "*").split(",") if h.strip()]

USE_SQLITE = os.getenv("USE_SQLITE", "false").lower() == "true"
AUTOPILOT_ENV_LABEL = os.getenv("AUTOPILOT_ENV_LABEL", "").strip()

# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------
BINANCE_TESTNET = os.getenv("BINANCE_TESTNET", "true").lower() == "true"
EXCHANGE_TIMEOUT_SECONDS = max(1.0, float(os.getenv("EXCHANGE_TIMEOUT_SECONDS", "10")))
EXCHANGE_RETRY_ATTEMPTS = max(1, min(10, int(os.getenv("EXCHANGE_RETRY_ATTEMPTS", "3"))))
EXCHANGE_RETRY_BASE_DELAY_SECONDS = max(0.0, float(os.getenv("EXCHANGE_RETRY_BASE_DELAY_SECONDS", "0.5")))
EXCHANGE_RETRY_MAX_DELAY_SECONDS = max(
    EXCHANGE_RETRY_BASE_DELAY_SECONDS,
    float(os.getenv("EXCHANGE_RETRY_MAX_DELAY_SECONDS", "8")),
)
TRADING_RULES_TTL_SECONDS = max(0, int(os.getenv("TRADING_RULES_TTL_SECONDS", "3600")))

# Generic retry defaults (core.retry)
RETRY_ATTEMPTS = max(1, int(os.getenv("RETRY_ATTEMPTS", "3")))
RETRY_BASE_DELAY_SECONDS = max(0.0, float(os.getenv("RETRY_BASE_DELAY_SECONDS", "0.5")))
RETRY_MAX_DELAY_SECONDS = max(0.0, float(os.getenv("RETRY_MAX_DELAY_SECONDS", "8")))
RETRY_JITTER_SECONDS = max(0.0, float(os.getenv("RETRY_JITTER_SECONDS", "0.25")))

# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------
SCHEDULER_TICK_SECONDS = max(1, int(os.getenv("SCHEDULER_TICK_SECONDS", "5")))
SCHEDULER_JITTER_SECONDS = max(0.0, float(os.getenv("SCHEDULER_JITTER_SECONDS", "5")))
SCHEDULER_RUN_TIMEOUT_SECONDS = max(5, int(os.getenv("SCHEDULER_RUN_TIMEOUT_SECONDS", "120")))
# slightly longer than a run may take, so a crashed holder frees the strategy soon after
SCHEDULER_LEASE_TTL_SECONDS = max(
    SCHEDULER_RUN_TIMEOUT_SECONDS + 1,
    int(os.getenv("SCHEDULER_LEASE_TTL_SECONDS", str(SCHEDULER_RUN_TIMEOUT_SECONDS + 30))),
)
SCHEDULER_LEASE_FAIL_OPEN = os.getenv("SCHEDULER_LEASE_FAIL_OPEN", "false").lower() == "true"
SCHEDULER_MAX_WORKERS = max(1, min(64, int(os.getenv("SCHEDULER_MAX_WORKERS", "4"))))
DECISION_TIMEOUT_SECONDS = max(0.1, float(os.getenv("DECISION_TIMEOUT_SECONDS", "5")))
DECISION_MAX_WORKERS = max(1, min(64, int(os.getenv("DECISION_MAX_WORKERS", "4"))))

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
STORE_CONFLICT_RETRIES = max(1, int(os.getenv("STORE_CONFLICT_RETRIES", "3")))
STORE_CONFLICT_BASE_DELAY_SECONDS = max(0.0, float(os.getenv("STORE_CONFLICT_BASE_DELAY_SECONDS", "0.05")))
STORE_CONFLICT_MAX_DELAY_SECONDS = max(0.0, float(os.getenv("STORE_CONFLICT_MAX_DELAY_SECONDS", "1.0")))
STORE_CONFLICT_JITTER_SECONDS = max(0.0, float(os.getenv("STORE_CONFLICT_JITTER_SECONDS", "0.05")))

# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------
RECONCILE_INTERVAL_SECONDS = max(1, int(os.getenv("RECONCILE_INTERVAL_SECONDS", "15")))
RECONCILE_BATCH_SIZE = max(1, min(500, int(os.getenv("RECONCILE_BATCH_SIZE", "20"))))
RECONCILE_BATCH_PAUSE_SECONDS = max(0.0, float(os.getenv("RECONCILE_BATCH_PAUSE_SECONDS", "1.0")))
RECONCILE_LOCK_KEY = os.getenv("RECONCILE_LOCK_KEY", "lock:reconcile_brackets")
RECONCILE_LOCK_TTL_SECONDS = max(10, int(os.getenv("RECONCILE_LOCK_TTL_SECONDS", "120")))
CLOSURE_STALE_SECONDS = max(1, int(os.getenv("CLOSURE_STALE_SECONDS", "60")))
BRACKET_UNRESOLVABLE_MAX_POLLS = max(1, int(os.getenv("BRACKET_UNRESOLVABLE_MAX_POLLS", "5")))
UNKNOWN_STATUS_REVIEW_THRESHOLD = max(1, int(os.getenv("UNKNOWN_STATUS_REVIEW_THRESHOLD", "3")))
RECOVERY_REDIS_KEY = os.getenv("RECOVERY_REDIS_KEY", "bracketpilot:persistence_gaps")
RECOVERY_DRAIN_LIMIT = max(1, int(os.getenv("RECOVERY_DRAIN_LIMIT", "50")))

# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------
TELEGRAM_ENABLED = os.getenv("TELEGRAM_ENABLED", "false").lower() == "true"
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
TELEGRAM_TIMEOUT_SECONDS = max(1.0, float(os.getenv("TELEGRAM_TIMEOUT_SECONDS", "10")))

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "core",
    "strategies",
    "execution",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

if USE_SQLITE:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "bracketpilot"),
            "USER": os.getenv("POSTGRES_USER", "bracketpilot"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "bracketpilot"),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
        }
    }

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")
USE_I18N = False
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "").strip()
_default_redis_url = "redis://localhost:6379/0"
if REDIS_PASSWORD:
    _default_redis_url = f"redis://:{REDIS_PASSWORD}@localhost:6379/0"

CELERY_BROKER_URL = os.getenv("REDIS_URL", _default_redis_url)
CELERY_RESULT_BACKEND = os.getenv("REDIS_URL", _default_redis_url)
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_DEFAULT_QUEUE = os.getenv("CELERY_TASK_DEFAULT_QUEUE", "celery")
CELERY_DLQ_REDIS_KEY = os.getenv("CELERY_DLQ_REDIS_KEY", "celery:dlq")
CELERY_DLQ_MAXLEN = max(100, int(os.getenv("CELERY_DLQ_MAXLEN", "2000")))
CELERY_NOTIFY_ON_FAILURE = os.getenv("CELERY_NOTIFY_ON_FAILURE", "true").lower() == "true"
CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS = max(30, int(os.getenv("CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS", "300")))

# Strategy runs and reconciliation share the trading queue
CELERY_TASK_ROUTES = {
    "strategies.tasks.dispatch_due_strategies": {"queue": "trading"},
    "strategies.tasks.run_strategy": {"queue": "trading"},
    "strategies.tasks.expire_abandoned_runs": {"queue": "trading"},
    "execution.tasks.reconcile_brackets": {"queue": "trading"},
}


CELERY_BEAT_SCHEDULE = {
    "dispatch-due-strategies": {
        "task": "strategies.tasks.dispatch_due_strategies",
        "schedule": timedelta(seconds=SCHEDULER_TICK_SECONDS),
    },
    "reconcile-brackets": {
        "task": "execution.tasks.reconcile_brackets",
        "schedule": timedelta(seconds=RECONCILE_INTERVAL_SECONDS),
    },
    "expire-abandoned-runs": {
        "task": "strategies.tasks.expire_abandoned_runs",
        "schedule": crontab(),  # every minute
    },
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "format": '{"timestamp":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}',
        },
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "json"},
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "INFO").upper()},
}
