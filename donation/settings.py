import os
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured

from donation.config import (
    build_databases,
    env_bool,
    env_choice,
    env_float,
    env_int,
    env_list,
    load_environment,
)

BASE_DIR = Path(__file__).resolve().parent.parent
load_environment(BASE_DIR)

DEBUG = env_bool("DEBUG", default=True)

SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "")
if not SECRET_KEY:
    if DEBUG:
        SECRET_KEY = "dev-only-secret-key"
    else:
        raise ImproperlyConfigured("DJANGO_SECRET_KEY must be set when DEBUG=False")

ALLOWED_HOSTS = env_list("ALLOWED_HOSTS", ["127.0.0.1", "localhost", "testserver"])
if not DEBUG and not ALLOWED_HOSTS:
    raise ImproperlyConfigured("ALLOWED_HOSTS must be set when DEBUG=False")

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "donations",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "donation.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "donation.wsgi.application"

DATABASE_URL, DATABASES = build_databases(BASE_DIR)

if not DEBUG and not DATABASE_URL and not os.getenv("DB_NAME"):
    raise ImproperlyConfigured("Set DATABASE_URL or DB_NAME when DEBUG=False")

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REST_FRAMEWORK = {
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.AllowAny",
    ],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "EXCEPTION_HANDLER": "donations.api.exceptions.custom_exception_handler",
}

# Ledger gateway
LEDGER_BACKEND = env_choice("LEDGER_BACKEND", "http", {"http", "simulated"})
LEDGER_BASE_URL = os.getenv("LEDGER_BASE_URL", "http://127.0.0.1:8020")
LEDGER_TIMEOUT = env_float("LEDGER_TIMEOUT", default=10.0)
if LEDGER_TIMEOUT <= 0:
    raise ImproperlyConfigured("LEDGER_TIMEOUT must be greater than zero")
LEDGER_READ_RETRY_COUNT = env_int("LEDGER_READ_RETRY_COUNT", default=2, minimum=0)
LEDGER_RETRY_BASE_DELAY = env_float("LEDGER_RETRY_BASE_DELAY", default=0.2, minimum=0)
LEDGER_RETRY_MAX_DELAY = env_float("LEDGER_RETRY_MAX_DELAY", default=2.0, minimum=0)
LEDGER_HTTP_MAX_CONNECTIONS = env_int("LEDGER_HTTP_MAX_CONNECTIONS", default=10, minimum=1)
LEDGER_HTTP_MAX_KEEPALIVE = env_int("LEDGER_HTTP_MAX_KEEPALIVE", default=10, minimum=1)

LEDGER_MAX_RPS = env_int("LEDGER_MAX_RPS", default=0, minimum=0)
LEDGER_RATE_LIMIT_REDIS_URL = os.getenv(
    "LEDGER_RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0"
)
LEDGER_RATE_LIMIT_KEY = os.getenv("LEDGER_RATE_LIMIT_KEY", "donations:ledger:rps")
LEDGER_REDIS_SOCKET_TIMEOUT = env_float(
    "LEDGER_REDIS_SOCKET_TIMEOUT", default=0.5, minimum=0
)

# Recurring scheduler
SCHEDULER_CHECK_INTERVAL_SECONDS = env_float(
    "SCHEDULER_CHECK_INTERVAL_SECONDS", default=60.0
)
if SCHEDULER_CHECK_INTERVAL_SECONDS <= 0:
    raise ImproperlyConfigured("SCHEDULER_CHECK_INTERVAL_SECONDS must be > 0")
SCHEDULER_MAX_ATTEMPTS = env_int("SCHEDULER_MAX_ATTEMPTS", default=3, minimum=1)
SCHEDULER_BACKOFF_BASE_SECONDS = env_float(
    "SCHEDULER_BACKOFF_BASE_SECONDS", default=1.0, minimum=0
)
SCHEDULER_BACKOFF_MAX_SECONDS = env_float(
    "SCHEDULER_BACKOFF_MAX_SECONDS", default=30.0, minimum=0
)
SCHEDULER_DEDUP_WINDOW_SECONDS = env_int(
    "SCHEDULER_DEDUP_WINDOW_SECONDS", default=300, minimum=0
)
SCHEDULER_PAUSE_ON_PERMANENT_FAILURE = env_bool(
    "SCHEDULER_PAUSE_ON_PERMANENT_FAILURE", default=False
)

# Ledger reconciler
RECONCILER_CHECK_INTERVAL_SECONDS = env_float(
    "RECONCILER_CHECK_INTERVAL_SECONDS", default=300.0
)
if RECONCILER_CHECK_INTERVAL_SECONDS <= 0:
    raise ImproperlyConfigured("RECONCILER_CHECK_INTERVAL_SECONDS must be > 0")
RECONCILER_FETCH_LIMIT = env_int("RECONCILER_FETCH_LIMIT", default=200, minimum=1)
RECONCILER_STALE_AFTER_SECONDS = env_float(
    "RECONCILER_STALE_AFTER_SECONDS", default=600.0, minimum=0
)

# Idempotency guard
IDEMPOTENCY_TTL_SECONDS = env_int("IDEMPOTENCY_TTL_SECONDS", default=86_400, minimum=1)
IDEMPOTENCY_IN_FLIGHT_TIMEOUT_SECONDS = env_int(
    "IDEMPOTENCY_IN_FLIGHT_TIMEOUT_SECONDS", default=120, minimum=1
)
if IDEMPOTENCY_TTL_SECONDS <= IDEMPOTENCY_IN_FLIGHT_TIMEOUT_SECONDS:
    raise ImproperlyConfigured(
        "IDEMPOTENCY_TTL_SECONDS must exceed IDEMPOTENCY_IN_FLIGHT_TIMEOUT_SECONDS"
    )

WORKER_STARTUP_JITTER_MAX = env_float("WORKER_STARTUP_JITTER_MAX", default=0.0, minimum=0)

LOG_LEVEL = os.getenv("DONATION_LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "structured": {
            "format": (
                '{"ts":"%(asctime)s","level":"%(levelname)s",'
                '"logger":"%(name)s","message":"%(message)s"}'
            ),
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "structured",
        },
    },
    "loggers": {
        "donations": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}
