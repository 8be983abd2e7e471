"""
Django settings for Qonnect Hotspot Billing
"""

from pathlib import Path
from decouple import config, Csv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config(
    "SECRET_KEY", default="django-insecure-qonnect-dev-key-change-in-production"
)

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config(
    "ALLOWED_HOSTS",
    default="localhost,127.0.0.1,testserver",
    cast=Csv(),
)

# Application definition
INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.staticfiles",
    "rest_framework",
    "corsheaders",
    "django_crontab",  # For scheduled tasks
    "hotspot",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "qonnect.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
            ],
        },
    },
]

WSGI_APPLICATION = "qonnect.wsgi.application"

# Database
# MySQL Configuration (production-ready)
DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.mysql",
        "NAME": config("DB_NAME", default="qonnect"),
        "USER": config("DB_USER", default="root"),
        "PASSWORD": config("DB_PASSWORD", default=""),
        "HOST": config("DB_HOST", default="localhost"),
        "PORT": config("DB_PORT", default="3306"),
        "OPTIONS": {
            "charset": "utf8mb4",
            "init_command": "SET sql_mode='STRICT_TRANS_TABLES'",
        },
    }
}

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "Africa/Nairobi"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

# Security Settings - Environment Aware Configuration
if not DEBUG:
    SECURE_CONTENT_TYPE_NOSNIFF = True
    SECURE_HSTS_INCLUDE_SUBDOMAINS = True
    SECURE_HSTS_SECONDS = 31536000  # 1 year
    SECURE_SSL_REDIRECT = config("SECURE_SSL_REDIRECT", default=True, cast=bool)
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
    SESSION_COOKIE_SECURE = True
    CSRF_COOKIE_SECURE = True
    X_FRAME_OPTIONS = "DENY"
else:
    SECURE_SSL_REDIRECT = False
    SESSION_COOKIE_SECURE = False
    CSRF_COOKIE_SECURE = False
    SECURE_PROXY_SSL_HEADER = None

LOG_DIR = Path(config("LOG_DIR", default=str(BASE_DIR / "logs")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

# Production Logging
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
        },
        "audit": {
            "format": "{asctime} AUDIT {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
        "file": {
            "class": "logging.FileHandler",
            "filename": LOG_DIR / "qonnect.log",
            "formatter": "verbose",
            "delay": True,
        },
        "audit_file": {
            "class": "logging.FileHandler",
            "filename": LOG_DIR / "audit.log",
            "formatter": "audit",
            "delay": True,
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO" if DEBUG else "WARNING",
    },
    "loggers": {
        "django": {
            "handlers": ["console", "file"] if not DEBUG else ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "hotspot": {
            "handlers": ["console", "file"] if not DEBUG else ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "hotspot.audit": {
            "handlers": ["console", "audit_file"] if not DEBUG else ["console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# REST Framework Configuration
REST_FRAMEWORK = {
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.AllowAny",
    ],
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
    ],
    "EXCEPTION_HANDLER": "hotspot.exception_handler.custom_exception_handler",
    "UNAUTHENTICATED_USER": None,
}

# CORS settings - the captive portal frontend calls initiate/status
if DEBUG:
    CORS_ALLOW_ALL_ORIGINS = True
else:
    CORS_ALLOW_ALL_ORIGINS = False
    CORS_ALLOWED_ORIGINS = config(
        "CORS_ALLOWED_ORIGINS",
        default="http://localhost:3000",
        cast=Csv(),
    )

# M-Pesa (Daraja) Configuration
MPESA_ENV = config("MPESA_ENV", default="sandbox")
MPESA_CONSUMER_KEY = config("MPESA_CONSUMER_KEY", default="")
MPESA_CONSUMER_SECRET = config("MPESA_CONSUMER_SECRET", default="")
MPESA_SHORTCODE = config("MPESA_SHORTCODE", default="174379")
MPESA_PASSKEY = config("MPESA_PASSKEY", default="")
MPESA_CALLBACK_URL = config("MPESA_CALLBACK_URL", default="")
MPESA_VERIFY_TIMEOUT = config("MPESA_VERIFY_TIMEOUT", default=10, cast=int)

# Safaricom callback origins
MPESA_CALLBACK_ALLOWED_IPS = config(
    "MPESA_CALLBACK_ALLOWED_IPS",
    default="196.201.214.200,196.201.214.201,196.201.214.202",
    cast=Csv(),
)
MPESA_ENFORCE_IP_ALLOWLIST = config(
    "MPESA_ENFORCE_IP_ALLOWLIST", default=not DEBUG, cast=bool
)
# Reverse proxies in front of the app; X-Forwarded-For is ignored when 0
MPESA_CALLBACK_TRUSTED_PROXIES = config(
    "MPESA_CALLBACK_TRUSTED_PROXIES", default=0, cast=int
)

# MikroTik API Configuration (env-driven)
MIKROTIK_ENABLED = config("MIKROTIK_ENABLED", default=False, cast=bool)
MIKROTIK_HOST = config("MIKROTIK_HOST", default="192.168.88.1")
MIKROTIK_PORT = config("MIKROTIK_PORT", default=8728, cast=int)
MIKROTIK_USER = config("MIKROTIK_USER", default="admin")
MIKROTIK_PASSWORD = config("MIKROTIK_PASSWORD", default="")
MIKROTIK_USE_SSL = config("MIKROTIK_USE_SSL", default=False, cast=bool)
# Control SSL certificate verification for self-signed certs (default: disabled)
MIKROTIK_SSL_VERIFY = config("MIKROTIK_SSL_VERIFY", default=False, cast=bool)
MIKROTIK_TIMEOUT = config("MIKROTIK_TIMEOUT", default=5, cast=int)
MIKROTIK_CONNECT_RETRIES = config("MIKROTIK_CONNECT_RETRIES", default=2, cast=int)

# Payment timeout sweep
PAYMENT_TIMEOUT_MINUTES = config("PAYMENT_TIMEOUT_MINUTES", default=5, cast=int)
PAYMENT_SWEEP_INTERVAL = config("PAYMENT_SWEEP_INTERVAL", default=60, cast=int)
SESSION_SWEEP_INTERVAL = config("SESSION_SWEEP_INTERVAL", default=30, cast=int)
SWEEP_BATCH_SIZE = config("SWEEP_BATCH_SIZE", default=100, cast=int)

# Reconciliation queue / worker pool
RECONCILE_MAX_ATTEMPTS = config("RECONCILE_MAX_ATTEMPTS", default=3, cast=int)
RECONCILE_BACKOFF_SECONDS = config("RECONCILE_BACKOFF_SECONDS", default=2, cast=float)
RECONCILE_WORKER_CONCURRENCY = config(
    "RECONCILE_WORKER_CONCURRENCY", default=5, cast=int
)
RECONCILE_RATE_LIMIT = config("RECONCILE_RATE_LIMIT", default=10, cast=int)
RECONCILE_RATE_PERIOD = config("RECONCILE_RATE_PERIOD", default=1.0, cast=float)
RECONCILE_VISIBILITY_TIMEOUT = config(
    "RECONCILE_VISIBILITY_TIMEOUT", default=300, cast=int
)
RECONCILE_POLL_INTERVAL = config("RECONCILE_POLL_INTERVAL", default=1.0, cast=float)


# CRONTAB CONFIGURATION FOR SCHEDULED TASKS
# ============================================
# The run_sweepers command is the primary scheduler (sub-minute cadence).
# These cron entries are a fallback for deployments without a long-running
# sweeper process.
# Run 'python manage.py crontab add' to install cron jobs
# Run 'python manage.py crontab remove' to uninstall cron jobs

CRONJOBS = [
    # Expire payments stuck in pending beyond PAYMENT_TIMEOUT_MINUTES
    (
        "* * * * *",
        "hotspot.tasks.expire_stalled_payments",
        ">> /var/log/qonnect_cron.log 2>&1",
    ),
    # Disconnect sessions past their validity window
    (
        "* * * * *",
        "hotspot.tasks.disconnect_expired_sessions",
        ">> /var/log/qonnect_cron.log 2>&1",
    ),
]
