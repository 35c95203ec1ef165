"""Base settings for all environments.

This configuration file defines the common settings used by the rental
core in every environment: installed domain apps, database, Celery,
structured logging, the payment gateway and the business rules the
pricing and fleet engines read. Environment specific overrides live in
`dev.py`, `prod.py` and `test.py`.
"""

import os
from pathlib import Path

import structlog
from celery.schedules import crontab
from dotenv import load_dotenv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent.parent

load_dotenv(BASE_DIR / '.env')

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'replace-me-in-production')

DEBUG = False

ALLOWED_HOSTS: list[str] = os.environ.get('DJANGO_ALLOWED_HOSTS', '*').split(',')

# Application definition

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    # Domain apps
    'apps.users',
    'apps.audit',
    'apps.fleet',
    'apps.pricing',
    'apps.bookings',
    'apps.finances',
    'apps.notifications',
]

# Database
# PostgreSQL in production (row locks in assign_unit rely on SELECT ... FOR UPDATE).

DATABASES = {
    'default': {
        'ENGINE': os.environ.get('DB_ENGINE', 'django.db.backends.postgresql'),
        'NAME': os.environ.get('DB_NAME', 'drivedesk'),
        'USER': os.environ.get('DB_USER', ''),
        'PASSWORD': os.environ.get('DB_PASSWORD', ''),
        'HOST': os.environ.get('DB_HOST', ''),
        'PORT': os.environ.get('DB_PORT', ''),
        'ATOMIC_REQUESTS': False,
    }
}

LANGUAGE_CODE = 'en-ca'

TIME_ZONE = 'America/Vancouver'

USE_I18N = True

USE_TZ = True

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Custom user model
AUTH_USER_MODEL = 'users.CustomUser'

# Email defaults
DEFAULT_FROM_EMAIL = os.environ.get('DEFAULT_FROM_EMAIL', 'no-reply@drivedesk.local')

# Celery configuration (Broker and Result backend handled in environment)
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_TASK_ALWAYS_EAGER = False

# Holds already stop counting at expires_at; this only tidies their status.
CELERY_BEAT_SCHEDULE = {
    "expire-reservation-holds": {
        "task": "fleet.expire_reservation_holds",
        "schedule": crontab(minute="*/5"),
    },
}

# ============================================================================
# RENTAL BUSINESS RULES
# ============================================================================

RENTAL_RULES = {
    'CURRENCY': 'CAD',
    'PST_RATE': '0.07',
    'GST_RATE': '0.05',
    'DAILY_LEVY': '1.50',
    'DAILY_ACCESS_FEE': '1.00',
    'WEEKEND_SURCHARGE_RATE': '0.15',
    'WEEKLY_DISCOUNT_DAYS': 7,
    'WEEKLY_DISCOUNT_RATE': '0.10',
    'MONTHLY_DISCOUNT_DAYS': 30,
    'MONTHLY_DISCOUNT_RATE': '0.20',
    'YOUNG_DRIVER_DAILY_FEE': '15.00',
    'MIN_RENTAL_DAYS': 1,
    'MAX_RENTAL_DAYS': int(os.environ.get('MAX_RENTAL_DAYS', 30)),
    'MINIMUM_DEPOSIT_AMOUNT': '350.00',
    'RESERVATION_HOLD_MINUTES': 15,
    'DEFAULT_CLEANING_BUFFER_HOURS': 2,
    'BACKUP_ACTIVATION_MIN_REASON_LENGTH': 10,
    'DEPOSIT_AUTHORIZATION_DAYS': 7,
}

# ============================================================================
# PAYMENT GATEWAY
# ============================================================================

PAYMENT_GATEWAY_CLASS = os.environ.get(
    'PAYMENT_GATEWAY_CLASS', 'apps.finances.gateway.PaymentGatewayClient'
)
PAYMENT_GATEWAY_BASE_URL = os.environ.get('PAYMENT_GATEWAY_BASE_URL', 'https://payments.example.com/v1/')
PAYMENT_GATEWAY_API_KEY = os.environ.get('PAYMENT_GATEWAY_API_KEY', '')
PAYMENT_GATEWAY_TIMEOUT = int(os.environ.get('PAYMENT_GATEWAY_TIMEOUT', 30))

# Poll quickly while a hold is authorizing/capturing/releasing, back off after.
DEPOSIT_POLL_INTERVALS = [2, 2, 5, 5, 10, 30, 60]
DEPOSIT_POLL_MAX_ATTEMPTS = 20

# ============================================================================
# LOGGING
# ============================================================================

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": "structlog.stdlib.ProcessorFormatter",
            "processor": structlog.processors.JSONRenderer(),
            "foreign_pre_chain": [
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
            ],
        }
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "level": "INFO",
        }
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
    "loggers": {
        "django": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "apps": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "shared": {"handlers": ["console"], "level": "INFO", "propagate": False},
        "apps.finances": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}
