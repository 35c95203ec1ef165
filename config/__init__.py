"""Top-level package for Django configuration.

This package holds the settings modules for the DriveDesk rental core
and the Celery application used for notification delivery and deposit
status polling.
"""

# Import the Celery application as soon as Django starts. Without this
# the shared task registry will not be populated.
from .celery import app as celery_app  # noqa: F401
