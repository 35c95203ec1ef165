import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.dev")

app = Celery("drivedesk")

app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

# Deposit polling is not on the beat schedule: it reschedules itself only
# while a hold is in a transient state.

app.conf.timezone = "America/Vancouver"
