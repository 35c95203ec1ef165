from django.apps import AppConfig  # type: ignore


class FleetConfig(AppConfig):
    name = "apps.fleet"
    label = "fleet"
    default_auto_field = "django.db.models.BigAutoField"
    verbose_name = "Fleet"
