from django.apps import AppConfig  # type: ignore


class PricingConfig(AppConfig):
    name = "apps.pricing"
    label = "pricing"
    default_auto_field = "django.db.models.BigAutoField"
