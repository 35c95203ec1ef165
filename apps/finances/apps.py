from django.apps import AppConfig  # type: ignore


class FinancesConfig(AppConfig):
    name = "apps.finances"
    label = "finances"
    default_auto_field = "django.db.models.BigAutoField"
    verbose_name = "Finances"
