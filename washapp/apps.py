from django.apps import AppConfig


class WashappConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "washapp"
    verbose_name = "Fleet wash"
