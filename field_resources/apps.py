from django.apps import AppConfig


class FieldResourcesConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "field_resources"
    verbose_name = "Field resources"
