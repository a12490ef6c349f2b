from django.apps import AppConfig


class LocationsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.locations"

    def ready(self):
        # Connects the ConsistencyGuard to every LocationRecord subclass
        import apps.locations.signals
