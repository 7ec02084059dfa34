from django.apps import AppConfig


class FleetOrchestratorConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "fleet_orchestrator"
    label = "fleet_orchestrator"
