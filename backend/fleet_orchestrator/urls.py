from django.urls import include, path
from rest_framework.routers import DefaultRouter

from . import fleet_api, provisioning_views
from .views import BotInstanceViewSet, ChangeSetViewSet, FleetViewSet

router = DefaultRouter()
router.register(r"fleets", FleetViewSet, basename="fleet")
router.register(r"instances", BotInstanceViewSet, basename="bot-instance")
router.register(r"change-sets", ChangeSetViewSet, basename="change-set")

urlpatterns = [
    path("reconcile-all", fleet_api.reconcile_all_view, name="reconcile-all"),
    path("instances/<uuid:instance_id>/reconcile", fleet_api.instance_reconcile, name="instance-reconcile"),
    path("instances/<uuid:instance_id>/health", fleet_api.instance_health, name="instance-health"),
    path("instances/<uuid:instance_id>/secrets", fleet_api.instance_secrets, name="instance-secrets"),
    path("instances/<uuid:instance_id>/secrets/<str:key>", fleet_api.instance_secrets, name="instance-secret"),
    path("instances/<uuid:instance_id>/<str:action>", fleet_api.instance_action, name="instance-action"),
    path("fleets/<uuid:fleet_id>/promote", fleet_api.fleet_promote, name="fleet-promote"),
    path("rollouts", fleet_api.change_sets_collection, name="rollouts"),
    path("rollouts/<uuid:change_set_id>", fleet_api.change_set_detail, name="rollout-detail"),
    path("rollouts/<uuid:change_set_id>/<str:action>", fleet_api.change_set_detail, name="rollout-action"),
    path("provisioning/stream", provisioning_views.provisioning_stream, name="provisioning-stream"),
    path("provisioning/subscribe", provisioning_views.provisioning_subscribe, name="provisioning-subscribe"),
    path("provisioning/unsubscribe", provisioning_views.provisioning_unsubscribe, name="provisioning-unsubscribe"),
    path("provisioning/<str:instance_id>/status", provisioning_views.provisioning_status, name="provisioning-status"),
    path("provisioning/<str:instance_id>/logs", provisioning_views.provisioning_logs, name="provisioning-logs"),
    path("", include(router.urls)),
]
