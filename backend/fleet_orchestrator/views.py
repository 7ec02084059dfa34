from rest_framework import viewsets
from rest_framework.permissions import IsAdminUser

from .models import BotInstance, ChangeSet, Fleet
from .serializers import BotInstanceSerializer, ChangeSetSerializer, FleetSerializer


class FleetViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = FleetSerializer
    permission_classes = [IsAdminUser]

    def get_queryset(self):
        qs = Fleet.objects.all()
        environment = self.request.query_params.get("environment")
        if environment:
            qs = qs.filter(environment=environment)
        return qs


class BotInstanceViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = BotInstanceSerializer
    permission_classes = [IsAdminUser]

    def get_queryset(self):
        qs = BotInstance.objects.select_related("fleet", "deployment_target")
        if fleet_id := self.request.query_params.get("fleet"):
            qs = qs.filter(fleet_id=fleet_id)
        if status := self.request.query_params.get("status"):
            qs = qs.filter(status=status)
        return qs


class ChangeSetViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = ChangeSetSerializer
    permission_classes = [IsAdminUser]

    def get_queryset(self):
        qs = ChangeSet.objects.all()
        if bot_id := self.request.query_params.get("bot_instance"):
            qs = qs.filter(bot_instance_id=bot_id)
        if status := self.request.query_params.get("status"):
            qs = qs.filter(status=status)
        return qs
