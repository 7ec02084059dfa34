from rest_framework import serializers

from .models import BotInstance, ChangeSet, Fleet


class FleetSerializer(serializers.ModelSerializer):
    instance_count = serializers.SerializerMethodField()

    class Meta:
        model = Fleet
        fields = ["id", "name", "workspace", "environment", "status", "tags_json", "instance_count", "created_at", "updated_at"]
        read_only_fields = fields

    def get_instance_count(self, obj):
        return obj.instances.count()


class BotInstanceSerializer(serializers.ModelSerializer):
    class Meta:
        model = BotInstance
        fields = [
            "id",
            "name",
            "workspace",
            "fleet",
            "status",
            "health",
            "deployment_type",
            "deployment_target",
            "manifest_version",
            "container_ref",
            "gateway_port",
            "last_error",
            "error_count",
            "last_reconcile_at",
            "last_health_check_at",
            "status_changed_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class ChangeSetSerializer(serializers.ModelSerializer):
    remaining_instances = serializers.SerializerMethodField()

    class Meta:
        model = ChangeSet
        fields = [
            "id",
            "bot_instance",
            "change_type",
            "description",
            "rollout_strategy",
            "rollout_percentage",
            "canary_instances_json",
            "status",
            "total_instances",
            "updated_instances",
            "failed_instances",
            "remaining_instances",
            "can_rollback",
            "rolled_back_at",
            "rolled_back_by",
            "created_by",
            "started_at",
            "completed_at",
            "created_at",
        ]
        read_only_fields = fields

    def get_remaining_instances(self, obj):
        return obj.total_instances - obj.updated_instances - obj.failed_instances
