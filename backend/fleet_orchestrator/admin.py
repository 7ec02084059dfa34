from django.contrib import admin, messages

from .models import AuditEvent, BotInstance, BotTeamMember, ChangeSet, DeploymentTarget, Fleet
from .reconciler import request_reconcile


@admin.register(Fleet)
class FleetAdmin(admin.ModelAdmin):
    list_display = ("name", "workspace", "environment", "status", "updated_at")
    list_filter = ("environment", "status")
    search_fields = ("name", "workspace")


@admin.register(DeploymentTarget)
class DeploymentTargetAdmin(admin.ModelAdmin):
    list_display = ("name", "type", "updated_at")
    list_filter = ("type",)


@admin.register(BotInstance)
class BotInstanceAdmin(admin.ModelAdmin):
    list_display = ("name", "fleet", "status", "health", "deployment_type", "error_count", "last_reconcile_at")
    list_filter = ("status", "health", "deployment_type")
    search_fields = ("name", "container_ref")
    readonly_fields = ("container_ref", "last_error", "error_count", "last_reconcile_at", "status_changed_at")
    actions = ["queue_reconcile"]

    @admin.action(description="Reconcile selected instances")
    def queue_reconcile(self, request, queryset):
        queued = 0
        for instance in queryset:
            if request_reconcile(instance.id, actor=request.user.username):
                queued += 1
        self.message_user(request, f"Queued {queued} of {queryset.count()} instance(s).", messages.INFO)


@admin.register(BotTeamMember)
class BotTeamMemberAdmin(admin.ModelAdmin):
    list_display = ("owner", "member", "role", "enabled")
    list_filter = ("enabled",)


@admin.register(ChangeSet)
class ChangeSetAdmin(admin.ModelAdmin):
    list_display = ("id", "bot_instance", "change_type", "status", "updated_instances", "failed_instances", "total_instances")
    list_filter = ("status", "change_type", "rollout_strategy")
    readonly_fields = ("rolled_back_at", "rolled_back_by", "started_at", "completed_at")


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ("created_at", "action", "resource_type", "resource_id", "actor")
    list_filter = ("action", "resource_type")
    search_fields = ("resource_id", "actor")
