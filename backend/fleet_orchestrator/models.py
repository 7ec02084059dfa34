import uuid

from django.db import models


DEPLOYMENT_TYPE_CHOICES = [
    ("LOCAL", "Local"),
    ("DOCKER", "Docker"),
    ("ECS_EC2", "ECS on EC2"),
    ("GCE", "Google Compute Engine"),
    ("AZURE_VM", "Azure VM"),
]


class Fleet(models.Model):
    ENVIRONMENT_CHOICES = [
        ("dev", "Development"),
        ("staging", "Staging"),
        ("prod", "Production"),
    ]
    STATUS_CHOICES = [
        ("ACTIVE", "Active"),
        ("PAUSED", "Paused"),
        ("DRAINING", "Draining"),
        ("ERROR", "Error"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    workspace = models.CharField(max_length=120, default="default")
    environment = models.CharField(max_length=20, choices=ENVIRONMENT_CHOICES, default="dev")
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="ACTIVE")
    tags_json = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return f"{self.name} ({self.environment})"


class DeploymentTarget(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    type = models.CharField(max_length=20, choices=DEPLOYMENT_TYPE_CHOICES, default="DOCKER")
    config_json = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return f"{self.name} [{self.type}]"


class BotInstance(models.Model):
    STATUS_CHOICES = [
        ("CREATING", "Creating"),
        ("PENDING", "Pending"),
        ("RUNNING", "Running"),
        ("DEGRADED", "Degraded"),
        ("PAUSED", "Paused"),
        ("DRAINING", "Draining"),
        ("RECONCILING", "Reconciling"),
        ("STOPPED", "Stopped"),
        ("ERROR", "Error"),
        ("DELETING", "Deleting"),
    ]
    HEALTH_CHOICES = [
        ("HEALTHY", "Healthy"),
        ("DEGRADED", "Degraded"),
        ("UNHEALTHY", "Unhealthy"),
        ("UNKNOWN", "Unknown"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    workspace = models.CharField(max_length=120, default="default")
    fleet = models.ForeignKey(
        "Fleet", null=True, blank=True, on_delete=models.SET_NULL, related_name="instances"
    )
    desired_manifest_json = models.JSONField(default=dict, blank=True)
    manifest_version = models.PositiveIntegerField(default=1)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="CREATING")
    health = models.CharField(max_length=20, choices=HEALTH_CHOICES, default="UNKNOWN")
    deployment_type = models.CharField(max_length=20, choices=DEPLOYMENT_TYPE_CHOICES, null=True, blank=True)
    deployment_target = models.ForeignKey(
        "DeploymentTarget", null=True, blank=True, on_delete=models.SET_NULL, related_name="instances"
    )
    metadata_json = models.JSONField(default=dict, blank=True)
    container_ref = models.CharField(max_length=255, blank=True)
    gateway_port = models.PositiveIntegerField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    error_count = models.PositiveIntegerField(default=0)
    last_reconcile_at = models.DateTimeField(null=True, blank=True)
    last_health_check_at = models.DateTimeField(null=True, blank=True)
    status_changed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="fleet_botinstance_status_idx"),
            models.Index(fields=["fleet", "status"], name="fleet_botinstance_fleet_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.status})"


class BotTeamMember(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    owner = models.ForeignKey("BotInstance", on_delete=models.CASCADE, related_name="team_members")
    member = models.ForeignKey("BotInstance", on_delete=models.CASCADE, related_name="member_of")
    role = models.CharField(max_length=120, blank=True)
    description = models.TextField(blank=True)
    enabled = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["owner", "member"], name="fleet_unique_team_member"),
        ]


class ChangeSet(models.Model):
    CHANGE_TYPE_CHOICES = [
        ("UPDATE", "Update"),
        ("ROLLBACK", "Rollback"),
        ("PROMOTE", "Promote"),
    ]
    STRATEGY_CHOICES = [
        ("ALL", "All at once"),
        ("PERCENTAGE", "Percentage"),
        ("CANARY", "Canary"),
    ]
    STATUS_CHOICES = [
        ("PENDING", "Pending"),
        ("IN_PROGRESS", "In progress"),
        ("COMPLETED", "Completed"),
        ("FAILED", "Failed"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bot_instance = models.ForeignKey("BotInstance", on_delete=models.PROTECT, related_name="change_sets")
    change_type = models.CharField(max_length=20, choices=CHANGE_TYPE_CHOICES, default="UPDATE")
    description = models.TextField(blank=True)
    from_manifest_json = models.JSONField(null=True, blank=True)
    to_manifest_json = models.JSONField(default=dict, blank=True)
    rollout_strategy = models.CharField(max_length=20, choices=STRATEGY_CHOICES, default="ALL")
    rollout_percentage = models.PositiveIntegerField(null=True, blank=True)
    canary_instances_json = models.JSONField(default=list, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="PENDING")
    total_instances = models.PositiveIntegerField(default=1)
    updated_instances = models.PositiveIntegerField(default=0)
    failed_instances = models.PositiveIntegerField(default=0)
    can_rollback = models.BooleanField(default=False)
    rolled_back_at = models.DateTimeField(null=True, blank=True)
    rolled_back_by = models.CharField(max_length=200, blank=True)
    created_by = models.CharField(max_length=200, default="system")
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.change_type} {self.id} ({self.status})"


class VaultSecret(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    instance_id = models.CharField(max_length=64)
    key = models.CharField(max_length=255)
    encrypted_value = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["instance_id", "key"], name="fleet_unique_vault_secret"),
        ]


class AuditEvent(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    action = models.CharField(max_length=120)
    resource_type = models.CharField(max_length=60)
    resource_id = models.CharField(max_length=64)
    actor = models.CharField(max_length=200, default="system")
    diff_summary_json = models.JSONField(default=dict, blank=True)
    metadata_json = models.JSONField(default=dict, blank=True)
    dedupe_key = models.CharField(max_length=255, null=True, blank=True, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["resource_type", "resource_id"], name="fleet_audit_resource_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.action} {self.resource_type}:{self.resource_id}"
