# Generated manually for the fleet orchestrator schema.

import django.db.models.deletion
import uuid
from django.db import migrations, models


DEPLOYMENT_TYPE_CHOICES = [
    ("LOCAL", "Local"),
    ("DOCKER", "Docker"),
    ("ECS_EC2", "ECS on EC2"),
    ("GCE", "Google Compute Engine"),
    ("AZURE_VM", "Azure VM"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Fleet",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200)),
                ("workspace", models.CharField(default="default", max_length=120)),
                (
                    "environment",
                    models.CharField(
                        choices=[("dev", "Development"), ("staging", "Staging"), ("prod", "Production")],
                        default="dev",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("ACTIVE", "Active"),
                            ("PAUSED", "Paused"),
                            ("DRAINING", "Draining"),
                            ("ERROR", "Error"),
                        ],
                        default="ACTIVE",
                        max_length=20,
                    ),
                ),
                ("tags_json", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"ordering": ["name"]},
        ),
        migrations.CreateModel(
            name="DeploymentTarget",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200)),
                ("type", models.CharField(choices=DEPLOYMENT_TYPE_CHOICES, default="DOCKER", max_length=20)),
                ("config_json", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={"ordering": ["name"]},
        ),
        migrations.CreateModel(
            name="BotInstance",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200)),
                ("workspace", models.CharField(default="default", max_length=120)),
                ("desired_manifest_json", models.JSONField(blank=True, default=dict)),
                ("manifest_version", models.PositiveIntegerField(default=1)),
                (
                    "status",
                    models.CharField(
                        choices=[
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
                        ],
                        default="CREATING",
                        max_length=20,
                    ),
                ),
                (
                    "health",
                    models.CharField(
                        choices=[
                            ("HEALTHY", "Healthy"),
                            ("DEGRADED", "Degraded"),
                            ("UNHEALTHY", "Unhealthy"),
                            ("UNKNOWN", "Unknown"),
                        ],
                        default="UNKNOWN",
                        max_length=20,
                    ),
                ),
                (
                    "deployment_type",
                    models.CharField(blank=True, choices=DEPLOYMENT_TYPE_CHOICES, max_length=20, null=True),
                ),
                ("metadata_json", models.JSONField(blank=True, default=dict)),
                ("container_ref", models.CharField(blank=True, max_length=255)),
                ("gateway_port", models.PositiveIntegerField(blank=True, null=True)),
                ("last_error", models.TextField(blank=True)),
                ("error_count", models.PositiveIntegerField(default=0)),
                ("last_reconcile_at", models.DateTimeField(blank=True, null=True)),
                ("last_health_check_at", models.DateTimeField(blank=True, null=True)),
                ("status_changed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "deployment_target",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="instances",
                        to="fleet_orchestrator.deploymenttarget",
                    ),
                ),
                (
                    "fleet",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="instances",
                        to="fleet_orchestrator.fleet",
                    ),
                ),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.AddIndex(
            model_name="botinstance",
            index=models.Index(fields=["status"], name="fleet_botinstance_status_idx"),
        ),
        migrations.AddIndex(
            model_name="botinstance",
            index=models.Index(fields=["fleet", "status"], name="fleet_botinstance_fleet_idx"),
        ),
        migrations.CreateModel(
            name="BotTeamMember",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("role", models.CharField(blank=True, max_length=120)),
                ("description", models.TextField(blank=True)),
                ("enabled", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "member",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="member_of",
                        to="fleet_orchestrator.botinstance",
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="team_members",
                        to="fleet_orchestrator.botinstance",
                    ),
                ),
            ],
        ),
        migrations.AddConstraint(
            model_name="botteammember",
            constraint=models.UniqueConstraint(fields=("owner", "member"), name="fleet_unique_team_member"),
        ),
        migrations.CreateModel(
            name="ChangeSet",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "change_type",
                    models.CharField(
                        choices=[("UPDATE", "Update"), ("ROLLBACK", "Rollback"), ("PROMOTE", "Promote")],
                        default="UPDATE",
                        max_length=20,
                    ),
                ),
                ("description", models.TextField(blank=True)),
                ("from_manifest_json", models.JSONField(blank=True, null=True)),
                ("to_manifest_json", models.JSONField(blank=True, default=dict)),
                (
                    "rollout_strategy",
                    models.CharField(
                        choices=[("ALL", "All at once"), ("PERCENTAGE", "Percentage"), ("CANARY", "Canary")],
                        default="ALL",
                        max_length=20,
                    ),
                ),
                ("rollout_percentage", models.PositiveIntegerField(blank=True, null=True)),
                ("canary_instances_json", models.JSONField(blank=True, default=list)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("IN_PROGRESS", "In progress"),
                            ("COMPLETED", "Completed"),
                            ("FAILED", "Failed"),
                        ],
                        default="PENDING",
                        max_length=20,
                    ),
                ),
                ("total_instances", models.PositiveIntegerField(default=1)),
                ("updated_instances", models.PositiveIntegerField(default=0)),
                ("failed_instances", models.PositiveIntegerField(default=0)),
                ("can_rollback", models.BooleanField(default=False)),
                ("rolled_back_at", models.DateTimeField(blank=True, null=True)),
                ("rolled_back_by", models.CharField(blank=True, max_length=200)),
                ("created_by", models.CharField(default="system", max_length=200)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "bot_instance",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="change_sets",
                        to="fleet_orchestrator.botinstance",
                    ),
                ),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.CreateModel(
            name="VaultSecret",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("instance_id", models.CharField(max_length=64)),
                ("key", models.CharField(max_length=255)),
                ("encrypted_value", models.TextField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.AddConstraint(
            model_name="vaultsecret",
            constraint=models.UniqueConstraint(fields=("instance_id", "key"), name="fleet_unique_vault_secret"),
        ),
        migrations.CreateModel(
            name="AuditEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("action", models.CharField(max_length=120)),
                ("resource_type", models.CharField(max_length=60)),
                ("resource_id", models.CharField(max_length=64)),
                ("actor", models.CharField(default="system", max_length=200)),
                ("diff_summary_json", models.JSONField(blank=True, default=dict)),
                ("metadata_json", models.JSONField(blank=True, default=dict)),
                ("dedupe_key", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={"ordering": ["-created_at"]},
        ),
        migrations.AddIndex(
            model_name="auditevent",
            index=models.Index(fields=["resource_type", "resource_id"], name="fleet_audit_resource_idx"),
        ),
    ]
