import logging
import os
import shlex
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from google.cloud import compute_v1
from google.cloud import logging as cloud_logging
from google.oauth2 import service_account

from ..provider_utils import (
    ProviderError,
    ProviderErrorType,
    create_or_update,
    generate_tags,
    sanitize_resource_name,
    to_gcp_labels,
    wait_for_state,
)
from ..vault.gcp import GceVaultStore
from .base import (
    BaseProvider,
    BootstrapOptions,
    CloudResources,
    ContainerDeploymentConfig,
    ContainerFilters,
    ContainerHealth,
    ContainerInstance,
    ContainerStatus,
    LogEvent,
    LogOptions,
    LogResult,
    ValidationResult,
    report,
)

logger = logging.getLogger(__name__)

DEFAULT_ZONE = "us-central1-a"
DEFAULT_MACHINE_TYPE = os.environ.get("CLAWSTER_GCE_MACHINE_TYPE", "e2-medium")
DEFAULT_SOURCE_IMAGE = "projects/cos-cloud/global/images/family/cos-stable"
DEFAULT_IMAGE = os.environ.get("CLAWSTER_BOT_IMAGE", "ghcr.io/openclaw/openclaw:latest")
OPERATION_TIMEOUT = int(os.environ.get("CLAWSTER_GCE_OPERATION_TIMEOUT", "300"))
STATUS_POLL_SECONDS = float(os.environ.get("CLAWSTER_GCE_STATUS_POLL_SECONDS", "5"))

STATUS_MAP = {
    "PROVISIONING": ContainerStatus.CREATING,
    "STAGING": ContainerStatus.PENDING,
    "RUNNING": ContainerStatus.RUNNING,
    "STOPPING": ContainerStatus.STOPPED,
    "SUSPENDING": ContainerStatus.STOPPED,
    "SUSPENDED": ContainerStatus.STOPPED,
    "TERMINATED": ContainerStatus.STOPPED,
    "REPAIRING": ContainerStatus.DEGRADED,
}


def build_startup_script(config: ContainerDeploymentConfig, project_id: str, secret_ids: Dict[str, str]) -> str:
    lines = ["#!/bin/bash", "set -euo pipefail", "mkdir -p /var/lib/clawster"]
    env_args = [f"-e {shlex.quote(f'{k}={v}')}" for k, v in sorted((config.environment or {}).items())]
    for key, secret_id in sorted(secret_ids.items()):
        lines.append(
            f"{key}=$(gcloud secrets versions access latest --secret={shlex.quote(secret_id)} --project={shlex.quote(project_id)})"
        )
        env_args.append(f'-e {key}="${key}"')
    ports = " ".join(f"-p {int(p)}:{int(p)}" for p in config.ports or [])
    command = " ".join(shlex.quote(part) for part in config.command or [])
    lines.append(f"docker rm -f {shlex.quote(config.name)} >/dev/null 2>&1 || true")
    lines.append(
        " ".join(
            part
            for part in [
                "docker run -d --restart unless-stopped",
                f"--name {shlex.quote(config.name)}",
                f"--memory {int(config.memory)}m",
                ports,
                " ".join(env_args),
                shlex.quote(config.image),
                command,
            ]
            if part
        )
    )
    return "\n".join(lines) + "\n"


class GceProvider(BaseProvider):
    provider_type = "gce"
    display_name = "Google Compute Engine"

    def __init__(self):
        super().__init__()
        self.project_id = ""
        self.zone = DEFAULT_ZONE
        self.key_file = ""
        self._instances_client = None

    def initialize(self, config: Dict[str, Any]) -> None:
        super().initialize(config)
        self.project_id = str(self.config.get("projectId") or os.environ.get("GOOGLE_CLOUD_PROJECT") or "")
        self.zone = str(self.config.get("zone") or DEFAULT_ZONE)
        self.region = self.zone.rsplit("-", 1)[0]
        self.key_file = str(self.config.get("keyFilePath") or "")
        self._instances_client = None

    def _credentials(self):
        if self.key_file:
            return service_account.Credentials.from_service_account_file(self.key_file)
        return None

    @property
    def instances(self) -> compute_v1.InstancesClient:
        if self._instances_client is None:
            self._instances_client = compute_v1.InstancesClient(credentials=self._credentials())
        return self._instances_client

    def _wait(self, operation) -> None:
        operation.result(timeout=OPERATION_TIMEOUT)

    def _raw_status(self, name: str) -> str:
        snapshot = self.get_container(name)
        return snapshot.metadata["rawStatus"] if snapshot else "MISSING"

    def _wait_for_status(self, name: str, target: Any, failure_states=()) -> str:
        return wait_for_state(
            lambda: self._raw_status(name),
            target,
            max_wait_seconds=OPERATION_TIMEOUT,
            poll_interval_seconds=STATUS_POLL_SECONDS,
            failure_states=failure_states,
            description=f"GCE instance {name}",
        )

    def _instance_name(self, name: str) -> str:
        return sanitize_resource_name(f"clawster-{name}")

    def validate(self) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        if not self.project_id:
            errors.append("GCP project id is not configured (projectId)")
            return ValidationResult(valid=False, errors=errors, warnings=warnings)
        if self.key_file and not os.path.exists(self.key_file):
            errors.append(f"Service account key file not found: {self.key_file}")
            return ValidationResult(valid=False, errors=errors, warnings=warnings)
        if not self.key_file:
            warnings.append("No keyFilePath configured; using application default credentials.")
        try:
            self._call(lambda: list(self.instances.list(project=self.project_id, zone=self.zone, max_results=1)))
        except ProviderError as exc:
            errors.append(f"Cannot access Compute Engine: {exc.message}")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def bootstrap(self, options: BootstrapOptions, on_progress=None) -> CloudResources:
        self.workspace = options.workspace or self.workspace
        network = str(self.config.get("network") or "default")
        firewall_name = sanitize_resource_name(f"clawster-{self.workspace}-gateway")
        firewalls = compute_v1.FirewallsClient(credentials=self._credentials())

        report(on_progress, "network", f"Ensuring firewall rule {firewall_name}")
        try:
            self._call(lambda: firewalls.get(project=self.project_id, firewall=firewall_name))
        except ProviderError as exc:
            if exc.error_type != ProviderErrorType.NOT_FOUND:
                raise
            rule = compute_v1.Firewall()
            rule.name = firewall_name
            rule.network = f"global/networks/{network}"
            rule.direction = "INGRESS"
            rule.source_ranges = [str(self.config.get("allowedCidr") or "0.0.0.0/0")]
            rule.target_tags = [firewall_name]
            allowed = compute_v1.Allowed()
            allowed.I_p_protocol = "tcp"
            allowed.ports = ["18789-18799"]
            rule.allowed = [allowed]
            self._wait(self._call(lambda: firewalls.insert(project=self.project_id, firewall_resource=rule)))

        if options.enable_logging:
            report(on_progress, "logging", "Using Cloud Logging for container output")
        return CloudResources(
            provider=self.provider_type,
            region=self.region,
            network={"network": network, "firewall": firewall_name},
            logging={"logDriver": "gcplogs", "project": self.project_id},
            metadata={"zone": self.zone, "labels": to_gcp_labels(generate_tags(self.workspace, options.tags))},
        )

    def _build_instance(self, config: ContainerDeploymentConfig) -> compute_v1.Instance:
        secret_ids = {}
        for key, value in sorted((config.secrets or {}).items()):
            ref = self.store_secret(config.name, key, value)
            secret_ids[key] = ref.split("/secrets/")[-1].split("/")[0]
        image = config.image or str(self.config.get("image") or DEFAULT_IMAGE)
        startup = build_startup_script(config.merged({"image": image}), self.project_id, secret_ids)

        instance = compute_v1.Instance()
        instance.name = self._instance_name(config.name)
        instance.machine_type = f"zones/{self.zone}/machineTypes/{self.config.get('machineType') or DEFAULT_MACHINE_TYPE}"

        disk = compute_v1.AttachedDisk()
        disk.auto_delete = True
        disk.boot = True
        init_params = compute_v1.AttachedDiskInitializeParams()
        init_params.source_image = str(self.config.get("sourceImage") or DEFAULT_SOURCE_IMAGE)
        init_params.disk_size_gb = 20
        disk.initialize_params = init_params
        instance.disks = [disk]

        net_iface = compute_v1.NetworkInterface()
        net_iface.network = f"global/networks/{self.config.get('network') or 'default'}"
        access_config = compute_v1.AccessConfig()
        access_config.name = "External NAT"
        access_config.type_ = "ONE_TO_ONE_NAT"
        net_iface.access_configs = [access_config]
        instance.network_interfaces = [net_iface]

        instance.metadata = compute_v1.Metadata()
        instance.metadata.items = [compute_v1.Items(key="startup-script", value=startup)]
        instance.tags = compute_v1.Tags(items=[sanitize_resource_name(f"clawster-{self.workspace}-gateway")])
        instance.labels = to_gcp_labels(generate_tags(self.workspace, self.resource_labels(config)))

        sa = compute_v1.ServiceAccount()
        sa.email = str(self.config.get("serviceAccountEmail") or "default")
        sa.scopes = ["https://www.googleapis.com/auth/cloud-platform"]
        instance.service_accounts = [sa]
        return instance

    def deploy_container(self, config: ContainerDeploymentConfig, manifest: Dict[str, Any]) -> ContainerInstance:
        # VM names are fixed per instance, so a VM from an interrupted deploy is found and recreated
        snapshot, _created = create_or_update(
            lambda: self.get_container(self._instance_name(config.name)),
            lambda: self._create_instance(config),
            lambda existing: self.update_container(existing.id, config),
        )
        return snapshot

    def _create_instance(self, config: ContainerDeploymentConfig) -> ContainerInstance:
        instance = self._build_instance(config)
        logger.info("creating GCE instance %s in %s/%s", instance.name, self.project_id, self.zone)
        operation = self._call(
            lambda: self.instances.insert(project=self.project_id, zone=self.zone, instance_resource=instance)
        )
        self._wait(operation)
        self._wait_for_status(instance.name, "RUNNING", failure_states=("TERMINATED",))
        return self.get_container(instance.name) or ContainerInstance(
            id=instance.name,
            name=config.name,
            status=ContainerStatus.CREATING,
            provider=self.provider_type,
            region=self.region,
        )

    def update_container(self, container_id: str, config: ContainerDeploymentConfig) -> ContainerInstance:
        # startup metadata only applies on boot, so recreate the VM
        self.delete_container(container_id)
        return self._create_instance(config)

    def start_container(self, container_id: str) -> None:
        self._wait(self._call(lambda: self.instances.start(project=self.project_id, zone=self.zone, instance=container_id)))
        self._wait_for_status(container_id, "RUNNING")

    def stop_container(self, container_id: str) -> None:
        try:
            operation = self._call(
                lambda: self.instances.stop(project=self.project_id, zone=self.zone, instance=container_id)
            )
        except ProviderError as exc:
            if exc.error_type == ProviderErrorType.NOT_FOUND:
                logger.warning("GCE instance %s already gone", container_id)
                return
            raise
        self._wait(operation)
        self._wait_for_status(container_id, ("TERMINATED", "MISSING"))

    def delete_container(self, container_id: str) -> None:
        try:
            operation = self._call(
                lambda: self.instances.delete(project=self.project_id, zone=self.zone, instance=container_id)
            )
        except ProviderError as exc:
            if exc.error_type == ProviderErrorType.NOT_FOUND:
                logger.info("GCE instance %s already deleted", container_id)
                return
            raise
        self._wait(operation)

    def _snapshot(self, inst) -> ContainerInstance:
        status = STATUS_MAP.get(str(inst.status), ContainerStatus.PENDING)
        labels = dict(inst.labels or {})
        public_ip = None
        private_ip = None
        for iface in inst.network_interfaces or []:
            private_ip = private_ip or (iface.network_i_p or None)
            for ac in iface.access_configs or []:
                if ac.nat_i_p:
                    public_ip = public_ip or ac.nat_i_p
        port = self.config.get("gatewayPort") or 18789
        created = None
        if inst.creation_timestamp:
            try:
                created = datetime.fromisoformat(str(inst.creation_timestamp))
            except ValueError:
                created = None
        return ContainerInstance(
            id=inst.name,
            name=labels.get("instance") or inst.name,
            status=status,
            health=ContainerHealth.HEALTHY if status == ContainerStatus.RUNNING else ContainerHealth.UNKNOWN,
            provider=self.provider_type,
            region=self.region,
            endpoint=f"http://{public_ip}:{port}" if public_ip else None,
            public_ip=public_ip,
            private_ip=private_ip,
            created_at=created,
            updated_at=datetime.now(timezone.utc),
            metadata={"zone": self.zone, "project": self.project_id, "labels": labels, "rawStatus": str(inst.status)},
        )

    def get_container(self, container_id: str) -> Optional[ContainerInstance]:
        try:
            inst = self._call(lambda: self.instances.get(project=self.project_id, zone=self.zone, instance=container_id))
        except ProviderError as exc:
            if exc.error_type == ProviderErrorType.NOT_FOUND:
                return None
            raise
        return self._snapshot(inst)

    def list_containers(self, filters: Optional[ContainerFilters] = None) -> List[ContainerInstance]:
        filters = filters or ContainerFilters()
        expr = ["labels.managed-by = clawster"]
        wanted = dict(filters.labels or {})
        if filters.workspace:
            wanted["workspace"] = filters.workspace
        for key, value in to_gcp_labels(wanted).items():
            expr.append(f"labels.{key} = {value}")
        request = compute_v1.ListInstancesRequest(project=self.project_id, zone=self.zone, filter=" AND ".join(expr))
        items = self._call(lambda: list(self.instances.list(request=request)))
        snapshots = [self._snapshot(inst) for inst in items]
        if filters.status:
            snapshots = [s for s in snapshots if s.status == filters.status]
        return snapshots

    def get_logs(self, container_id: str, options: Optional[LogOptions] = None) -> LogResult:
        options = options or LogOptions()
        client = cloud_logging.Client(project=self.project_id, credentials=self._credentials())
        clauses = [
            'resource.type="gce_instance"',
            f'labels."compute.googleapis.com/resource_name"="{container_id}"',
        ]
        if options.start:
            clauses.append(f'timestamp>="{options.start.isoformat()}"')
        if options.end:
            clauses.append(f'timestamp<="{options.end.isoformat()}"')
        entries = self._call(
            lambda: list(
                client.list_entries(
                    filter_=" AND ".join(clauses),
                    order_by=cloud_logging.ASCENDING,
                    max_results=options.limit,
                )
            )
        )
        events = []
        for entry in entries:
            payload = entry.payload
            message = payload if isinstance(payload, str) else str((payload or {}).get("message") or payload)
            events.append(LogEvent(timestamp=entry.timestamp or datetime.now(timezone.utc), message=message))
        return LogResult(events=events)

    def _vault(self) -> GceVaultStore:
        return GceVaultStore(project_id=self.project_id, key_filename=self.key_file)

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        return self._call(lambda: self._vault().store_secret(instance_id, key, value))

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        return self._call(lambda: self._vault().get_secret(instance_id, key))

    def delete_secret(self, instance_id: str, key: str) -> None:
        self._call(lambda: self._vault().delete_secret(instance_id, key))

    def get_console_url(self, resource_type: str = "", resource_id: str = "") -> str:
        if resource_id:
            return (
                f"https://console.cloud.google.com/compute/instancesDetail/zones/{self.zone}"
                f"/instances/{resource_id}?project={self.project_id}"
            )
        return f"https://console.cloud.google.com/compute/instances?project={self.project_id}"

