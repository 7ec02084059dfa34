import base64
import logging
import os
import shlex
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient

from ..provider_utils import (
    ProviderError,
    ProviderErrorType,
    generate_tags,
    sanitize_resource_name,
    to_azure_tags,
)
from ..vault.azure import AzureVaultStore
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

DEFAULT_REGION = "eastus"
DEFAULT_VM_SIZE = os.environ.get("CLAWSTER_AZURE_VM_SIZE", "Standard_B2s")
DEFAULT_IMAGE = os.environ.get("CLAWSTER_BOT_IMAGE", "ghcr.io/openclaw/openclaw:latest")
ADMIN_USERNAME = "clawster"
UBUNTU_IMAGE = {
    "publisher": "Canonical",
    "offer": "0001-com-ubuntu-server-jammy",
    "sku": "22_04-lts-gen2",
    "version": "latest",
}
POWER_STATE_MAP = {
    "running": ContainerStatus.RUNNING,
    "starting": ContainerStatus.PENDING,
    "stopping": ContainerStatus.STOPPED,
    "stopped": ContainerStatus.STOPPED,
    "deallocating": ContainerStatus.STOPPED,
    "deallocated": ContainerStatus.STOPPED,
}


def build_cloud_init(config: ContainerDeploymentConfig, vault_name: str, secret_names: Dict[str, str]) -> str:
    env_args = [f"-e {shlex.quote(f'{k}={v}')}" for k, v in sorted((config.environment or {}).items())]
    fetch = []
    for key, name in sorted(secret_names.items()):
        fetch.append(
            f"  - {key}=$(az keyvault secret show --vault-name {vault_name} --name {name} --query value -o tsv)"
            f" && echo {key}=${key} >> /etc/clawster/{config.name}.env"
        )
    ports = " ".join(f"-p {int(p)}:{int(p)}" for p in config.ports or [])
    command = " ".join(shlex.quote(part) for part in config.command or [])
    run = " ".join(
        part
        for part in [
            "docker run -d --restart unless-stopped",
            f"--name {shlex.quote(config.name)}",
            f"--env-file /etc/clawster/{config.name}.env",
            f"--memory {int(config.memory)}m",
            ports,
            " ".join(env_args),
            shlex.quote(config.image),
            command,
        ]
        if part
    )
    lines = [
        "#cloud-config",
        "package_update: true",
        "packages:",
        "  - docker.io",
        "runcmd:",
        "  - mkdir -p /etc/clawster",
        f"  - touch /etc/clawster/{config.name}.env",
        "  - curl -sL https://aka.ms/InstallAzureCLIDeb | bash",
        "  - az login --identity",
        *fetch,
        "  - systemctl enable --now docker",
        f"  - {run}",
    ]
    return "\n".join(lines) + "\n"


class AzureVmProvider(BaseProvider):
    provider_type = "azure-vm"
    display_name = "Azure"

    def __init__(self):
        super().__init__()
        self.region = DEFAULT_REGION
        self.subscription_id = ""
        self.resource_group = ""
        self.vault_name = "clawster-vault"
        self._compute = None
        self._network = None

    def initialize(self, config: Dict[str, Any]) -> None:
        super().initialize(config)
        self.region = str(self.config.get("region") or DEFAULT_REGION)
        self.subscription_id = str(self.config.get("subscriptionId") or os.environ.get("AZURE_SUBSCRIPTION_ID") or "")
        self.resource_group = str(self.config.get("resourceGroup") or f"clawster-{sanitize_resource_name(self.workspace)}")
        self.vault_name = str(self.config.get("keyVaultName") or "clawster-vault")
        self._compute = None
        self._network = None

    def _credential(self):
        client_id = self.config.get("clientId")
        client_secret = self.config.get("clientSecret")
        tenant_id = self.config.get("tenantId")
        if client_id and client_secret and tenant_id:
            return ClientSecretCredential(tenant_id=tenant_id, client_id=client_id, client_secret=client_secret)
        return DefaultAzureCredential()

    @property
    def compute(self) -> ComputeManagementClient:
        if self._compute is None:
            self._compute = ComputeManagementClient(self._credential(), self.subscription_id)
        return self._compute

    @property
    def network(self) -> NetworkManagementClient:
        if self._network is None:
            self._network = NetworkManagementClient(self._credential(), self.subscription_id)
        return self._network

    def _names(self) -> Dict[str, str]:
        base = f"clawster-{sanitize_resource_name(self.workspace)}"
        return {"vnet": f"{base}-vnet", "subnet": "bots", "nsg": f"{base}-nsg"}

    def _vm_name(self, name: str) -> str:
        return sanitize_resource_name(f"clawster-{name}", max_length=64)

    def validate(self) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        if not self.subscription_id:
            errors.append("Azure subscription id is not configured (subscriptionId)")
        if not self.config.get("sshPublicKey") and not os.environ.get("CLAWSTER_AZURE_SSH_PUBLIC_KEY"):
            warnings.append("No sshPublicKey configured; VMs cannot be created until one is set.")
        if errors:
            return ValidationResult(valid=False, errors=errors, warnings=warnings)
        try:
            self._call(lambda: list(self.compute.virtual_machines.list(self.resource_group)))
        except ProviderError as exc:
            if exc.error_type == ProviderErrorType.NOT_FOUND:
                warnings.append(f"Resource group {self.resource_group} does not exist yet; bootstrap will create it.")
            else:
                errors.append(f"Cannot access Azure compute: {exc.message}")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def bootstrap(self, options: BootstrapOptions, on_progress=None) -> CloudResources:
        self.workspace = options.workspace or self.workspace
        tags = to_azure_tags(generate_tags(self.workspace, options.tags))
        names = self._names()

        report(on_progress, "resource_group", f"Ensuring resource group {self.resource_group}")
        resources = ResourceManagementClient(self._credential(), self.subscription_id)
        self._call(
            lambda: resources.resource_groups.create_or_update(
                self.resource_group, {"location": self.region, "tags": tags}
            )
        )

        report(on_progress, "network", "Ensuring network security group and virtual network")
        try:
            nsg = self._call(lambda: self.network.network_security_groups.get(self.resource_group, names["nsg"]))
        except ProviderError as exc:
            if exc.error_type != ProviderErrorType.NOT_FOUND:
                raise
            nsg = self._call(
                lambda: self.network.network_security_groups.begin_create_or_update(
                    self.resource_group,
                    names["nsg"],
                    {
                        "location": self.region,
                        "tags": tags,
                        "security_rules": [
                            {
                                "name": "allow-gateway",
                                "protocol": "Tcp",
                                "direction": "Inbound",
                                "access": "Allow",
                                "priority": 1000,
                                "source_address_prefix": str(self.config.get("allowedCidr") or "*"),
                                "source_port_range": "*",
                                "destination_address_prefix": "*",
                                "destination_port_range": "18789-18799",
                            }
                        ],
                    },
                ).result()
            )
        try:
            vnet = self._call(lambda: self.network.virtual_networks.get(self.resource_group, names["vnet"]))
        except ProviderError as exc:
            if exc.error_type != ProviderErrorType.NOT_FOUND:
                raise
            vnet = self._call(
                lambda: self.network.virtual_networks.begin_create_or_update(
                    self.resource_group,
                    names["vnet"],
                    {
                        "location": self.region,
                        "tags": tags,
                        "address_space": {"address_prefixes": ["10.43.0.0/16"]},
                        "subnets": [
                            {
                                "name": names["subnet"],
                                "address_prefix": "10.43.0.0/24",
                                "network_security_group": {"id": nsg.id},
                            }
                        ],
                    },
                ).result()
            )
        if options.enable_logging:
            report(on_progress, "logging", "Boot diagnostics enabled on VMs")
        return CloudResources(
            provider=self.provider_type,
            region=self.region,
            network={"vnetId": getattr(vnet, "id", ""), "securityGroupId": getattr(nsg, "id", "")},
            logging={"logDriver": "boot-diagnostics"},
            metadata={"resourceGroup": self.resource_group, "subscriptionId": self.subscription_id},
        )

    def _subnet_id(self) -> str:
        names = self._names()
        subnet = self._call(lambda: self.network.subnets.get(self.resource_group, names["vnet"], names["subnet"]))
        return subnet.id

    def deploy_container(self, config: ContainerDeploymentConfig, manifest: Dict[str, Any]) -> ContainerInstance:
        ssh_key = str(self.config.get("sshPublicKey") or os.environ.get("CLAWSTER_AZURE_SSH_PUBLIC_KEY") or "")
        if not ssh_key:
            raise ProviderError(
                "An SSH public key is required to create Azure VMs",
                ProviderErrorType.AUTHENTICATION,
                suggestions=["Set sshPublicKey on the deployment target", "Set CLAWSTER_AZURE_SSH_PUBLIC_KEY"],
            )
        vm_name = self._vm_name(config.name)
        tags = to_azure_tags(generate_tags(self.workspace, self.resource_labels(config)))
        secret_names = {}
        for key, value in sorted((config.secrets or {}).items()):
            ref = self.store_secret(config.name, key, value)
            secret_names[key] = ref.rstrip("/").split("/secrets/")[-1].split("/")[0]
        image = config.image or str(self.config.get("image") or DEFAULT_IMAGE)
        custom_data = build_cloud_init(config.merged({"image": image}), self.vault_name, secret_names)

        public_ip = self._call(
            lambda: self.network.public_ip_addresses.begin_create_or_update(
                self.resource_group,
                f"{vm_name}-ip",
                {"location": self.region, "tags": tags, "sku": {"name": "Standard"}, "public_ip_allocation_method": "Static"},
            ).result()
        )
        nic = self._call(
            lambda: self.network.network_interfaces.begin_create_or_update(
                self.resource_group,
                f"{vm_name}-nic",
                {
                    "location": self.region,
                    "tags": tags,
                    "ip_configurations": [
                        {
                            "name": "primary",
                            "subnet": {"id": self._subnet_id()},
                            "public_ip_address": {"id": public_ip.id},
                        }
                    ],
                },
            ).result()
        )
        logger.info("creating Azure VM %s in %s", vm_name, self.resource_group)
        self._call(
            lambda: self.compute.virtual_machines.begin_create_or_update(
                self.resource_group,
                vm_name,
                {
                    "location": self.region,
                    "tags": tags,
                    "identity": {"type": "SystemAssigned"},
                    "hardware_profile": {"vm_size": str(self.config.get("vmSize") or DEFAULT_VM_SIZE)},
                    "storage_profile": {
                        "image_reference": UBUNTU_IMAGE,
                        "os_disk": {"create_option": "FromImage", "delete_option": "Delete"},
                    },
                    "os_profile": {
                        "computer_name": vm_name,
                        "admin_username": ADMIN_USERNAME,
                        "custom_data": base64.b64encode(custom_data.encode("utf-8")).decode("utf-8"),
                        "linux_configuration": {
                            "disable_password_authentication": True,
                            "ssh": {
                                "public_keys": [
                                    {"path": f"/home/{ADMIN_USERNAME}/.ssh/authorized_keys", "key_data": ssh_key}
                                ]
                            },
                        },
                    },
                    "network_profile": {"network_interfaces": [{"id": nic.id, "primary": True}]},
                    "diagnostics_profile": {"boot_diagnostics": {"enabled": True}},
                },
            ).result()
        )
        return self.get_container(vm_name) or ContainerInstance(
            id=vm_name, name=config.name, status=ContainerStatus.CREATING, provider=self.provider_type, region=self.region
        )

    def update_container(self, container_id: str, config: ContainerDeploymentConfig) -> ContainerInstance:
        # custom data is only read at first boot, so the VM is replaced
        self.delete_container(container_id)
        return self.deploy_container(config, {})

    def start_container(self, container_id: str) -> None:
        self._call(lambda: self.compute.virtual_machines.begin_start(self.resource_group, container_id).result())

    def stop_container(self, container_id: str) -> None:
        if not self._call_ignoring_missing(
            lambda: self.compute.virtual_machines.begin_deallocate(self.resource_group, container_id).result()
        ):
            logger.warning("Azure VM %s already gone", container_id)

    def delete_container(self, container_id: str) -> None:
        if not self._call_ignoring_missing(
            lambda: self.compute.virtual_machines.begin_delete(self.resource_group, container_id).result()
        ):
            logger.info("Azure VM %s already deleted", container_id)
        self._call_ignoring_missing(
            lambda: self.network.network_interfaces.begin_delete(self.resource_group, f"{container_id}-nic").result()
        )
        self._call_ignoring_missing(
            lambda: self.network.public_ip_addresses.begin_delete(self.resource_group, f"{container_id}-ip").result()
        )

    def _snapshot(self, vm, view=None) -> ContainerInstance:
        status = ContainerStatus.PENDING
        provisioning = ""
        for entry in getattr(view, "statuses", None) or []:
            code = str(getattr(entry, "code", "") or "")
            if code.startswith("PowerState/"):
                status = POWER_STATE_MAP.get(code.split("/", 1)[1], ContainerStatus.PENDING)
            elif code.startswith("ProvisioningState/"):
                provisioning = code.split("/", 1)[1]
        if provisioning.startswith("failed"):
            status = ContainerStatus.ERROR
        elif provisioning == "deleting":
            status = ContainerStatus.DELETING
        elif provisioning == "creating" and status == ContainerStatus.PENDING:
            status = ContainerStatus.CREATING
        tags = dict(getattr(vm, "tags", None) or {})
        return ContainerInstance(
            id=vm.name,
            name=tags.get("instance") or vm.name,
            status=status,
            health=ContainerHealth.HEALTHY if status == ContainerStatus.RUNNING else ContainerHealth.UNKNOWN,
            provider=self.provider_type,
            region=getattr(vm, "location", None) or self.region,
            created_at=getattr(vm, "time_created", None),
            updated_at=datetime.now(timezone.utc),
            metadata={"resourceGroup": self.resource_group, "vmId": getattr(vm, "vm_id", None), "tags": tags},
        )

    def get_container(self, container_id: str) -> Optional[ContainerInstance]:
        try:
            vm = self._call(lambda: self.compute.virtual_machines.get(self.resource_group, container_id))
            view = self._call(lambda: self.compute.virtual_machines.instance_view(self.resource_group, container_id))
        except ProviderError as exc:
            if exc.error_type == ProviderErrorType.NOT_FOUND:
                return None
            raise
        snapshot = self._snapshot(vm, view)
        try:
            ip = self._call(lambda: self.network.public_ip_addresses.get(self.resource_group, f"{container_id}-ip"))
            snapshot.public_ip = getattr(ip, "ip_address", None)
        except ProviderError:
            snapshot.public_ip = None
        if snapshot.public_ip:
            snapshot.endpoint = f"http://{snapshot.public_ip}:{self.config.get('gatewayPort') or 18789}"
        return snapshot

    def list_containers(self, filters: Optional[ContainerFilters] = None) -> List[ContainerInstance]:
        filters = filters or ContainerFilters()
        vms = self._call(lambda: list(self.compute.virtual_machines.list(self.resource_group)))
        results = []
        for vm in vms:
            tags = dict(vm.tags or {})
            if tags.get("managed-by") != "clawster":
                continue
            if filters.workspace and tags.get("workspace") != filters.workspace:
                continue
            if any(tags.get(k) != v for k, v in (filters.labels or {}).items()):
                continue
            view = self._call(lambda: self.compute.virtual_machines.instance_view(self.resource_group, vm.name))
            snapshot = self._snapshot(vm, view)
            if filters.status and snapshot.status != filters.status:
                continue
            results.append(snapshot)
        return results

    def get_logs(self, container_id: str, options: Optional[LogOptions] = None) -> LogResult:
        options = options or LogOptions()
        data = self._call(
            lambda: self.compute.virtual_machines.retrieve_boot_diagnostics_data(self.resource_group, container_id)
        )
        uri = getattr(data, "serial_console_log_blob_uri", None)
        if not uri:
            return LogResult()
        response = self._call(lambda: requests.get(uri, timeout=30))
        response.raise_for_status()
        now = datetime.now(timezone.utc)
        lines = [line for line in response.text.splitlines() if line.strip()]
        if options.limit:
            lines = lines[-options.limit:]
        return LogResult(events=[LogEvent(timestamp=now, message=line) for line in lines])

    def _vault(self) -> AzureVaultStore:
        return AzureVaultStore(
            subscription_id=self.subscription_id, resource_group=self.resource_group, vault_name=self.vault_name
        )

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        return self._call(lambda: self._vault().store_secret(instance_id, key, value))

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        return self._call(lambda: self._vault().get_secret(instance_id, key))

    def delete_secret(self, instance_id: str, key: str) -> None:
        self._call(lambda: self._vault().delete_secret(instance_id, key))

    def get_console_url(self, resource_type: str = "", resource_id: str = "") -> str:
        if resource_id:
            return (
                "https://portal.azure.com/#@/resource/subscriptions/"
                f"{self.subscription_id}/resourceGroups/{self.resource_group}"
                f"/providers/Microsoft.Compute/virtualMachines/{resource_id}/overview"
            )
        return f"https://portal.azure.com/#@/resource/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}/overview"
