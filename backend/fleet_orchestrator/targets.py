from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .models import BotInstance

DEFAULT_GATEWAY_PORT = 18789
DEFAULT_ECS_REGION = "us-east-1"
DEFAULT_GCE_ZONE = "us-central1-a"
DEFAULT_AZURE_REGION = "eastus"
DEFAULT_KEY_VAULT_NAME = "clawster-vault"

DEPLOYMENT_TYPES = ("LOCAL", "DOCKER", "ECS_EC2", "GCE", "AZURE_VM")


@dataclass
class ResolvedTarget:
    deployment_type: str
    config: Dict[str, Any] = field(default_factory=dict)
    source: str = "metadata"


def normalize_deployment_type(value: Optional[str]) -> str:
    """Null means LOCAL; anything unrecognised is treated as a plain docker host."""
    if not value:
        return "LOCAL"
    value = str(value).strip().upper().replace("-", "_")
    if value == "AZURE":
        value = "AZURE_VM"
    return value if value in DEPLOYMENT_TYPES else "DOCKER"


def _first(cfg: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = cfg.get(key)
        if value not in (None, ""):
            return value
    return default


def _config_for(deployment_type: str, cfg: Dict[str, Any], instance: BotInstance) -> Dict[str, Any]:
    base: Dict[str, Any] = {"workspace": instance.workspace or "default", "profileName": instance.name}
    if deployment_type == "DOCKER":
        base.update(
            {
                "containerName": _first(cfg, "containerName", default=f"openclaw-{instance.name}"),
                "image": _first(cfg, "imageName", "image", default="openclaw:local"),
                "configPath": _first(cfg, "configPath", default=f"/var/openclaw/{instance.name}"),
                "gatewayPort": _first(cfg, "gatewayPort", default=instance.gateway_port or DEFAULT_GATEWAY_PORT),
                "networkName": cfg.get("networkName"),
                "dockerHost": cfg.get("dockerHost"),
            }
        )
    elif deployment_type == "ECS_EC2":
        base.update(
            {
                "region": _first(cfg, "region", "awsRegion", default=DEFAULT_ECS_REGION),
                "cpu": cfg.get("cpu"),
                "memory": cfg.get("memory"),
                "image": cfg.get("image"),
                "instanceType": cfg.get("instanceType"),
                "certificateArn": cfg.get("certificateArn"),
                "useSharedInfra": cfg.get("useSharedInfra", True),
            }
        )
    elif deployment_type == "GCE":
        base.update(
            {
                "projectId": _first(cfg, "projectId", "gcpProjectId", default=""),
                "zone": _first(cfg, "zone", "gcpZone", default=DEFAULT_GCE_ZONE),
                "keyFilePath": cfg.get("keyFilePath"),
                "machineType": cfg.get("machineType"),
                "image": cfg.get("image"),
            }
        )
    elif deployment_type == "AZURE_VM":
        base.update(
            {
                "subscriptionId": _first(cfg, "subscriptionId", "azureSubscriptionId", default=""),
                "resourceGroup": _first(cfg, "resourceGroup", "azureResourceGroup", default=""),
                "region": _first(cfg, "region", "azureRegion", default=DEFAULT_AZURE_REGION),
                "keyVaultName": _first(cfg, "keyVaultName", default=DEFAULT_KEY_VAULT_NAME),
                "vmSize": cfg.get("vmSize"),
                "image": cfg.get("image"),
            }
        )
    else:
        base.update({"gatewayPort": instance.gateway_port or DEFAULT_GATEWAY_PORT})
    return {key: value for key, value in base.items() if value is not None}


def resolve_target(instance: BotInstance) -> ResolvedTarget:
    target = instance.deployment_target
    if target is not None:
        deployment_type = normalize_deployment_type(target.type)
        cfg = target.config_json if isinstance(target.config_json, dict) else {}
        return ResolvedTarget(deployment_type, _config_for(deployment_type, cfg, instance), source="target")
    deployment_type = normalize_deployment_type(instance.deployment_type)
    cfg = instance.metadata_json if isinstance(instance.metadata_json, dict) else {}
    return ResolvedTarget(deployment_type, _config_for(deployment_type, cfg, instance), source="metadata")
