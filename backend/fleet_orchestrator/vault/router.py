import logging
from typing import Optional

from ..models import BotInstance
from ..targets import resolve_target
from .aws import AwsVaultStore
from .azure import AzureVaultStore
from .base import BaseVaultStore, VaultError
from .gcp import GceVaultStore
from .local import LocalVaultStore

logger = logging.getLogger(__name__)


class VaultRouter:
    """Picks the secret backend that matches where an instance is deployed."""

    def resolve_store(self, instance_id: str) -> BaseVaultStore:
        instance = BotInstance.objects.select_related("deployment_target").filter(id=instance_id).first()
        if not instance:
            raise VaultError(f"Bot instance {instance_id} not found")
        return self.store_for_instance(instance)

    def store_for_instance(self, instance: BotInstance) -> BaseVaultStore:
        target = resolve_target(instance)
        cfg = target.config
        if target.deployment_type == "ECS_EC2":
            return AwsVaultStore(region=str(cfg.get("region") or "us-east-1"))
        if target.deployment_type == "GCE":
            return GceVaultStore(
                project_id=str(cfg.get("projectId") or ""),
                key_filename=str(cfg.get("keyFilePath") or ""),
            )
        if target.deployment_type == "AZURE_VM":
            return AzureVaultStore(
                subscription_id=str(cfg.get("subscriptionId") or ""),
                resource_group=str(cfg.get("resourceGroup") or ""),
                vault_name=str(cfg.get("keyVaultName") or "clawster-vault"),
            )
        return LocalVaultStore()

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        store = self.resolve_store(instance_id)
        ref = store.store_secret(str(instance_id), key, value)
        logger.info("stored secret %s for instance %s in %s store", key, instance_id, store.store_type)
        return ref

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        return self.resolve_store(instance_id).get_secret(str(instance_id), key)

    def delete_secret(self, instance_id: str, key: str) -> None:
        self.resolve_store(instance_id).delete_secret(str(instance_id), key)


vault_router = VaultRouter()
