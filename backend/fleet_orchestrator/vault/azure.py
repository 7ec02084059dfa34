import logging
import re
from typing import Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient

from .base import BaseVaultStore, VaultError, secret_name

logger = logging.getLogger(__name__)

DEFAULT_VAULT_NAME = "clawster-vault"


def key_vault_secret_name(instance_id: str, key: str) -> str:
    # Key Vault only accepts alphanumerics and dashes
    name = re.sub(r"[^a-zA-Z0-9-]+", "-", secret_name(instance_id, key, separator="-"))
    return re.sub(r"-{2,}", "-", name).strip("-")[:127]


class AzureVaultStore(BaseVaultStore):
    store_type = "azure"

    def __init__(self, subscription_id: str = "", resource_group: str = "", vault_name: str = DEFAULT_VAULT_NAME):
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.vault_name = vault_name or DEFAULT_VAULT_NAME
        self._client = None

    @property
    def vault_url(self) -> str:
        return f"https://{self.vault_name}.vault.azure.net"

    @property
    def client(self) -> SecretClient:
        if self._client is None:
            self._client = SecretClient(vault_url=self.vault_url, credential=DefaultAzureCredential())
        return self._client

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        name = key_vault_secret_name(instance_id, key)
        try:
            secret = self.client.set_secret(
                name,
                value,
                tags={"managed-by": "clawster", "instance": str(instance_id), "resource-group": self.resource_group},
            )
        except AzureError as exc:
            raise VaultError(f"secret write failed: {exc.__class__.__name__}") from exc
        return str(getattr(secret, "id", "") or name)

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        try:
            return self.client.get_secret(key_vault_secret_name(instance_id, key)).value
        except ResourceNotFoundError:
            return None
        except AzureError as exc:
            raise VaultError(f"secret read failed: {exc.__class__.__name__}") from exc

    def delete_secret(self, instance_id: str, key: str) -> None:
        name = key_vault_secret_name(instance_id, key)
        try:
            self.client.begin_delete_secret(name).wait()
        except ResourceNotFoundError:
            logger.info("secret %s already deleted", name)
        except AzureError as exc:
            raise VaultError(f"secret delete failed: {exc.__class__.__name__}") from exc
