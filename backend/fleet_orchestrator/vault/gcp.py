import logging
from typing import Optional

from google.api_core.exceptions import AlreadyExists, GoogleAPICallError, NotFound
from google.cloud import secretmanager

from .base import BaseVaultStore, VaultError, secret_name

logger = logging.getLogger(__name__)


class GceVaultStore(BaseVaultStore):
    store_type = "gcp"

    def __init__(self, project_id: str = "", key_filename: str = ""):
        self.project_id = project_id
        self.key_filename = key_filename
        self._client = None

    @property
    def client(self) -> secretmanager.SecretManagerServiceClient:
        if self._client is None:
            if self.key_filename:
                self._client = secretmanager.SecretManagerServiceClient.from_service_account_file(self.key_filename)
            else:
                self._client = secretmanager.SecretManagerServiceClient()
        return self._client

    def _secret_path(self, instance_id: str, key: str) -> str:
        if not self.project_id:
            raise VaultError("GCP project id is required for Secret Manager")
        secret_id = secret_name(instance_id, key, separator="-").replace(".", "_")
        return f"projects/{self.project_id}/secrets/{secret_id}"

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        path = self._secret_path(instance_id, key)
        secret_id = path.rsplit("/", 1)[-1]
        try:
            self.client.create_secret(
                request={
                    "parent": f"projects/{self.project_id}",
                    "secret_id": secret_id,
                    "secret": {
                        "replication": {"automatic": {}},
                        "labels": {"managed-by": "clawster"},
                    },
                }
            )
        except AlreadyExists:
            pass
        except GoogleAPICallError as exc:
            raise VaultError(f"secret create failed: {exc.__class__.__name__}") from exc
        try:
            version = self.client.add_secret_version(
                request={"parent": path, "payload": {"data": value.encode("utf-8")}}
            )
        except GoogleAPICallError as exc:
            raise VaultError(f"secret write failed: {exc.__class__.__name__}") from exc
        return str(getattr(version, "name", "") or path)

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        path = self._secret_path(instance_id, key)
        try:
            response = self.client.access_secret_version(request={"name": f"{path}/versions/latest"})
        except NotFound:
            return None
        except GoogleAPICallError as exc:
            raise VaultError(f"secret read failed: {exc.__class__.__name__}") from exc
        return response.payload.data.decode("utf-8")

    def delete_secret(self, instance_id: str, key: str) -> None:
        path = self._secret_path(instance_id, key)
        try:
            self.client.delete_secret(request={"name": path})
        except NotFound:
            logger.info("secret %s already deleted", path)
        except GoogleAPICallError as exc:
            raise VaultError(f"secret delete failed: {exc.__class__.__name__}") from exc
