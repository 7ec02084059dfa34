import logging
import os
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .base import BaseVaultStore, VaultError, secret_name

logger = logging.getLogger(__name__)


class AwsVaultStore(BaseVaultStore):
    store_type = "aws"

    def __init__(self, region: str = "us-east-1", kms_key_id: str = ""):
        self.region = region or "us-east-1"
        self.kms_key_id = kms_key_id or os.environ.get("CLAWSTER_SECRETS_KMS_KEY_ID", "").strip()

    def _client(self):
        return boto3.client("secretsmanager", region_name=self.region)

    def _tags(self, instance_id: str, key: str) -> List[Dict[str, str]]:
        return [
            {"Key": "managed-by", "Value": "clawster"},
            {"Key": "clawster:instance", "Value": str(instance_id)},
            {"Key": "clawster:key", "Value": str(key)},
        ]

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        if not value:
            raise VaultError("secret value is required")
        name = secret_name(instance_id, key)
        client = self._client()
        try:
            kwargs = {"Name": name, "SecretString": value, "Tags": self._tags(instance_id, key)}
            if self.kms_key_id:
                kwargs["KmsKeyId"] = self.kms_key_id
            response = client.create_secret(**kwargs)
        except client.exceptions.ResourceExistsException:
            response = client.put_secret_value(SecretId=name, SecretString=value)
        except (ClientError, BotoCoreError) as exc:
            raise VaultError(f"secret write failed: {exc.__class__.__name__}") from exc
        return str(response.get("ARN") or name)

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        client = self._client()
        try:
            response = client.get_secret_value(SecretId=secret_name(instance_id, key))
        except client.exceptions.ResourceNotFoundException:
            return None
        except (ClientError, BotoCoreError) as exc:
            raise VaultError(f"secret read failed: {exc.__class__.__name__}") from exc
        return response.get("SecretString")

    def delete_secret(self, instance_id: str, key: str) -> None:
        client = self._client()
        name = secret_name(instance_id, key)
        try:
            client.delete_secret(SecretId=name, ForceDeleteWithoutRecovery=True)
        except client.exceptions.ResourceNotFoundException:
            logger.info("secret %s already deleted", name)
        except (ClientError, BotoCoreError) as exc:
            raise VaultError(f"secret delete failed: {exc.__class__.__name__}") from exc
