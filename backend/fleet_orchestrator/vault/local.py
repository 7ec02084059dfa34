import base64
import hashlib
import json
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings

from ..models import VaultSecret
from .base import BaseVaultStore, VaultError


def _master_fernet() -> Fernet:
    raw = str(os.environ.get("CLAWSTER_VAULT_KEY") or getattr(settings, "SECRET_KEY", "") or "").strip()
    if not raw:
        raise VaultError("Missing CLAWSTER_VAULT_KEY")
    try:
        return Fernet(raw.encode("utf-8"))
    except Exception:
        digest = hashlib.sha256(raw.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(digest))


def seal(value: str) -> str:
    """Encrypts with a fresh data key, which is itself wrapped by the master key."""
    data_key = Fernet.generate_key()
    ciphertext = Fernet(data_key).encrypt(value.encode("utf-8"))
    wrapped_key = _master_fernet().encrypt(data_key)
    return json.dumps({"v": 1, "dek": wrapped_key.decode("utf-8"), "ct": ciphertext.decode("utf-8")})


def unseal(envelope: str) -> str:
    try:
        payload = json.loads(envelope)
        data_key = _master_fernet().decrypt(payload["dek"].encode("utf-8"))
        return Fernet(data_key).decrypt(payload["ct"].encode("utf-8")).decode("utf-8")
    except (InvalidToken, KeyError, TypeError, ValueError) as exc:
        raise VaultError("Secret decryption failed") from exc


class LocalVaultStore(BaseVaultStore):
    store_type = "local"

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        if not key:
            raise VaultError("secret key is required")
        VaultSecret.objects.update_or_create(
            instance_id=str(instance_id),
            key=key,
            defaults={"encrypted_value": seal(str(value))},
        )
        return f"local:{instance_id}/{key}"

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        row = VaultSecret.objects.filter(instance_id=str(instance_id), key=key).first()
        if not row:
            return None
        return unseal(row.encrypted_value)

    def delete_secret(self, instance_id: str, key: str) -> None:
        VaultSecret.objects.filter(instance_id=str(instance_id), key=key).delete()
