import re
from typing import Optional


class VaultError(RuntimeError):
    pass


def secret_name(instance_id: str, key: str, separator: str = "/") -> str:
    safe_key = re.sub(r"[^a-zA-Z0-9._-]+", "-", str(key or "").strip()).strip("-")
    if not safe_key:
        raise VaultError("secret key is required")
    return separator.join(["clawster", str(instance_id), safe_key])


class BaseVaultStore:
    store_type = ""

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        raise NotImplementedError

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        raise NotImplementedError

    def delete_secret(self, instance_id: str, key: str) -> None:
        raise NotImplementedError
