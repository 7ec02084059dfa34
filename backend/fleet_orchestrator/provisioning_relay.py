import json
import logging
import os
import threading
import time
from typing import Any, Dict, Optional

import redis

from .provisioning_events import ProvisioningHub, provisioning_hub

logger = logging.getLogger(__name__)

RELAY_CHANNEL = os.environ.get("CLAWSTER_PROVISIONING_CHANNEL", "clawster:provisioning")
RELAY_RETRY_SECONDS = 5

_listener_lock = threading.Lock()
_listener: Optional[threading.Thread] = None


def relay_enabled() -> bool:
    return os.environ.get("CLAWSTER_PROVISIONING_RELAY", "1").strip() not in ("0", "false", "no")


def _redis_url() -> str:
    return os.environ.get("CLAWSTER_JOBS_REDIS_URL", "redis://redis:6379/0")


def _connection() -> redis.Redis:
    return redis.Redis.from_url(_redis_url())


def publish_op(op: str, payload: Dict[str, Any], conn: Optional[redis.Redis] = None) -> None:
    if not relay_enabled():
        return
    (conn or _connection()).publish(RELAY_CHANNEL, json.dumps({"op": op, "payload": payload}))


def attach_publisher(hub: ProvisioningHub = provisioning_hub) -> None:
    """Mirrors every hub mutation to redis so the API process can serve it."""
    if not relay_enabled() or hub.publisher is not None:
        return
    conn = _connection()

    def publish(op: str, payload: Dict[str, Any]) -> None:
        publish_op(op, payload, conn)

    hub.publisher = publish


def _listen(hub: ProvisioningHub) -> None:
    while True:
        try:
            pubsub = _connection().pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(RELAY_CHANNEL)
            logger.info("listening for provisioning events on %s", RELAY_CHANNEL)
            for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    data = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("dropping malformed provisioning relay message")
                    continue
                hub.apply_remote(str(data.get("op") or ""), data.get("payload") or {})
        except redis.RedisError as exc:
            logger.warning("provisioning relay disconnected: %s", exc)
            time.sleep(RELAY_RETRY_SECONDS)


def ensure_relay_listener(hub: ProvisioningHub = provisioning_hub) -> bool:
    global _listener
    if not relay_enabled():
        return False
    with _listener_lock:
        if _listener is not None and _listener.is_alive():
            return True
        _listener = threading.Thread(target=_listen, args=(hub,), name="provisioning-relay", daemon=True)
        _listener.start()
    return True
