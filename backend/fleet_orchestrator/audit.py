import hashlib
import json
import logging
from typing import Any, Dict, Iterable, Optional

from django.db import IntegrityError, transaction

from .models import AuditEvent

logger = logging.getLogger(__name__)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _small_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        if len(value) > 280:
            return {"preview": value[:200], "hash": hashlib.sha256(value.encode("utf-8")).hexdigest()}
        return value
    if isinstance(value, (int, float, bool)):
        return value
    return {"hash": hashlib.sha256(_canonical_json(value).encode("utf-8")).hexdigest()}


def summarize_diff(before: Dict[str, Any], after: Dict[str, Any], fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    keys = list(fields) if fields is not None else sorted(set(before.keys()) | set(after.keys()))
    changed_fields = []
    diff: Dict[str, Dict[str, Any]] = {}
    for key in keys:
        if before.get(key) != after.get(key):
            changed_fields.append(key)
            diff[key] = {"from": _small_value(before.get(key)), "to": _small_value(after.get(key))}
    return {"changed_fields": changed_fields, "diff": diff}


def make_dedupe_key(action: str, resource_id: str, payload: Optional[Dict[str, Any]] = None) -> str:
    if payload is None:
        return f"{action}:{resource_id}"
    digest = hashlib.sha256(_canonical_json(payload).encode("utf-8")).hexdigest()
    return f"{action}:{resource_id}:{digest}"


def record_audit_event(
    *,
    action: str,
    resource_type: str,
    resource_id: Any,
    actor: str = "system",
    diff_summary: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    dedupe_key: str = "",
) -> Optional[AuditEvent]:
    if dedupe_key and AuditEvent.objects.filter(dedupe_key=dedupe_key).exists():
        return None
    try:
        with transaction.atomic():
            return AuditEvent.objects.create(
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id),
                actor=actor or "system",
                diff_summary_json=diff_summary or {},
                metadata_json=metadata or {},
                dedupe_key=dedupe_key or None,
            )
    except IntegrityError:
        logger.debug("duplicate audit event %s ignored", dedupe_key)
        return None
