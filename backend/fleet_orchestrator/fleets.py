import copy
import json
import logging
from typing import Any, Dict, Optional

from django.utils import timezone

from .audit import record_audit_event
from .models import BotInstance, Fleet

logger = logging.getLogger(__name__)

PROMOTION_CHAIN = {"dev": "staging", "staging": "prod"}
REQUEUE_STATES = ("RUNNING", "DEGRADED")


class PromotionError(ValueError):
    pass


def next_environment(environment: str) -> Optional[str]:
    return PROMOTION_CHAIN.get(environment)


def fleet_payload(fleet: Fleet) -> Dict[str, Any]:
    return {
        "id": str(fleet.id),
        "name": fleet.name,
        "workspace": fleet.workspace,
        "environment": fleet.environment,
        "status": fleet.status,
        "tags": fleet.tags_json or {},
        "createdAt": fleet.created_at,
        "updatedAt": fleet.updated_at,
    }


def _load_manifest(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, dict):
        raise ValueError("manifest is not an object")
    return copy.deepcopy(raw)


def promote(fleet_id: Any, target_environment: str, *, actor: str = "system") -> Dict[str, Any]:
    """Moves a fleet one step along dev -> staging -> prod.

    Each instance's manifest environment is rewritten; running instances are
    requeued to PENDING so the reconciler redeploys them. Instances whose
    manifest cannot be read are skipped. The loop is not transactional: a
    crash part way through leaves the remaining instances unpromoted.
    """
    fleet = Fleet.objects.filter(id=fleet_id).first()
    if not fleet:
        raise PromotionError(f"Fleet {fleet_id} not found")
    current = fleet.environment
    expected = next_environment(current)
    if expected is None:
        raise PromotionError(f"Fleet is already in {current}; it cannot be promoted further")
    if target_environment != expected:
        raise PromotionError(f"Cannot promote from {current} to {target_environment}; next environment is {expected}")

    Fleet.objects.filter(id=fleet.id).update(environment=target_environment, updated_at=timezone.now())

    reconciling = 0
    updated = 0
    skipped = 0
    for instance in BotInstance.objects.filter(fleet_id=fleet.id).order_by("created_at"):
        try:
            manifest = _load_manifest(instance.desired_manifest_json)
        except (TypeError, ValueError) as exc:
            logger.warning("skipping instance %s during promotion: %s", instance.id, exc)
            skipped += 1
            continue
        metadata = manifest.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
            manifest["metadata"] = metadata
        metadata["environment"] = target_environment
        fields: Dict[str, Any] = {
            "desired_manifest_json": manifest,
            "manifest_version": instance.manifest_version + 1,
            "updated_at": timezone.now(),
        }
        if instance.status in REQUEUE_STATES:
            fields["status"] = "PENDING"
            fields["status_changed_at"] = timezone.now()
        written = BotInstance.objects.filter(id=instance.id, status=instance.status).update(**fields)
        if not written:
            logger.warning("instance %s changed state during promotion, manifest left unchanged", instance.id)
            skipped += 1
            continue
        updated += 1
        if "status" in fields:
            reconciling += 1

    record_audit_event(
        action="fleet.promote",
        resource_type="fleet",
        resource_id=fleet.id,
        actor=actor,
        diff_summary={"changed_fields": ["environment"], "diff": {"environment": {"from": current, "to": target_environment}}},
        metadata={"updated": updated, "reconciling": reconciling, "skipped": skipped},
    )
    logger.info(
        "promoted fleet %s from %s to %s (%s instances, %s requeued)", fleet.id, current, target_environment, updated, reconciling
    )
    fleet.refresh_from_db()
    return {
        "fleet": fleet_payload(fleet),
        "fromEnvironment": current,
        "toEnvironment": target_environment,
        "botsUpdated": updated,
        "botsReconciling": reconciling,
        "botsSkipped": skipped,
    }
