import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from django.utils import timezone

from .audit import record_audit_event, summarize_diff
from .models import BotInstance, ChangeSet

logger = logging.getLogger(__name__)

ROLLOUT_STRATEGIES = ("ALL", "PERCENTAGE", "CANARY")
CHANGE_TYPES = ("UPDATE", "ROLLBACK", "PROMOTE")
TERMINAL_STATUSES = ("COMPLETED", "FAILED")
MAX_PROGRESS_RETRIES = 5


class ChangeSetError(ValueError):
    pass


class ChangeSetNotFound(ChangeSetError):
    pass


def _get(change_set_id: Any) -> ChangeSet:
    change_set = ChangeSet.objects.select_related("bot_instance").filter(id=change_set_id).first()
    if not change_set:
        raise ChangeSetNotFound(f"Change set {change_set_id} not found")
    return change_set


def change_set_payload(change_set: ChangeSet) -> Dict[str, Any]:
    return {
        "id": str(change_set.id),
        "botInstanceId": str(change_set.bot_instance_id),
        "changeType": change_set.change_type,
        "description": change_set.description,
        "fromManifest": change_set.from_manifest_json,
        "toManifest": change_set.to_manifest_json,
        "rolloutStrategy": change_set.rollout_strategy,
        "rolloutPercentage": change_set.rollout_percentage,
        "canaryInstances": change_set.canary_instances_json or [],
        "status": change_set.status,
        "totalInstances": change_set.total_instances,
        "updatedInstances": change_set.updated_instances,
        "failedInstances": change_set.failed_instances,
        "canRollback": change_set.can_rollback and change_set.rolled_back_at is None,
        "rolledBackAt": change_set.rolled_back_at,
        "rolledBackBy": change_set.rolled_back_by or None,
        "createdBy": change_set.created_by,
        "startedAt": change_set.started_at,
        "completedAt": change_set.completed_at,
        "createdAt": change_set.created_at,
    }


def create(
    *,
    bot_instance_id: Any,
    to_manifest: Dict[str, Any],
    from_manifest: Optional[Dict[str, Any]] = None,
    change_type: str = "UPDATE",
    description: str = "",
    rollout_strategy: str = "ALL",
    rollout_percentage: Optional[int] = None,
    canary_instances: Optional[List[str]] = None,
    total_instances: int = 1,
    created_by: str = "system",
) -> ChangeSet:
    bot = BotInstance.objects.filter(id=bot_instance_id).first()
    if not bot:
        raise ChangeSetNotFound(f"Bot instance {bot_instance_id} not found")
    change_type = (change_type or "UPDATE").upper()
    if change_type not in CHANGE_TYPES:
        raise ChangeSetError(f"Unknown change type {change_type}")
    rollout_strategy = (rollout_strategy or "ALL").upper()
    if rollout_strategy not in ROLLOUT_STRATEGIES:
        raise ChangeSetError(f"Unknown rollout strategy {rollout_strategy}")
    if rollout_strategy == "PERCENTAGE" and not (rollout_percentage and 0 < int(rollout_percentage) <= 100):
        raise ChangeSetError("rolloutPercentage must be between 1 and 100")
    if rollout_strategy == "CANARY" and not canary_instances:
        raise ChangeSetError("canaryInstances is required for the CANARY strategy")
    if int(total_instances or 1) < 1:
        raise ChangeSetError("totalInstances must be at least 1")

    change_set = ChangeSet.objects.create(
        bot_instance=bot,
        change_type=change_type,
        description=description or "",
        from_manifest_json=from_manifest if from_manifest is not None else (bot.desired_manifest_json or None),
        to_manifest_json=to_manifest or {},
        rollout_strategy=rollout_strategy,
        rollout_percentage=int(rollout_percentage) if rollout_percentage else None,
        canary_instances_json=[str(item) for item in canary_instances or []],
        status="PENDING",
        total_instances=int(total_instances or 1),
        created_by=created_by or "system",
    )
    record_audit_event(
        action="changeset.create",
        resource_type="change_set",
        resource_id=change_set.id,
        actor=change_set.created_by,
        diff_summary=summarize_diff(change_set.from_manifest_json or {}, change_set.to_manifest_json or {}),
        metadata={"botInstanceId": str(bot.id), "strategy": rollout_strategy},
    )
    return change_set


def get(change_set_id: Any) -> ChangeSet:
    return _get(change_set_id)


def list_change_sets(
    *, bot_instance_id: Any = None, status: Optional[str] = None, change_type: Optional[str] = None
) -> List[ChangeSet]:
    qs = ChangeSet.objects.all().order_by("-created_at")
    if bot_instance_id:
        qs = qs.filter(bot_instance_id=bot_instance_id)
    if status:
        qs = qs.filter(status=status)
    if change_type:
        qs = qs.filter(change_type=change_type)
    return list(qs)


def start_rollout(change_set_id: Any, *, actor: str = "system") -> ChangeSet:
    change_set = _get(change_set_id)
    updated = ChangeSet.objects.filter(id=change_set.id, status="PENDING").update(
        status="IN_PROGRESS", started_at=timezone.now(), updated_at=timezone.now()
    )
    if not updated:
        change_set.refresh_from_db()
        raise ChangeSetError(f"Cannot start rollout from status {change_set.status}")
    change_set.refresh_from_db()
    record_audit_event(action="changeset.start", resource_type="change_set", resource_id=change_set.id, actor=actor)
    return change_set


def update_progress(change_set_id: Any, updated: int = 0, failed: int = 0) -> ChangeSet:
    """Adds to the rollout counters with a compare-and-set on the previous values.

    Increments that would push ``updated + failed`` past the total are clamped,
    so the status turns terminal exactly once.
    """
    if updated < 0 or failed < 0:
        raise ChangeSetError("Progress increments must not be negative")
    for _ in range(MAX_PROGRESS_RETRIES):
        change_set = _get(change_set_id)
        if change_set.status != "IN_PROGRESS":
            raise ChangeSetError(f"Cannot update progress for status {change_set.status}")
        total = change_set.total_instances
        remaining = max(total - change_set.updated_instances - change_set.failed_instances, 0)
        add_updated = min(updated, remaining)
        add_failed = min(failed, remaining - add_updated)
        if add_updated + add_failed < updated + failed:
            logger.warning(
                "clamped progress for change set %s: +%s/+%s requested, %s remaining",
                change_set.id,
                updated,
                failed,
                remaining,
            )
        new_updated = change_set.updated_instances + add_updated
        new_failed = change_set.failed_instances + add_failed
        fields: Dict[str, Any] = {
            "updated_instances": new_updated,
            "failed_instances": new_failed,
            "updated_at": timezone.now(),
        }
        if new_updated + new_failed >= total:
            fields["status"] = "FAILED" if new_failed > 0 else "COMPLETED"
            fields["completed_at"] = timezone.now()
            fields["can_rollback"] = fields["status"] == "COMPLETED"
        written = ChangeSet.objects.filter(
            id=change_set.id,
            status="IN_PROGRESS",
            updated_instances=change_set.updated_instances,
            failed_instances=change_set.failed_instances,
        ).update(**fields)
        if written:
            change_set.refresh_from_db()
            if change_set.status in TERMINAL_STATUSES:
                record_audit_event(
                    action=f"changeset.{change_set.status.lower()}",
                    resource_type="change_set",
                    resource_id=change_set.id,
                    metadata={"updated": new_updated, "failed": new_failed, "total": total},
                )
            return change_set
        logger.debug("progress update for change set %s lost a race, retrying", change_set.id)
    raise ChangeSetError(f"Could not update progress for change set {change_set_id} after concurrent writes")


def complete(change_set_id: Any, *, actor: str = "system") -> ChangeSet:
    change_set = _get(change_set_id)
    written = ChangeSet.objects.filter(id=change_set.id).exclude(status__in=TERMINAL_STATUSES).update(
        status="COMPLETED", completed_at=timezone.now(), can_rollback=True, updated_at=timezone.now()
    )
    if not written:
        raise ChangeSetError(f"Change set {change_set.id} is already {change_set.status}")
    change_set.refresh_from_db()
    record_audit_event(action="changeset.completed", resource_type="change_set", resource_id=change_set.id, actor=actor)
    return change_set


def fail(change_set_id: Any, error: str = "", *, actor: str = "system") -> ChangeSet:
    change_set = _get(change_set_id)
    written = ChangeSet.objects.filter(id=change_set.id).exclude(status__in=TERMINAL_STATUSES).update(
        status="FAILED", completed_at=timezone.now(), can_rollback=False, updated_at=timezone.now()
    )
    if not written:
        raise ChangeSetError(f"Change set {change_set.id} is already {change_set.status}")
    change_set.refresh_from_db()
    record_audit_event(
        action="changeset.failed",
        resource_type="change_set",
        resource_id=change_set.id,
        actor=actor,
        metadata={"error": error} if error else {},
    )
    return change_set


def rollback(change_set_id: Any, reason: str, *, actor: str = "system") -> ChangeSet:
    change_set = _get(change_set_id)
    if not change_set.can_rollback or change_set.status != "COMPLETED":
        raise ChangeSetError("This change set cannot be rolled back")
    if change_set.rolled_back_at:
        raise ChangeSetError("Change set has already been rolled back")
    actor = actor or "system"
    # claim the original first so a concurrent rollback cannot also create a reversal
    claimed = ChangeSet.objects.filter(id=change_set.id, rolled_back_at__isnull=True, can_rollback=True).update(
        rolled_back_at=timezone.now(), rolled_back_by=actor, can_rollback=False, updated_at=timezone.now()
    )
    if not claimed:
        raise ChangeSetError("Change set has already been rolled back")
    reversal = ChangeSet.objects.create(
        bot_instance_id=change_set.bot_instance_id,
        change_type="ROLLBACK",
        description=f"Rollback of {change_set.id}: {reason}",
        from_manifest_json=change_set.to_manifest_json,
        to_manifest_json=change_set.from_manifest_json or {},
        rollout_strategy="ALL",
        status="PENDING",
        total_instances=change_set.total_instances,
        created_by=actor,
    )
    record_audit_event(
        action="changeset.rollback",
        resource_type="change_set",
        resource_id=change_set.id,
        actor=actor,
        metadata={"rollbackChangeSetId": str(reversal.id), "reason": reason},
    )
    return reversal


def get_rollout_status(change_set_id: Any) -> Dict[str, Any]:
    change_set = _get(change_set_id)
    total = change_set.total_instances
    done = change_set.updated_instances + change_set.failed_instances
    return {
        "changeSetId": str(change_set.id),
        "status": change_set.status,
        "progress": {
            "total": total,
            "updated": change_set.updated_instances,
            "failed": change_set.failed_instances,
            "remaining": total - done,
            "percentage": round(done / total * 100) if total else 100,
        },
        "canRollback": change_set.can_rollback and change_set.rolled_back_at is None,
    }


def select_rollout_targets(change_set: ChangeSet, instances: Iterable[BotInstance]) -> List[BotInstance]:
    instances = list(instances)
    if change_set.rollout_strategy == "PERCENTAGE":
        if not instances:
            return []
        count = max(1, math.ceil(len(instances) * (change_set.rollout_percentage or 100) / 100))
        return instances[:count]
    if change_set.rollout_strategy == "CANARY":
        wanted = {str(item) for item in change_set.canary_instances_json or []}
        return [inst for inst in instances if str(inst.id) in wanted or inst.name in wanted]
    return instances


def _rollout_candidates(change_set: ChangeSet) -> List[BotInstance]:
    bot = change_set.bot_instance
    if bot.fleet_id:
        qs = BotInstance.objects.filter(fleet_id=bot.fleet_id).exclude(status="DELETING")
        return list(qs.order_by("created_at", "name"))
    return [bot]


def execute_rollout(change_set_id: Any, *, actor: str = "system", reconcile_fn=None) -> Dict[str, Any]:
    """Applies the target manifest to the selected instances one by one.

    A failed instance counts towards ``failed_instances`` and does not stop
    the remaining instances from being updated.
    """
    if reconcile_fn is None:
        from .reconciler import reconcile as reconcile_fn

    change_set = _get(change_set_id)
    targets = select_rollout_targets(change_set, _rollout_candidates(change_set))
    if not targets:
        raise ChangeSetError(f"No instances selected for change set {change_set.id}")
    if change_set.status == "PENDING" and change_set.total_instances != len(targets):
        ChangeSet.objects.filter(id=change_set.id, status="PENDING").update(total_instances=len(targets))
    change_set = start_rollout(change_set.id, actor=actor)

    results = []
    for instance in targets:
        BotInstance.objects.filter(id=instance.id).update(
            desired_manifest_json=change_set.to_manifest_json,
            manifest_version=instance.manifest_version + 1,
        )
        try:
            result = reconcile_fn(instance.id, actor=actor)
            ok = result.success
            message = result.message
        except Exception as exc:
            logger.exception("rollout of change set %s failed on instance %s", change_set.id, instance.id)
            ok = False
            message = str(exc)
        results.append({"instanceId": str(instance.id), "success": ok, "message": message})
        change_set = update_progress(change_set.id, updated=1 if ok else 0, failed=0 if ok else 1)
    return {"changeSetId": str(change_set.id), "status": change_set.status, "results": results}
