import copy
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from django.db.models import F
from django.utils import timezone

from .audit import record_audit_event
from .models import BotInstance, ChangeSet
from .preprocessors import PreprocessorChain, PreprocessorContext
from .provider_utils import ProgressStep, ProgressTracker, ProviderError, ProviderErrorType, parse_cloud_error
from .providers.base import BootstrapOptions, ContainerDeploymentConfig, ContainerHealth, ContainerStatus
from .providers.registry import ProviderRegistry, registry
from .provisioning_events import ProvisioningHub, deploy_steps_for, provisioning_hub
from .targets import DEFAULT_GATEWAY_PORT, resolve_target
from .worker_tasks import _enqueue_job

logger = logging.getLogger(__name__)

STUCK_THRESHOLD_SECONDS = int(os.environ.get("CLAWSTER_RECONCILE_STUCK_SECONDS", "900"))
DEFAULT_IMAGE = os.environ.get("CLAWSTER_DEFAULT_IMAGE", "openclaw:local")

# an instance in one of these states already has a reconcile in flight
GUARD_STATES = ("RECONCILING", "CREATING")
# bulk reconcile leaves operator-held instances alone
HELD_STATES = ("PAUSED", "DRAINING", "STOPPED", "DELETING")
# drift-aware bulk reconcile compares these against the provider before redeploying
DRIFT_CHECKED_STATES = ("RUNNING", "DEGRADED")

TRANSITIONS = {
    "CREATING": {"PENDING", "RECONCILING", "ERROR", "DELETING"},
    "PENDING": {"RECONCILING", "PAUSED", "STOPPED", "ERROR", "DELETING"},
    "RECONCILING": {"RUNNING", "DEGRADED", "PENDING", "ERROR", "DELETING"},
    "RUNNING": {"DEGRADED", "PAUSED", "DRAINING", "RECONCILING", "PENDING", "STOPPED", "ERROR", "DELETING"},
    "DEGRADED": {"RUNNING", "PAUSED", "DRAINING", "RECONCILING", "PENDING", "STOPPED", "ERROR", "DELETING"},
    "PAUSED": {"PENDING", "RECONCILING", "STOPPED", "DELETING"},
    "DRAINING": {"PAUSED", "STOPPED", "ERROR", "DELETING"},
    "STOPPED": {"PENDING", "RECONCILING", "DELETING"},
    "ERROR": {"PENDING", "RECONCILING", "STOPPED", "DELETING"},
    "DELETING": {"ERROR"},
}


class InvalidTransition(ValueError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move instance from {current} to {target}")
        self.current = current
        self.target = target


class ReconcileError(RuntimeError):
    pass


@dataclass
class ReconcileResult:
    instance_id: str
    success: bool
    message: str
    changes: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def _load(instance_id: Any) -> BotInstance:
    instance = BotInstance.objects.select_related("deployment_target", "fleet").filter(id=instance_id).first()
    if not instance:
        raise ReconcileError(f"Bot instance {instance_id} not found")
    return instance


def transition(instance: BotInstance, new_status: str, *, actor: str = "system", reason: str = "") -> BotInstance:
    """Moves an instance along the lifecycle table with a conditional write on its current status."""
    current = instance.status
    if current == new_status:
        return instance
    if not can_transition(current, new_status):
        raise InvalidTransition(current, new_status)
    now = timezone.now()
    updated = BotInstance.objects.filter(id=instance.id, status=current).update(
        status=new_status, status_changed_at=now, updated_at=now
    )
    if not updated:
        instance.refresh_from_db(fields=["status"])
        raise InvalidTransition(instance.status, new_status)
    instance.status = new_status
    instance.status_changed_at = now
    record_audit_event(
        action="instance.transition",
        resource_type="bot_instance",
        resource_id=instance.id,
        actor=actor,
        diff_summary={"changed_fields": ["status"], "diff": {"status": {"from": current, "to": new_status}}},
        metadata={"reason": reason} if reason else {},
    )
    return instance


def _render_error(error: ProviderError) -> str:
    text = f"[{error.error_type}] {error.message}"
    if error.suggestions:
        text += " Suggestions: " + "; ".join(error.suggestions)
    return text


def _manifest_ports(spec: Dict[str, Any], gateway_port: int) -> List[int]:
    ports = []
    for value in spec.get("ports") or []:
        if isinstance(value, dict):
            value = value.get("containerPort") or value.get("port")
        try:
            ports.append(int(value))
        except (TypeError, ValueError):
            continue
    if gateway_port and gateway_port not in ports:
        ports.insert(0, gateway_port)
    return ports


def _manifest_secrets(spec: Dict[str, Any]) -> Dict[str, str]:
    secrets = spec.get("secrets") or {}
    if isinstance(secrets, list):
        return {
            str(item.get("name")): str(item.get("value") or item.get("key") or "")
            for item in secrets
            if isinstance(item, dict) and item.get("name")
        }
    if isinstance(secrets, dict):
        return {str(k): str(v) for k, v in secrets.items()}
    return {}


def build_deployment_config(
    instance: BotInstance, manifest: Dict[str, Any], target_config: Optional[Dict[str, Any]] = None
) -> ContainerDeploymentConfig:
    target_config = target_config or {}
    metadata = manifest.get("metadata") or {}
    spec = manifest.get("spec") or {}
    runtime = spec.get("runtime") or {}

    environment = {str(k): str(v) for k, v in (spec.get("environment") or {}).items()}
    if metadata.get("environment"):
        environment.setdefault("CLAWSTER_ENVIRONMENT", str(metadata["environment"]))
    if spec.get("openclawConfig"):
        environment["OPENCLAW_CONFIG"] = json.dumps(spec["openclawConfig"], sort_keys=True)

    gateway_port = int(target_config.get("gatewayPort") or instance.gateway_port or DEFAULT_GATEWAY_PORT)
    command = runtime.get("command") or []
    if isinstance(command, str):
        command = command.split()
    return ContainerDeploymentConfig(
        name=instance.name,
        image=str(runtime.get("image") or target_config.get("image") or DEFAULT_IMAGE),
        cpu=float(runtime.get("cpu") or target_config.get("cpu") or 1.0),
        memory=int(runtime.get("memory") or target_config.get("memory") or 2048),
        replicas=int(runtime.get("replicas") or 1),
        command=[str(part) for part in command],
        environment=environment,
        secrets=_manifest_secrets(spec),
        ports=_manifest_ports(spec, gateway_port),
        labels={
            "environment": str(metadata.get("environment") or "dev"),
            "manifest-version": str(instance.manifest_version),
        },
    )


def _log_bootstrap_step(hub: ProvisioningHub, instance_id: Any, item: ProgressStep) -> None:
    if item.status == "in_progress":
        hub.append_log(instance_id, "bootstrap_infra", item.message or item.name)
    elif item.status == "complete":
        hub.append_log(instance_id, "bootstrap_infra", f"{item.name}: done")


def reconcile(
    instance_id: Any,
    *,
    actor: str = "system",
    providers: ProviderRegistry = registry,
    chain: Optional[PreprocessorChain] = None,
    hub: ProvisioningHub = provisioning_hub,
) -> ReconcileResult:
    instance = _load(instance_id)
    if instance.status == "DELETING":
        return ReconcileResult(str(instance.id), False, "Instance is being deleted")
    if instance.status != "RECONCILING":
        # claimed directly rather than through reconcile_all
        if not BotInstance.objects.filter(id=instance.id, status=instance.status).update(
            status="RECONCILING", status_changed_at=timezone.now()
        ):
            return ReconcileResult(str(instance.id), False, "Instance changed state before reconcile started")
        instance.status = "RECONCILING"

    changes: List[str] = []
    step = "validate_config"
    provider = None
    try:
        target = resolve_target(instance)
        provider = providers.get_provider(instance)
        hub.start_provisioning(str(instance.id), provider.provider_type)

        hub.update_step(instance.id, step, "in_progress")
        validation = provider.validate()
        for warning in validation.warnings:
            hub.append_log(instance.id, step, warning, stream="stderr")
        if not validation.valid:
            raise ProviderError(
                "; ".join(validation.errors) or "Provider validation failed",
                ProviderErrorType.AUTHENTICATION,
                suggestions=["Check the deployment target configuration and credentials"],
            )
        hub.update_step(instance.id, step, "completed")

        step = "preprocess_manifest"
        hub.update_step(instance.id, step, "in_progress")
        manifest = copy.deepcopy(instance.desired_manifest_json or {})
        if not manifest:
            raise ReconcileError(f"No desired manifest set for instance {instance.id}")
        chain = chain or PreprocessorChain()
        chain_result = chain.process(manifest, PreprocessorContext(instance=instance, deployment_type=target.deployment_type))
        for item in chain_result.results:
            description = item["result"].description
            if description:
                hub.append_log(instance.id, step, f"{item['name']}: {description}")
        changes.extend(chain_result.changes)
        hub.update_step(instance.id, step, "completed", f"{chain_result.modification_count} preprocessor(s) applied")

        step = "bootstrap_infra"
        hub.update_step(instance.id, step, "in_progress")
        tracker = ProgressTracker(on_progress=lambda item: _log_bootstrap_step(hub, instance.id, item))
        provider.bootstrap(
            BootstrapOptions(workspace=instance.workspace or "default", region=provider.region),
            on_progress=tracker.advance,
        )
        tracker.finish()
        hub.update_step(instance.id, step, "completed", f"{len(tracker.steps)} resource step(s) ensured")

        deploy_steps = deploy_steps_for(provider.provider_type)
        step = deploy_steps[0]
        for deploy_step in deploy_steps:
            hub.update_step(instance.id, deploy_step, "in_progress")
        config = build_deployment_config(instance, manifest, target.config)
        existing = provider.get_container(instance.container_ref) if instance.container_ref else None
        if existing:
            snapshot = provider.update_container(instance.container_ref, config)
            changes.append(f"Updated {provider.display_name} resource {snapshot.id}")
        else:
            snapshot = provider.deploy_container(config, manifest)
            changes.append(f"Created {provider.display_name} resource {snapshot.id}")
        for deploy_step in deploy_steps:
            hub.update_step(instance.id, deploy_step, "completed")

        step = "health_check"
        hub.update_step(instance.id, step, "completed", "Deferred to the next health check")
    except Exception as exc:
        return _fail(instance, exc, step, provider.display_name if provider else "provider", actor, hub)

    now = timezone.now()
    BotInstance.objects.filter(id=instance.id).update(
        status="RUNNING",
        health=ContainerHealth.UNKNOWN,
        container_ref=snapshot.id,
        gateway_port=config.ports[0] if config.ports else instance.gateway_port,
        last_error="",
        last_reconcile_at=now,
        status_changed_at=now,
        updated_at=now,
    )
    hub.complete_provisioning(str(instance.id))
    record_audit_event(
        action="instance.reconcile",
        resource_type="bot_instance",
        resource_id=instance.id,
        actor=actor,
        diff_summary={"changed_fields": ["status"], "diff": {"status": {"from": "RECONCILING", "to": "RUNNING"}}},
        metadata={"changes": changes, "containerRef": snapshot.id, "provider": provider.provider_type},
    )
    logger.info("reconciled instance %s (%s)", instance.id, ", ".join(changes) or "no changes")
    return ReconcileResult(str(instance.id), True, "Reconciliation completed", changes)


def _fail(instance: BotInstance, exc: Exception, step: str, provider_name: str, actor: str, hub: ProvisioningHub) -> ReconcileResult:
    logger.exception("reconcile failed for instance %s at %s", instance.id, step)
    error = parse_cloud_error(exc, provider_name)
    if isinstance(exc, ReconcileError):
        error = ProviderError(str(exc), ProviderErrorType.UNKNOWN, exc, ["Set a desired manifest for the instance"])
    now = timezone.now()
    BotInstance.objects.filter(id=instance.id).update(
        status="ERROR",
        last_error=_render_error(error),
        error_count=F("error_count") + 1,
        status_changed_at=now,
        updated_at=now,
    )
    hub.update_step(instance.id, step, "error", error.message)
    hub.fail_provisioning(str(instance.id), error.message)
    record_audit_event(
        action="instance.reconcile_failed",
        resource_type="bot_instance",
        resource_id=instance.id,
        actor=actor,
        diff_summary={"changed_fields": ["status"], "diff": {"status": {"from": "RECONCILING", "to": "ERROR"}}},
        metadata={"error": error.to_dict(), "step": step},
    )
    return ReconcileResult(str(instance.id), False, f"Reconciliation failed: {error.message}", error=error.to_dict())


def request_reconcile(instance_id: Any, *, actor: str = "system", enqueue: Callable[..., str] = _enqueue_job) -> bool:
    """Claims a single instance and queues it. Returns False when a reconcile is already in flight.

    Unlike the bulk request, a CREATING instance is claimed here: this is how
    a newly created instance gets its first deploy.
    """
    previous = BotInstance.objects.filter(id=instance_id).values_list("status", flat=True).first()
    if previous is None:
        raise ReconcileError(f"Bot instance {instance_id} not found")
    claimed = (
        BotInstance.objects.filter(id=instance_id, status=previous)
        .exclude(status__in=("RECONCILING", "DELETING"))
        .update(status="RECONCILING", status_changed_at=timezone.now())
    )
    if not claimed:
        return False
    try:
        enqueue("fleet_orchestrator.worker_tasks.reconcile_instance_job", str(instance_id))
    except Exception:
        BotInstance.objects.filter(id=instance_id, status="RECONCILING").update(status=previous)
        raise
    record_audit_event(action="instance.reconcile_requested", resource_type="bot_instance", resource_id=instance_id, actor=actor)
    return True


def reconcile_all(
    fleet_id: Any = None,
    *,
    actor: str = "system",
    enqueue: Callable[..., str] = _enqueue_job,
    drift_check: Optional[Callable[[BotInstance], Any]] = None,
) -> Dict[str, List[str]]:
    """Claims and queues every eligible instance.

    With ``drift_check``, serving instances whose provider state matches their
    manifest are reported as converged instead of being redeployed.
    """
    candidates = BotInstance.objects.exclude(status__in=HELD_STATES)
    if fleet_id:
        candidates = candidates.filter(fleet_id=fleet_id)
    queued: List[str] = []
    skipped: List[str] = []
    failed: List[str] = []
    converged: List[str] = []
    for instance_id, previous in candidates.values_list("id", "status"):
        if drift_check is not None and previous in DRIFT_CHECKED_STATES:
            try:
                instance = _load(instance_id)
            except ReconcileError:
                skipped.append(str(instance_id))
                continue
            try:
                drift = drift_check(instance)
            except Exception as exc:
                logger.warning("drift check failed for %s, reconciling anyway: %s", instance_id, exc)
            else:
                if not drift.has_drift:
                    converged.append(str(instance_id))
                    continue
            previous = instance.status
        claimed = (
            BotInstance.objects.filter(id=instance_id)
            .exclude(status__in=GUARD_STATES + HELD_STATES)
            .update(status="RECONCILING", status_changed_at=timezone.now())
        )
        if not claimed:
            skipped.append(str(instance_id))
            continue
        try:
            enqueue("fleet_orchestrator.worker_tasks.reconcile_instance_job", str(instance_id))
        except Exception as exc:
            logger.error("failed to queue reconcile for %s: %s", instance_id, exc)
            BotInstance.objects.filter(id=instance_id, status="RECONCILING").update(status=previous)
            failed.append(str(instance_id))
            continue
        queued.append(str(instance_id))
    record_audit_event(
        action="fleet.reconcile_all",
        resource_type="fleet" if fleet_id else "bot_instance",
        resource_id=fleet_id or "*",
        actor=actor,
        metadata={"queued": len(queued), "skipped": len(skipped), "failed": len(failed), "converged": len(converged)},
    )
    logger.info("reconcile all: %s queued, %s skipped, %s converged", len(queued), len(skipped), len(converged))
    return {"queued": queued, "skipped": skipped, "failed": failed, "converged": converged}


def sweep_stuck(threshold_seconds: Optional[int] = None, *, actor: str = "system") -> List[str]:
    threshold = STUCK_THRESHOLD_SECONDS if threshold_seconds is None else int(threshold_seconds)
    cutoff = timezone.now() - timedelta(seconds=threshold)
    stuck = BotInstance.objects.filter(status="RECONCILING", status_changed_at__lt=cutoff)
    requeued: List[str] = []
    for instance_id in stuck.values_list("id", flat=True):
        if not BotInstance.objects.filter(id=instance_id, status="RECONCILING", status_changed_at__lt=cutoff).update(
            status="PENDING", status_changed_at=timezone.now()
        ):
            continue
        requeued.append(str(instance_id))
        record_audit_event(
            action="instance.unstick",
            resource_type="bot_instance",
            resource_id=instance_id,
            actor=actor,
            diff_summary={"changed_fields": ["status"], "diff": {"status": {"from": "RECONCILING", "to": "PENDING"}}},
            metadata={"thresholdSeconds": threshold},
        )
    if requeued:
        logger.warning("requeued %s instance(s) stuck in RECONCILING for over %ss", len(requeued), threshold)
    return requeued


def check_health(instance_id: Any, *, providers: ProviderRegistry = registry) -> BotInstance:
    instance = _load(instance_id)
    provider = providers.get_provider(instance)
    snapshot = provider.get_container(instance.container_ref) if instance.container_ref else None
    if snapshot is None:
        health = ContainerHealth.UNHEALTHY
    elif snapshot.health == ContainerHealth.UNHEALTHY or snapshot.status in (
        ContainerStatus.ERROR,
        ContainerStatus.STOPPED,
    ):
        health = ContainerHealth.UNHEALTHY
    elif snapshot.status == ContainerStatus.DEGRADED:
        health = "DEGRADED"
    elif snapshot.status == ContainerStatus.RUNNING:
        health = ContainerHealth.HEALTHY
    else:
        health = ContainerHealth.UNKNOWN

    BotInstance.objects.filter(id=instance.id).update(health=health, last_health_check_at=timezone.now())
    instance.health = health
    if instance.status == "RUNNING" and health in (ContainerHealth.UNHEALTHY, "DEGRADED"):
        transition(instance, "DEGRADED", reason=f"health check reported {health}")
    elif instance.status == "DEGRADED" and health == ContainerHealth.HEALTHY:
        transition(instance, "RUNNING", reason="health check recovered")
    return instance


def _provider_call(instance: BotInstance, providers: ProviderRegistry, operation: str) -> None:
    if not instance.container_ref:
        return
    provider = providers.get_provider(instance)
    getattr(provider, operation)(instance.container_ref)


def pause(instance_id: Any, *, actor: str = "system", providers: ProviderRegistry = registry) -> BotInstance:
    instance = _load(instance_id)
    if not can_transition(instance.status, "PAUSED"):
        raise InvalidTransition(instance.status, "PAUSED")
    _provider_call(instance, providers, "stop_container")
    return transition(instance, "PAUSED", actor=actor)


def resume(instance_id: Any, *, actor: str = "system", enqueue: Callable[..., str] = _enqueue_job) -> BotInstance:
    instance = transition(_load(instance_id), "PENDING", actor=actor)
    request_reconcile(instance.id, actor=actor, enqueue=enqueue)
    instance.refresh_from_db()
    return instance


def restart(instance_id: Any, *, actor: str = "system", providers: ProviderRegistry = registry) -> BotInstance:
    instance = transition(_load(instance_id), "RECONCILING", actor=actor, reason="restart")
    try:
        if instance.container_ref:
            provider = providers.get_provider(instance)
            provider.stop_container(instance.container_ref)
            provider.start_container(instance.container_ref)
    except Exception as exc:
        error = parse_cloud_error(exc)
        BotInstance.objects.filter(id=instance.id).update(
            status="ERROR", last_error=_render_error(error), error_count=F("error_count") + 1, status_changed_at=timezone.now()
        )
        logger.exception("restart failed for instance %s", instance.id)
        instance.refresh_from_db()
        return instance
    return transition(instance, "RUNNING", actor=actor, reason="restart")


def stop(instance_id: Any, *, actor: str = "system", providers: ProviderRegistry = registry) -> BotInstance:
    instance = _load(instance_id)
    if instance.status == "STOPPED":
        return instance
    if not can_transition(instance.status, "STOPPED"):
        raise InvalidTransition(instance.status, "STOPPED")
    _provider_call(instance, providers, "stop_container")
    return transition(instance, "STOPPED", actor=actor)


def drain(instance_id: Any, *, actor: str = "system") -> BotInstance:
    return transition(_load(instance_id), "DRAINING", actor=actor)


def delete(instance_id: Any, *, actor: str = "system", providers: ProviderRegistry = registry) -> Dict[str, Any]:
    instance = _load(instance_id)
    if ChangeSet.objects.filter(bot_instance=instance, status__in=["PENDING", "IN_PROGRESS"]).exists():
        raise InvalidTransition(instance.status, "DELETING")
    transition(instance, "DELETING", actor=actor)
    _provider_call(instance, providers, "delete_container")
    record_audit_event(action="instance.delete", resource_type="bot_instance", resource_id=instance.id, actor=actor)
    if ChangeSet.objects.filter(bot_instance=instance).exists():
        # rollout history keeps the row; the instance stays as a DELETING tombstone
        BotInstance.objects.filter(id=instance.id).update(container_ref="")
        return {"id": str(instance.id), "deleted": False, "status": "DELETING"}
    instance.delete()
    return {"id": str(instance_id), "deleted": True, "status": "DELETED"}


ACTIONS = {
    "pause": pause,
    "resume": resume,
    "restart": restart,
    "stop": stop,
    "delete": delete,
    "drain": drain,
}
