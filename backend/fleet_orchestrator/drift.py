import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from .audit import record_audit_event
from .models import BotInstance
from .providers.base import ContainerStatus
from .providers.registry import ProviderRegistry, registry
from .reconciler import InvalidTransition, build_deployment_config, transition
from .targets import resolve_target

logger = logging.getLogger(__name__)

CRITICAL = "CRITICAL"
WARNING = "WARNING"
INFO = "INFO"

# only instances believed to be serving are compared against their provider
CHECKED_STATES = ("RUNNING", "DEGRADED")


@dataclass
class DriftDifference:
    field: str
    expected: Any
    actual: Any
    severity: str


@dataclass
class DriftCheckResult:
    has_drift: bool
    differences: List[DriftDifference] = field(default_factory=list)
    actual_state: Dict[str, Any] = field(default_factory=dict)

    @property
    def critical(self) -> bool:
        return any(d.severity == CRITICAL for d in self.differences)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasDrift": self.has_drift,
            "differences": [asdict(d) for d in self.differences],
            "actualState": self.actual_state,
        }


def _compare(instance: BotInstance, snapshot) -> List[DriftDifference]:
    differences: List[DriftDifference] = []
    metadata = snapshot.metadata or {}
    manifest = instance.desired_manifest_json or {}
    if manifest:
        expected = build_deployment_config(instance, manifest, resolve_target(instance).config)
        desired_count = metadata.get("desiredCount")
        if desired_count is not None and int(desired_count) != expected.replicas:
            differences.append(DriftDifference("replicas", expected.replicas, int(desired_count), CRITICAL))
        image = metadata.get("image")
        if image and image != expected.image:
            differences.append(DriftDifference("image", expected.image, image, CRITICAL))
        labels = metadata.get("labels") or metadata.get("tags") or {}
        deployed_version = labels.get("manifest-version")
        if deployed_version is not None and str(deployed_version) != str(instance.manifest_version):
            differences.append(
                DriftDifference("manifestVersion", str(instance.manifest_version), str(deployed_version), CRITICAL)
            )

    desired_count = metadata.get("desiredCount")
    running_count = metadata.get("runningCount")
    if desired_count is not None and running_count is not None and int(running_count) < int(desired_count):
        differences.append(DriftDifference("runningCount", int(desired_count), int(running_count), WARNING))

    if snapshot.status in (ContainerStatus.ERROR, ContainerStatus.STOPPED):
        differences.append(DriftDifference("status", ContainerStatus.RUNNING, snapshot.status, CRITICAL))
    elif snapshot.status != ContainerStatus.RUNNING:
        differences.append(DriftDifference("status", ContainerStatus.RUNNING, snapshot.status, WARNING))
    return differences


def check_drift(instance: BotInstance, *, providers: ProviderRegistry = registry) -> DriftCheckResult:
    """Compares what the provider reports for an instance with what its desired manifest asks for.

    Critical drift on a RUNNING instance moves it to DEGRADED; fixing the
    drift is left to the next reconcile.
    """
    snapshot = None
    if instance.container_ref:
        snapshot = providers.get_provider(instance).get_container(instance.container_ref)

    if snapshot is None:
        differences = [DriftDifference("container", "running", "missing", CRITICAL)]
        actual_state: Dict[str, Any] = {"status": "MISSING", "containerRef": instance.container_ref or None}
    else:
        differences = _compare(instance, snapshot)
        actual_state = {
            "status": snapshot.status,
            "containerRef": snapshot.id,
            "desiredCount": snapshot.metadata.get("desiredCount"),
            "runningCount": snapshot.metadata.get("runningCount"),
        }

    result = DriftCheckResult(has_drift=bool(differences), differences=differences, actual_state=actual_state)
    if result.critical and instance.status == "RUNNING":
        fields = ", ".join(d.field for d in differences if d.severity == CRITICAL)
        try:
            transition(instance, "DEGRADED", reason=f"drift detected: {fields}")
        except InvalidTransition as exc:
            logger.info("instance %s changed state during drift check: %s", instance.id, exc)
    return result


def check_all_instances(fleet_id: Any = None, *, providers: ProviderRegistry = registry) -> List[Dict[str, Any]]:
    instances = BotInstance.objects.select_related("deployment_target", "fleet").filter(status__in=CHECKED_STATES)
    if fleet_id:
        instances = instances.filter(fleet_id=fleet_id)
    results: List[Dict[str, Any]] = []
    for instance in instances:
        try:
            result = check_drift(instance, providers=providers)
        except Exception:
            logger.exception("drift check failed for instance %s", instance.id)
            continue
        results.append({"instanceId": str(instance.id), "result": result})
        if result.has_drift:
            record_audit_event(
                action="instance.drift_detected",
                resource_type="bot_instance",
                resource_id=instance.id,
                metadata=result.to_dict(),
            )
    drifted = sum(1 for item in results if item["result"].has_drift)
    if drifted:
        logger.warning("drift detected on %s of %s instance(s)", drifted, len(results))
    return results

