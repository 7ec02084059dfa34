import copy
import logging
import os
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

MAX_LOG_LINES = int(os.environ.get("CLAWSTER_PROVISIONING_LOG_LINES", "500"))
CONNECTION_QUEUE_SIZE = int(os.environ.get("CLAWSTER_PROVISIONING_QUEUE_SIZE", "1000"))
PROVISIONING_TIMEOUT_SECONDS = 15 * 60
COMPLETED_RETENTION_SECONDS = 60
FAILED_RETENTION_SECONDS = 5 * 60

TERMINAL_STATUSES = {"completed", "error", "timeout"}

STEP_NAMES = {
    "validate_config": "Validate configuration",
    "preprocess_manifest": "Apply manifest preprocessors",
    "bootstrap_infra": "Prepare infrastructure",
    "pull_image": "Pull container image",
    "create_container": "Create container",
    "start_container": "Start container",
    "create_task_definition": "Create task definition",
    "create_service": "Create ECS service",
    "wait_for_task": "Wait for task startup",
    "create_vm": "Create virtual machine",
    "wait_for_vm": "Wait for VM boot",
    "health_check": "Health check",
}

PROVISIONING_STEPS = {
    "docker": [
        "validate_config",
        "preprocess_manifest",
        "bootstrap_infra",
        "pull_image",
        "create_container",
        "start_container",
        "health_check",
    ],
    "local": [
        "validate_config",
        "preprocess_manifest",
        "bootstrap_infra",
        "create_container",
        "start_container",
        "health_check",
    ],
    "ecs-ec2": [
        "validate_config",
        "preprocess_manifest",
        "bootstrap_infra",
        "create_task_definition",
        "create_service",
        "wait_for_task",
        "health_check",
    ],
    "gce": [
        "validate_config",
        "preprocess_manifest",
        "bootstrap_infra",
        "create_vm",
        "wait_for_vm",
        "health_check",
    ],
    "azure-vm": [
        "validate_config",
        "preprocess_manifest",
        "bootstrap_infra",
        "create_vm",
        "wait_for_vm",
        "health_check",
    ],
}

COMMON_STEPS = ("validate_config", "preprocess_manifest", "bootstrap_infra", "health_check")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def steps_for(deployment_type: str) -> List[str]:
    return list(PROVISIONING_STEPS.get(deployment_type) or PROVISIONING_STEPS["docker"])


def deploy_steps_for(deployment_type: str) -> List[str]:
    """Provider-specific steps that run between bootstrap and the health check."""
    return [step for step in steps_for(deployment_type) if step not in COMMON_STEPS]


class _Connection:
    def __init__(self, connection_id: str, max_queue: int):
        self.id = connection_id
        self.queue: Deque[Tuple[str, Any]] = deque(maxlen=max_queue)
        self.subscriptions: Set[str] = set()
        self.dropped = 0

    def put(self, event: str, data: Any) -> None:
        if len(self.queue) == self.queue.maxlen:
            self.dropped += 1
        self.queue.append((event, data))


class ProvisioningHub:
    """Process-scoped owner of provisioning progress, log rings and push connections.

    All state is guarded by a single condition lock. Progress records are
    evicted lazily once their retention window after a terminal status runs
    out; an in-progress record older than the provisioning timeout is moved
    to ``timeout`` the next time the hub is touched.
    """

    def __init__(
        self,
        *,
        max_log_lines: int = MAX_LOG_LINES,
        max_queue: int = CONNECTION_QUEUE_SIZE,
        timeout_seconds: float = PROVISIONING_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cond = threading.Condition(threading.RLock())
        self._progress: Dict[str, Dict[str, Any]] = {}
        self._logs: Dict[str, Deque[Dict[str, Any]]] = {}
        self._started: Dict[str, float] = {}
        self._expires: Dict[str, float] = {}
        self._connections: Dict[str, _Connection] = {}
        self.max_log_lines = max_log_lines
        self.max_queue = max_queue
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.publisher: Optional[Callable[[str, Dict[str, Any]], None]] = None

    # ---- producers ----

    def start_provisioning(self, instance_id: str, deployment_type: str) -> Dict[str, Any]:
        instance_id = str(instance_id)
        steps = [
            {"id": step_id, "name": STEP_NAMES.get(step_id, step_id), "status": "pending"}
            for step_id in steps_for(deployment_type)
        ]
        progress = {
            "instanceId": instance_id,
            "status": "in_progress",
            "currentStep": steps[0]["id"] if steps else "",
            "steps": steps,
            "startedAt": _now_iso(),
        }
        with self._cond:
            timed_out = self._sweep()
            self._progress[instance_id] = progress
            self._logs[instance_id] = deque(maxlen=self.max_log_lines)
            self._started[instance_id] = self.clock()
            self._expires.pop(instance_id, None)
            self._emit(instance_id, "progress", progress)
        self._publish_timeouts(timed_out)
        self._publish("start", {"instanceId": instance_id, "deploymentType": deployment_type})
        logger.info("provisioning started for %s (%s, %s steps)", instance_id, deployment_type, len(steps))
        return copy.deepcopy(progress)

    def update_step(self, instance_id: str, step_id: str, status: str, message: Optional[str] = None) -> None:
        instance_id = str(instance_id)
        with self._cond:
            progress = self._progress.get(instance_id)
            if not progress:
                return
            step = next((s for s in progress["steps"] if s["id"] == step_id), None)
            if step is None:
                return
            now = _now_iso()
            step["status"] = status
            if message:
                step["message"] = message
            if status == "in_progress" and not step.get("startedAt"):
                step["startedAt"] = now
            if status in ("completed", "error", "skipped"):
                step["completedAt"] = now
            if status == "error" and message:
                step["error"] = message
            if status == "in_progress":
                progress["currentStep"] = step_id
            elif status == "completed":
                next_pending = next((s for s in progress["steps"] if s["status"] == "pending"), None)
                if next_pending:
                    progress["currentStep"] = next_pending["id"]
            self._emit(instance_id, "progress", progress)
        self._publish("step", {"instanceId": instance_id, "stepId": step_id, "status": status, "message": message})

    def append_log(self, instance_id: str, step_id: str, line: str, stream: str = "stdout") -> None:
        instance_id = str(instance_id)
        entry = {
            "instanceId": instance_id,
            "stepId": step_id,
            "stream": stream,
            "line": line,
            "timestamp": _now_iso(),
        }
        with self._cond:
            ring = self._logs.get(instance_id)
            if ring is None:
                # rings only exist between start_provisioning and retention expiry
                logger.debug("dropping provisioning log for %s: no provisioning record", instance_id)
                return
            ring.append(entry)
            self._emit(instance_id, "provisioning-log", entry)
        self._publish("log", {"instanceId": instance_id, "stepId": step_id, "line": line, "stream": stream})

    def complete_provisioning(self, instance_id: str) -> None:
        instance_id = str(instance_id)
        with self._cond:
            progress = self._progress.get(instance_id)
            if not progress:
                return
            progress["status"] = "completed"
            progress["completedAt"] = _now_iso()
            for step in progress["steps"]:
                if step["status"] == "pending":
                    step["status"] = "skipped"
            self._finish(instance_id, COMPLETED_RETENTION_SECONDS)
            self._emit(instance_id, "progress", progress)
        self._publish("complete", {"instanceId": instance_id})
        logger.info("provisioning completed for %s", instance_id)

    def fail_provisioning(self, instance_id: str, error: str) -> None:
        instance_id = str(instance_id)
        with self._cond:
            progress = self._progress.get(instance_id)
            if not progress:
                return
            now = _now_iso()
            progress["status"] = "error"
            progress["error"] = error
            progress["completedAt"] = now
            for step in progress["steps"]:
                if step["status"] == "in_progress":
                    step["status"] = "error"
                    step["error"] = error
                    step["completedAt"] = now
            self._finish(instance_id, FAILED_RETENTION_SECONDS)
            self._emit(instance_id, "progress", progress)
        self._publish("fail", {"instanceId": instance_id, "error": error})
        logger.warning("provisioning failed for %s: %s", instance_id, error)

    def timeout_provisioning(self, instance_id: str) -> bool:
        instance_id = str(instance_id)
        with self._cond:
            timed_out = self._timeout(instance_id)
        if timed_out:
            self._publish_timeouts([instance_id])
        return timed_out

    def check_timeouts(self) -> List[str]:
        with self._cond:
            expired = [
                instance_id
                for instance_id, started in self._started.items()
                if self.clock() - started >= self.timeout_seconds
            ]
            timed_out = [instance_id for instance_id in expired if self._timeout(instance_id)]
        self._publish_timeouts(timed_out)
        return timed_out

    # ---- readers ----

    def get_progress(self, instance_id: str) -> Optional[Dict[str, Any]]:
        with self._cond:
            timed_out = self._sweep()
            progress = self._progress.get(str(instance_id))
            snapshot = copy.deepcopy(progress) if progress else None
        self._publish_timeouts(timed_out)
        return snapshot

    def get_recent_logs(self, instance_id: str) -> List[Dict[str, Any]]:
        with self._cond:
            return [dict(entry) for entry in self._logs.get(str(instance_id), ())]

    # ---- push connections ----

    def open_connection(self) -> str:
        connection_id = uuid.uuid4().hex
        with self._cond:
            self._connections[connection_id] = _Connection(connection_id, self.max_queue)
        logger.debug("provisioning connection %s opened", connection_id)
        return connection_id

    def close_connection(self, connection_id: str) -> None:
        with self._cond:
            self._connections.pop(connection_id, None)
            self._cond.notify_all()
        logger.debug("provisioning connection %s closed", connection_id)

    def has_connection(self, connection_id: str) -> bool:
        with self._cond:
            return connection_id in self._connections

    def subscribe(self, connection_id: str, instance_id: str) -> Tuple[bool, str]:
        if not instance_id:
            return False, "instanceId is required"
        instance_id = str(instance_id)
        with self._cond:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False, "connection not found"
            timed_out = self._sweep()
            connection.subscriptions.add(instance_id)
            # backlog first, then the current snapshot, then live events
            recent = [dict(entry) for entry in self._logs.get(instance_id, ())]
            if recent:
                connection.put("provisioning-logs-buffer", recent)
            progress = self._progress.get(instance_id)
            if progress:
                connection.put("progress", copy.deepcopy(progress))
            self._cond.notify_all()
        self._publish_timeouts(timed_out)
        return True, ""

    def unsubscribe(self, connection_id: str, instance_id: str) -> Tuple[bool, str]:
        with self._cond:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False, "connection not found"
            connection.subscriptions.discard(str(instance_id))
        return True, ""

    def next_message(self, connection_id: str, timeout: Optional[float] = None) -> Optional[Tuple[str, Any]]:
        """Blocks until an event is queued for the connection or ``timeout`` passes."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                connection = self._connections.get(connection_id)
                if connection is None:
                    return None
                if connection.queue:
                    return connection.queue.popleft()
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def drain(self, connection_id: str) -> List[Tuple[str, Any]]:
        with self._cond:
            connection = self._connections.get(connection_id)
            if connection is None:
                return []
            items = list(connection.queue)
            connection.queue.clear()
            return items

    # ---- replication ----

    def apply_remote(self, op: str, payload: Dict[str, Any]) -> None:
        """Replays an operation published by another process's hub."""
        publisher, self.publisher = self.publisher, None
        try:
            instance_id = payload.get("instanceId") or ""
            if op == "start":
                self.start_provisioning(instance_id, payload.get("deploymentType") or "docker")
            elif op == "step":
                self.update_step(instance_id, payload.get("stepId") or "", payload.get("status") or "", payload.get("message"))
            elif op == "log":
                self.append_log(instance_id, payload.get("stepId") or "", payload.get("line") or "", payload.get("stream") or "stdout")
            elif op == "complete":
                self.complete_provisioning(instance_id)
            elif op == "fail":
                self.fail_provisioning(instance_id, payload.get("error") or "")
            elif op == "timeout":
                self.timeout_provisioning(instance_id)
            else:
                logger.warning("ignoring unknown provisioning op %s", op)
        finally:
            self.publisher = publisher

    # ---- publishing (called after the lock is released) ----

    def _publish(self, op: str, payload: Dict[str, Any]) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher(op, payload)
        except Exception as exc:
            logger.warning("failed to publish provisioning %s event: %s", op, exc)

    def _publish_timeouts(self, instance_ids: List[str]) -> None:
        for instance_id in instance_ids:
            self._publish("timeout", {"instanceId": instance_id})

    # ---- internals (caller holds the lock) ----

    def _emit(self, instance_id: str, event: str, data: Any) -> None:
        payload = copy.deepcopy(data)
        delivered = False
        for connection in self._connections.values():
            if instance_id in connection.subscriptions:
                connection.put(event, payload)
                delivered = True
        if delivered:
            self._cond.notify_all()

    def _finish(self, instance_id: str, retention: float) -> None:
        self._started.pop(instance_id, None)
        self._expires[instance_id] = self.clock() + retention

    def _timeout(self, instance_id: str) -> bool:
        progress = self._progress.get(instance_id)
        if not progress or progress["status"] != "in_progress":
            return False
        minutes = int(self.timeout_seconds // 60)
        progress["status"] = "timeout"
        progress["error"] = f"Provisioning timed out after {minutes} minutes"
        progress["completedAt"] = _now_iso()
        self._finish(instance_id, FAILED_RETENTION_SECONDS)
        self._emit(instance_id, "progress", progress)
        logger.warning("provisioning timed out for %s", instance_id)
        return True

    def _sweep(self) -> List[str]:
        """Times out overdue records and evicts expired ones. Returns the ids that timed out."""
        now = self.clock()
        timed_out = [
            instance_id
            for instance_id, started in list(self._started.items())
            if now - started >= self.timeout_seconds and self._timeout(instance_id)
        ]
        for instance_id, expires_at in list(self._expires.items()):
            if now >= expires_at:
                self._expires.pop(instance_id, None)
                self._progress.pop(instance_id, None)
                self._logs.pop(instance_id, None)
        return timed_out


provisioning_hub = ProvisioningHub()
