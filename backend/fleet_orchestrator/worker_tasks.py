import logging
import os
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

JOBS_REDIS_URL = os.environ.get("CLAWSTER_JOBS_REDIS_URL", "redis://redis:6379/0")
JOB_TIMEOUT_SECONDS = 900
SWEEP_INTERVAL_SECONDS = int(os.environ.get("CLAWSTER_SWEEP_INTERVAL_SECONDS", "300"))
TIMEOUT_CHECK_INTERVAL_SECONDS = int(os.environ.get("CLAWSTER_TIMEOUT_CHECK_INTERVAL_SECONDS", "60"))
# 0 turns drift-driven reconciles off
DRIFT_RECONCILE_INTERVAL_SECONDS = int(os.environ.get("CLAWSTER_DRIFT_RECONCILE_INTERVAL_SECONDS", "600"))

# job path -> seconds between runs; each run schedules the next one
PERIODIC_JOBS = {
    "fleet_orchestrator.worker_tasks.sweep_stuck_job": SWEEP_INTERVAL_SECONDS,
    "fleet_orchestrator.worker_tasks.timeout_provisioning_job": TIMEOUT_CHECK_INTERVAL_SECONDS,
    "fleet_orchestrator.worker_tasks.reconcile_drifted_job": DRIFT_RECONCILE_INTERVAL_SECONDS,
}


def _enqueue_job(func_path: str, *args) -> str:
    import redis
    from rq import Queue

    queue = Queue("default", connection=redis.Redis.from_url(JOBS_REDIS_URL))
    job = queue.enqueue(func_path, *args, job_timeout=JOB_TIMEOUT_SECONDS)
    return job.id


def _schedule_job(func_path: str, delay_seconds: int) -> str:
    """Schedules a periodic job on the worker's scheduler.

    The job id is derived from the interval slot the run falls in, so several
    workers scheduling the same job collapse into one run.
    """
    import redis
    from rq import Queue

    interval = PERIODIC_JOBS.get(func_path) or delay_seconds
    slot = int((time.time() + delay_seconds) // max(interval, 1))
    job_id = f"clawster-{func_path.rsplit('.', 1)[-1]}-{slot}"
    queue = Queue("default", connection=redis.Redis.from_url(JOBS_REDIS_URL))
    job = queue.enqueue_in(timedelta(seconds=delay_seconds), func_path, job_id=job_id, job_timeout=JOB_TIMEOUT_SECONDS)
    return job.id


def schedule_periodic_jobs(schedule: Callable[[str, int], str] = _schedule_job) -> List[str]:
    scheduled = []
    for func_path, interval in PERIODIC_JOBS.items():
        if interval <= 0:
            logger.info("periodic job %s disabled", func_path)
            continue
        try:
            scheduled.append(schedule(func_path, interval))
        except Exception as exc:
            logger.warning("failed to schedule %s: %s", func_path, exc)
    return scheduled


def _reschedule(func_path: str) -> None:
    interval = PERIODIC_JOBS.get(func_path, 0)
    if interval <= 0:
        return
    try:
        _schedule_job(func_path, interval)
    except Exception as exc:
        logger.warning("failed to reschedule %s: %s", func_path, exc)


def reconcile_instance_job(instance_id: str) -> Dict[str, Any]:
    from .provisioning_relay import attach_publisher
    from .reconciler import reconcile

    attach_publisher()
    result = reconcile(instance_id)
    return result.to_dict()


def rollout_change_set_job(change_set_id: str) -> Dict[str, Any]:
    from .change_sets import execute_rollout
    from .provisioning_relay import attach_publisher

    attach_publisher()
    return execute_rollout(change_set_id)


def sweep_stuck_job(threshold_seconds: Optional[int] = None) -> List[str]:
    from .reconciler import sweep_stuck

    try:
        return sweep_stuck(threshold_seconds)
    finally:
        _reschedule("fleet_orchestrator.worker_tasks.sweep_stuck_job")


def timeout_provisioning_job() -> List[str]:
    """Marks progress of instances reconciling past the provisioning timeout as timed out."""
    from django.utils import timezone

    from .models import BotInstance
    from .provisioning_events import PROVISIONING_TIMEOUT_SECONDS
    from .provisioning_relay import publish_op

    try:
        cutoff = timezone.now() - timedelta(seconds=PROVISIONING_TIMEOUT_SECONDS)
        expired = [
            str(instance_id)
            for instance_id in BotInstance.objects.filter(status="RECONCILING", status_changed_at__lt=cutoff).values_list(
                "id", flat=True
            )
        ]
        for instance_id in expired:
            publish_op("timeout", {"instanceId": instance_id})
        if expired:
            logger.warning("timed out provisioning for %s instance(s)", len(expired))
        return expired
    finally:
        _reschedule("fleet_orchestrator.worker_tasks.timeout_provisioning_job")


def reconcile_drifted_job() -> Dict[str, List[str]]:
    """Queues reconciles only for instances whose provider state drifted from their manifest."""
    from .drift import check_drift
    from .reconciler import reconcile_all

    try:
        return reconcile_all(drift_check=check_drift)
    finally:
        _reschedule("fleet_orchestrator.worker_tasks.reconcile_drifted_job")
