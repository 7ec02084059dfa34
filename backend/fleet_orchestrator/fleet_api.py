import json
import logging
from typing import Any, Dict, Optional

from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt

from . import change_sets, reconciler
from .fleets import PromotionError, promote
from .models import BotInstance
from .provider_utils import ProviderError
from .vault.base import VaultError
from .vault.router import vault_router

logger = logging.getLogger(__name__)


def _require_staff(request: HttpRequest) -> Optional[JsonResponse]:
    if not request.user.is_authenticated or not request.user.is_staff:
        return JsonResponse({"error": "Staff access required"}, status=403)
    return None


def _parse_json(request: HttpRequest) -> Dict[str, Any]:
    if not request.body:
        return {}
    try:
        payload = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _actor(request: HttpRequest) -> str:
    return getattr(request.user, "username", "") or "system"


def _instance_payload(instance: BotInstance) -> Dict[str, Any]:
    return {
        "id": str(instance.id),
        "name": instance.name,
        "fleetId": str(instance.fleet_id) if instance.fleet_id else None,
        "status": instance.status,
        "health": instance.health,
        "deploymentType": instance.deployment_type or "LOCAL",
        "containerRef": instance.container_ref,
        "manifestVersion": instance.manifest_version,
        "lastError": instance.last_error or None,
        "errorCount": instance.error_count,
        "lastReconcileAt": instance.last_reconcile_at,
        "lastHealthCheckAt": instance.last_health_check_at,
    }


@csrf_exempt
@login_required
def reconcile_all_view(request: HttpRequest) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    if request.method != "POST":
        return JsonResponse({"error": "POST required"}, status=405)
    payload = _parse_json(request)
    try:
        result = reconciler.reconcile_all(payload.get("fleetId"), actor=_actor(request))
    except ValidationError:
        return JsonResponse({"error": "fleetId must be a UUID"}, status=400)
    return JsonResponse(result)


@csrf_exempt
@login_required
def instance_reconcile(request: HttpRequest, instance_id: str) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    if request.method != "POST":
        return JsonResponse({"error": "POST required"}, status=405)
    try:
        queued = reconciler.request_reconcile(instance_id, actor=_actor(request))
    except reconciler.ReconcileError as exc:
        return JsonResponse({"error": str(exc)}, status=404)
    return JsonResponse({"instanceId": str(instance_id), "status": "queued" if queued else "skipped"})


@csrf_exempt
@login_required
def instance_action(request: HttpRequest, instance_id: str, action: str) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    if request.method != "POST":
        return JsonResponse({"error": "POST required"}, status=405)
    handler = reconciler.ACTIONS.get(action)
    if handler is None:
        return JsonResponse({"error": f"Unknown action {action}"}, status=404)
    try:
        result = handler(instance_id, actor=_actor(request))
    except reconciler.ReconcileError as exc:
        return JsonResponse({"error": str(exc)}, status=404)
    except reconciler.InvalidTransition as exc:
        return JsonResponse({"error": str(exc)}, status=409)
    except ProviderError as exc:
        return JsonResponse({"error": exc.to_dict()}, status=502)
    if isinstance(result, BotInstance):
        return JsonResponse(_instance_payload(result))
    return JsonResponse(result)


@csrf_exempt
@login_required
def instance_health(request: HttpRequest, instance_id: str) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    try:
        instance = reconciler.check_health(instance_id)
    except reconciler.ReconcileError as exc:
        return JsonResponse({"error": str(exc)}, status=404)
    except ProviderError as exc:
        return JsonResponse({"error": exc.to_dict()}, status=502)
    return JsonResponse(_instance_payload(instance))


@csrf_exempt
@login_required
def instance_secrets(request: HttpRequest, instance_id: str, key: str = "") -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    try:
        if request.method == "POST":
            payload = _parse_json(request)
            key = str(payload.get("key") or key or "").strip()
            if not key or "value" not in payload:
                return JsonResponse({"error": "key and value are required"}, status=400)
            ref = vault_router.store_secret(instance_id, key, str(payload["value"]))
            return JsonResponse({"key": key, "ref": ref}, status=201)
        if request.method == "DELETE":
            if not key:
                return JsonResponse({"error": "key is required"}, status=400)
            vault_router.delete_secret(instance_id, key)
            return JsonResponse({"key": key, "deleted": True})
    except VaultError as exc:
        return JsonResponse({"error": str(exc)}, status=404)
    except ProviderError as exc:
        return JsonResponse({"error": exc.to_dict()}, status=502)
    return JsonResponse({"error": "method not allowed"}, status=405)


@csrf_exempt
@login_required
def fleet_promote(request: HttpRequest, fleet_id: str) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    if request.method != "POST":
        return JsonResponse({"error": "POST required"}, status=405)
    payload = _parse_json(request)
    target = str(payload.get("targetEnvironment") or "").strip()
    if not target:
        return JsonResponse({"error": "targetEnvironment is required"}, status=400)
    try:
        result = promote(fleet_id, target, actor=_actor(request))
    except PromotionError as exc:
        return JsonResponse({"error": str(exc)}, status=400)
    return JsonResponse(result)


@csrf_exempt
@login_required
def change_sets_collection(request: HttpRequest) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    if request.method == "POST":
        payload = _parse_json(request)
        try:
            change_set = change_sets.create(
                bot_instance_id=payload.get("botInstanceId"),
                to_manifest=payload.get("toManifest") or {},
                from_manifest=payload.get("fromManifest"),
                change_type=payload.get("changeType") or "UPDATE",
                description=payload.get("description") or "",
                rollout_strategy=payload.get("rolloutStrategy") or "ALL",
                rollout_percentage=payload.get("rolloutPercentage"),
                canary_instances=payload.get("canaryInstances"),
                total_instances=payload.get("totalInstances") or 1,
                created_by=payload.get("createdBy") or _actor(request),
            )
        except change_sets.ChangeSetNotFound as exc:
            return JsonResponse({"error": str(exc)}, status=404)
        except ValidationError:
            return JsonResponse({"error": "botInstanceId must be a UUID"}, status=400)
        except (change_sets.ChangeSetError, TypeError, ValueError) as exc:
            return JsonResponse({"error": str(exc)}, status=400)
        return JsonResponse(change_sets.change_set_payload(change_set), status=201)

    items = change_sets.list_change_sets(
        bot_instance_id=request.GET.get("botInstanceId"),
        status=request.GET.get("status"),
        change_type=request.GET.get("changeType"),
    )
    return JsonResponse({"changeSets": [change_sets.change_set_payload(item) for item in items]})


@csrf_exempt
@login_required
def change_set_detail(request: HttpRequest, change_set_id: str, action: str = "") -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    actor = _actor(request)
    try:
        if not action:
            return JsonResponse(change_sets.change_set_payload(change_sets.get(change_set_id)))
        if action == "status":
            return JsonResponse(change_sets.get_rollout_status(change_set_id))
        if request.method != "POST":
            return JsonResponse({"error": "POST required"}, status=405)
        payload = _parse_json(request)
        if action == "start":
            change_set = change_sets.start_rollout(change_set_id, actor=actor)
        elif action == "progress":
            change_set = change_sets.update_progress(
                change_set_id, int(payload.get("updated") or 0), int(payload.get("failed") or 0)
            )
        elif action == "complete":
            change_set = change_sets.complete(change_set_id, actor=actor)
        elif action == "fail":
            change_set = change_sets.fail(change_set_id, str(payload.get("error") or ""), actor=actor)
        elif action == "rollback":
            change_set = change_sets.rollback(
                change_set_id, str(payload.get("reason") or ""), actor=payload.get("rolledBackBy") or actor
            )
            return JsonResponse(change_sets.change_set_payload(change_set), status=201)
        elif action == "execute":
            change_sets.get(change_set_id)
            from .worker_tasks import _enqueue_job

            job_id = _enqueue_job("fleet_orchestrator.worker_tasks.rollout_change_set_job", str(change_set_id))
            return JsonResponse({"changeSetId": str(change_set_id), "status": "queued", "jobId": job_id})
        else:
            return JsonResponse({"error": f"Unknown action {action}"}, status=404)
    except change_sets.ChangeSetNotFound as exc:
        return JsonResponse({"error": str(exc)}, status=404)
    except (change_sets.ChangeSetError, TypeError, ValueError) as exc:
        return JsonResponse({"error": str(exc)}, status=400)
    return JsonResponse(change_sets.change_set_payload(change_set))
