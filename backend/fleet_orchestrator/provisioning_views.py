import json
import logging
import os
from typing import Any, Iterator

from django.contrib.auth.decorators import login_required
from django.http import HttpRequest, JsonResponse, StreamingHttpResponse
from django.views.decorators.csrf import csrf_exempt

from .fleet_api import _parse_json, _require_staff
from .provisioning_events import ProvisioningHub, provisioning_hub
from .provisioning_relay import ensure_relay_listener

logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = float(os.environ.get("CLAWSTER_SSE_KEEPALIVE_SECONDS", "15"))


def _sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def event_stream(hub: ProvisioningHub, connection_id: str, keepalive: float = KEEPALIVE_SECONDS) -> Iterator[str]:
    try:
        yield _sse("connected", {"connectionId": connection_id})
        while hub.has_connection(connection_id):
            message = hub.next_message(connection_id, timeout=keepalive)
            if message is None:
                yield ": keepalive\n\n"
                continue
            event, data = message
            yield _sse(event, data)
    finally:
        hub.close_connection(connection_id)


@login_required
def provisioning_stream(request: HttpRequest):
    if staff_error := _require_staff(request):
        return staff_error
    ensure_relay_listener()
    connection_id = provisioning_hub.open_connection()
    response = StreamingHttpResponse(event_stream(provisioning_hub, connection_id), content_type="text/event-stream")
    response["Cache-Control"] = "no-cache"
    response["X-Accel-Buffering"] = "no"
    return response


def _subscription_change(request: HttpRequest, subscribe: bool) -> JsonResponse:
    if request.method != "POST":
        return JsonResponse({"error": "POST required"}, status=405)
    payload = _parse_json(request)
    connection_id = str(payload.get("connectionId") or "")
    instance_id = str(payload.get("instanceId") or "")
    if subscribe:
        success, message = provisioning_hub.subscribe(connection_id, instance_id)
    else:
        success, message = provisioning_hub.unsubscribe(connection_id, instance_id)
    body = {"success": success}
    if message:
        body["message"] = message
    return JsonResponse(body, status=200 if success else 400)


@csrf_exempt
@login_required
def provisioning_subscribe(request: HttpRequest) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    return _subscription_change(request, subscribe=True)


@csrf_exempt
@login_required
def provisioning_unsubscribe(request: HttpRequest) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    return _subscription_change(request, subscribe=False)


@login_required
def provisioning_status(request: HttpRequest, instance_id: str) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    ensure_relay_listener()
    progress = provisioning_hub.get_progress(str(instance_id))
    if progress is None:
        return JsonResponse({"instanceId": str(instance_id), "status": "unknown"})
    return JsonResponse(progress)


@login_required
def provisioning_logs(request: HttpRequest, instance_id: str) -> JsonResponse:
    if staff_error := _require_staff(request):
        return staff_error
    return JsonResponse({"instanceId": str(instance_id), "logs": provisioning_hub.get_recent_logs(str(instance_id))})
