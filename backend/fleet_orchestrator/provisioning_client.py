import json
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 10
MAX_RECONNECT_DELAY_SECONDS = 30
MAX_CLIENT_LOG_LINES = 1000
POLL_INTERVAL_SECONDS = 3.0
MAX_POLL_FAILURES = 10
LOST_CONNECTION_MESSAGE = "Lost connection to provisioning service. Check API logs and try again."

TERMINAL_STATUSES = ("completed", "error", "timeout")

Message = Tuple[str, Any]


def reconnect_delay(attempt: int) -> float:
    return float(min(2 ** attempt, MAX_RECONNECT_DELAY_SECONDS))


def _iter_sse(lines) -> Any:
    event = "message"
    data: List[str] = []
    for raw in lines:
        line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if line is None:
            continue
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)


class ProvisioningClient:
    """Follows one instance's provisioning progress over SSE with a polling fallback.

    A single message loop in ``run`` owns the delivery mode. The stream reader
    thread only posts messages into the loop's inbox; polling happens inside
    the loop while the mode is ``poll``.
    """

    def __init__(
        self,
        base_url: str,
        instance_id: str,
        *,
        token: str = "",
        session: Optional[requests.Session] = None,
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_log: Optional[Callable[[Dict[str, Any]], None]] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        use_push: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.instance_id = str(instance_id)
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self.on_progress = on_progress
        self.on_log = on_log
        self.poll_interval = poll_interval
        self.use_push = use_push
        self.clock = clock

        self.inbox: "queue.Queue[Message]" = queue.Queue()
        self.mode = "poll"
        self.connection_id = ""
        self.progress: Optional[Dict[str, Any]] = None
        self.logs: List[Dict[str, Any]] = []
        self.reconnect_attempts = 0
        self.poll_failures = 0
        self.done = False
        self._next_poll_at: Optional[float] = None
        self._reconnect_at: Optional[float] = None
        self._stream_generation = 0
        self._stop = threading.Event()

    # ---- loop ----

    def run(self, max_seconds: Optional[float] = None) -> Optional[Dict[str, Any]]:
        deadline = None if max_seconds is None else self.clock() + max_seconds
        self._next_poll_at = self.clock()
        if self.use_push:
            self._start_stream()
        try:
            while not self.done:
                now = self.clock()
                if deadline is not None and now >= deadline:
                    break
                if self.mode == "poll" and self._next_poll_at is not None and now >= self._next_poll_at:
                    self.poll_once()
                    self._next_poll_at = self.clock() + self.poll_interval
                    continue
                if self._reconnect_at is not None and now >= self._reconnect_at:
                    self._reconnect_at = None
                    self._start_stream()
                try:
                    message = self.inbox.get(timeout=self._wait_timeout(now, deadline))
                except queue.Empty:
                    continue
                self.handle_message(message)
        finally:
            self.close()
        return self.progress

    def _wait_timeout(self, now: float, deadline: Optional[float]) -> float:
        candidates = [1.0]
        if self.mode == "poll" and self._next_poll_at is not None:
            candidates.append(self._next_poll_at - now)
        if self._reconnect_at is not None:
            candidates.append(self._reconnect_at - now)
        if deadline is not None:
            candidates.append(deadline - now)
        return max(min(candidates), 0.0)

    def handle_message(self, message: Message) -> None:
        event, data = message
        if event == "connected":
            self.connection_id = str((data or {}).get("connectionId") or "")
            self.mode = "push"
            self.reconnect_attempts = 0
            self._subscribe()
        elif event == "progress":
            self._apply_progress(data)
        elif event == "provisioning-log":
            self._append_logs([data])
        elif event == "provisioning-logs-buffer":
            self._append_logs(list(data or []))
        elif event == "disconnected":
            self.connection_id = ""
            if self.done:
                return
            # polling resumes at once while the stream reconnects in the background
            self.mode = "poll"
            self._next_poll_at = self.clock()
            if self.use_push and self.reconnect_attempts < MAX_RECONNECT_ATTEMPTS:
                self._reconnect_at = self.clock() + reconnect_delay(self.reconnect_attempts)
                self.reconnect_attempts += 1
        else:
            logger.debug("ignoring provisioning event %s", event)

    # ---- polling ----

    def poll_once(self) -> None:
        try:
            response = self.session.get(f"{self.base_url}/api/provisioning/{self.instance_id}/status", timeout=10)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            self.poll_failures += 1
            logger.debug("provisioning poll failed (%s/%s): %s", self.poll_failures, MAX_POLL_FAILURES, exc)
            if self.poll_failures >= MAX_POLL_FAILURES:
                self._apply_progress(
                    {
                        "instanceId": self.instance_id,
                        "status": "error",
                        "currentStep": "",
                        "steps": [],
                        "startedAt": datetime.now(timezone.utc).isoformat(),
                        "error": LOST_CONNECTION_MESSAGE,
                    }
                )
            return
        self.poll_failures = 0
        if payload and payload.get("status") != "unknown":
            self._apply_progress(payload)

    # ---- push ----

    def _start_stream(self) -> None:
        self._stream_generation += 1
        thread = threading.Thread(
            target=self._read_stream,
            args=(self._stream_generation,),
            name=f"provisioning-stream-{self.instance_id}",
            daemon=True,
        )
        thread.start()

    def _read_stream(self, generation: int) -> None:
        try:
            with self.session.get(
                f"{self.base_url}/api/provisioning/stream",
                stream=True,
                timeout=(10, None),
                headers={"Accept": "text/event-stream"},
            ) as response:
                response.raise_for_status()
                for event, raw in _iter_sse(response.iter_lines(decode_unicode=True)):
                    if self._stop.is_set() or generation != self._stream_generation:
                        return
                    try:
                        data = json.loads(raw)
                    except ValueError:
                        logger.warning("dropping malformed provisioning event %s", event)
                        continue
                    self.inbox.put((event, data))
        except requests.RequestException as exc:
            logger.debug("provisioning stream error: %s", exc)
        if not self._stop.is_set():
            self.inbox.put(("disconnected", None))

    def _subscribe(self) -> None:
        try:
            response = self.session.post(
                f"{self.base_url}/api/provisioning/subscribe",
                json={"connectionId": self.connection_id, "instanceId": self.instance_id},
                timeout=10,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("provisioning subscribe failed: %s", exc)
            self.inbox.put(("disconnected", None))

    def _unsubscribe(self) -> None:
        if not self.connection_id:
            return
        try:
            self.session.post(
                f"{self.base_url}/api/provisioning/unsubscribe",
                json={"connectionId": self.connection_id, "instanceId": self.instance_id},
                timeout=5,
            )
        except requests.RequestException as exc:
            logger.debug("provisioning unsubscribe failed: %s", exc)

    # ---- state ----

    def _apply_progress(self, progress: Dict[str, Any]) -> None:
        self.progress = progress
        if self.on_progress:
            self.on_progress(progress)
        if progress.get("status") in TERMINAL_STATUSES:
            self.done = True

    def _append_logs(self, entries: List[Dict[str, Any]]) -> None:
        self.logs.extend(entries)
        if len(self.logs) > MAX_CLIENT_LOG_LINES:
            self.logs = self.logs[-MAX_CLIENT_LOG_LINES:]
        if self.on_log:
            for entry in entries:
                self.on_log(entry)

    def close(self) -> None:
        self._stop.set()
        self._unsubscribe()
        self.connection_id = ""
