from unittest import mock

import requests
from django.test import SimpleTestCase

from fleet_orchestrator.provisioning_client import (
    LOST_CONNECTION_MESSAGE,
    MAX_CLIENT_LOG_LINES,
    MAX_POLL_FAILURES,
    MAX_RECONNECT_ATTEMPTS,
    ProvisioningClient,
    _iter_sse,
    reconnect_delay,
)


def _response(payload):
    response = mock.Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class ProvisioningClientTests(SimpleTestCase):
    def _client(self, session=None, **kwargs):
        session = session or mock.Mock(headers={})
        kwargs.setdefault("poll_interval", 0)
        kwargs.setdefault("use_push", False)
        return ProvisioningClient("http://api.test/", "bot-1", session=session, **kwargs)

    def test_reconnect_delay_is_capped(self):
        self.assertEqual([reconnect_delay(n) for n in range(7)], [1, 2, 4, 8, 16, 30, 30])

    def test_iter_sse_parses_frames(self):
        lines = [
            ": keepalive",
            "",
            "event: progress",
            'data: {"status": "in_progress"}',
            "",
            b"event: provisioning-log",
            b'data: {"line": "ok"}',
            "",
            'data: {"bare": true}',
            "",
        ]
        self.assertEqual(
            list(_iter_sse(lines)),
            [
                ("progress", '{"status": "in_progress"}'),
                ("provisioning-log", '{"line": "ok"}'),
                ("message", '{"bare": true}'),
            ],
        )

    def test_token_sets_bearer_header(self):
        client = self._client(token="abc")
        self.assertEqual(client.session.headers["Authorization"], "Bearer abc")

    def test_polling_stops_on_terminal_status(self):
        session = mock.Mock(headers={})
        session.get.side_effect = [
            _response({"instanceId": "bot-1", "status": "unknown"}),
            _response({"instanceId": "bot-1", "status": "in_progress", "steps": []}),
            _response({"instanceId": "bot-1", "status": "completed", "steps": []}),
        ]
        seen = []
        client = self._client(session, on_progress=lambda progress: seen.append(progress["status"]))

        result = client.run(max_seconds=5)

        self.assertEqual(result["status"], "completed")
        self.assertEqual(seen, ["in_progress", "completed"])
        self.assertEqual(session.get.call_args_list[0].args[0], "http://api.test/api/provisioning/bot-1/status")

    def test_repeated_poll_failures_surface_as_error(self):
        session = mock.Mock(headers={})
        session.get.side_effect = requests.ConnectionError("refused")
        client = self._client(session)

        result = client.run(max_seconds=5)

        self.assertEqual(session.get.call_count, MAX_POLL_FAILURES)
        self.assertEqual(result["status"], "error")
        self.assertEqual(result["error"], LOST_CONNECTION_MESSAGE)

    def test_successful_poll_resets_failure_count(self):
        session = mock.Mock(headers={})
        session.get.side_effect = [requests.Timeout("slow"), _response({"status": "in_progress"})]
        client = self._client(session)
        client.poll_once()
        self.assertEqual(client.poll_failures, 1)
        client.poll_once()
        self.assertEqual(client.poll_failures, 0)

    def test_connected_switches_to_push_and_subscribes(self):
        session = mock.Mock(headers={})
        client = self._client(session)
        client.handle_message(("connected", {"connectionId": "conn-1"}))

        self.assertEqual(client.mode, "push")
        self.assertEqual(client.connection_id, "conn-1")
        session.post.assert_called_once_with(
            "http://api.test/api/provisioning/subscribe",
            json={"connectionId": "conn-1", "instanceId": "bot-1"},
            timeout=10,
        )

    def test_failed_subscribe_queues_disconnect(self):
        session = mock.Mock(headers={})
        session.post.side_effect = requests.ConnectionError("down")
        client = self._client(session)
        client.handle_message(("connected", {"connectionId": "conn-1"}))
        self.assertEqual(client.inbox.get_nowait(), ("disconnected", None))

    def test_disconnect_falls_back_to_polling_and_schedules_reconnect(self):
        clock = mock.Mock(return_value=100.0)
        client = self._client(use_push=True, clock=clock)
        client.mode = "push"
        client.connection_id = "conn-1"

        client.handle_message(("disconnected", None))

        self.assertEqual(client.mode, "poll")
        self.assertEqual(client.connection_id, "")
        self.assertEqual(client._next_poll_at, 100.0)
        self.assertEqual(client._reconnect_at, 101.0)
        self.assertEqual(client.reconnect_attempts, 1)

    def test_reconnects_stop_after_limit(self):
        client = self._client(use_push=True, clock=lambda: 0.0)
        client.reconnect_attempts = MAX_RECONNECT_ATTEMPTS
        client.handle_message(("disconnected", None))
        self.assertEqual(client.mode, "poll")
        self.assertIsNone(client._reconnect_at)

    def test_push_messages_update_state(self):
        logs = []
        client = self._client(on_log=logs.append)
        client.handle_message(("provisioning-logs-buffer", [{"line": "a"}, {"line": "b"}]))
        client.handle_message(("provisioning-log", {"line": "c"}))
        client.handle_message(("progress", {"status": "timeout", "error": "Provisioning timed out after 15 minutes"}))

        self.assertEqual([entry["line"] for entry in client.logs], ["a", "b", "c"])
        self.assertEqual(len(logs), 3)
        self.assertTrue(client.done)

    def test_log_buffer_is_bounded(self):
        client = self._client()
        client.handle_message(("provisioning-logs-buffer", [{"line": str(i)} for i in range(MAX_CLIENT_LOG_LINES + 5)]))
        self.assertEqual(len(client.logs), MAX_CLIENT_LOG_LINES)
        self.assertEqual(client.logs[0]["line"], "5")

    def test_close_unsubscribes_active_connection(self):
        session = mock.Mock(headers={})
        client = self._client(session)
        client.connection_id = "conn-1"
        client.close()
        session.post.assert_called_once_with(
            "http://api.test/api/provisioning/unsubscribe",
            json={"connectionId": "conn-1", "instanceId": "bot-1"},
            timeout=5,
        )
        self.assertEqual(client.connection_id, "")
