import json
from unittest import mock

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase, override_settings

from fleet_orchestrator.models import BotInstance, ChangeSet, Fleet, VaultSecret
from fleet_orchestrator.provisioning_events import ProvisioningHub, provisioning_hub
from fleet_orchestrator.provisioning_views import event_stream

from .fakes import sample_manifest


class FleetApiTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.staff = user_model.objects.create_user(username="ops", password="pass", is_staff=True)
        self.client.force_login(self.staff)
        self.fleet = Fleet.objects.create(name="alpha", environment="dev")
        self.bot = BotInstance.objects.create(
            name="bot", fleet=self.fleet, status="RUNNING", desired_manifest_json=sample_manifest()
        )
        relay = mock.patch("fleet_orchestrator.provisioning_views.ensure_relay_listener")
        relay.start()
        self.addCleanup(relay.stop)

    def _post(self, url, payload=None):
        return self.client.post(url, data=json.dumps(payload or {}), content_type="application/json")

    def test_non_staff_is_rejected(self):
        user_model = get_user_model()
        plain = user_model.objects.create_user(username="viewer", password="pass")
        self.client.force_login(plain)
        response = self._post("/api/reconcile-all")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.client.get(f"/api/provisioning/{self.bot.id}/status").status_code, 403)

    def test_reconcile_all_reports_queued_instances(self):
        with mock.patch("fleet_orchestrator.reconciler.reconcile_all") as reconcile_all:
            reconcile_all.return_value = {"queued": [str(self.bot.id)], "skipped": [], "failed": []}
            response = self._post("/api/reconcile-all", {"fleetId": str(self.fleet.id)})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["queued"], [str(self.bot.id)])
        reconcile_all.assert_called_once_with(str(self.fleet.id), actor="ops")

    def test_reconcile_all_requires_post(self):
        self.assertEqual(self.client.get("/api/reconcile-all").status_code, 405)

    def test_instance_reconcile_queues_or_skips(self):
        with mock.patch("fleet_orchestrator.reconciler.request_reconcile", return_value=True) as request_reconcile:
            response = self._post(f"/api/instances/{self.bot.id}/reconcile")
        self.assertEqual(response.json(), {"instanceId": str(self.bot.id), "status": "queued"})
        request_reconcile.assert_called_once_with(self.bot.id, actor="ops")

        with mock.patch("fleet_orchestrator.reconciler.request_reconcile", return_value=False):
            response = self._post(f"/api/instances/{self.bot.id}/reconcile")
        self.assertEqual(response.json()["status"], "skipped")

    def test_instance_reconcile_unknown_instance(self):
        response = self._post("/api/instances/00000000-0000-0000-0000-000000000000/reconcile")
        self.assertEqual(response.status_code, 404)

    def test_pause_action_moves_instance(self):
        response = self._post(f"/api/instances/{self.bot.id}/pause")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "PAUSED")
        self.bot.refresh_from_db()
        self.assertEqual(self.bot.status, "PAUSED")

    def test_invalid_transition_is_a_conflict(self):
        BotInstance.objects.filter(id=self.bot.id).update(status="STOPPED")
        response = self._post(f"/api/instances/{self.bot.id}/pause")
        self.assertEqual(response.status_code, 409)

    def test_unknown_action_and_instance(self):
        self.assertEqual(self._post(f"/api/instances/{self.bot.id}/explode").status_code, 404)
        self.assertEqual(self._post("/api/instances/00000000-0000-0000-0000-000000000000/stop").status_code, 404)

    def test_promote_validation(self):
        response = self._post(f"/api/fleets/{self.fleet.id}/promote", {})
        self.assertEqual(response.status_code, 400)
        response = self._post(f"/api/fleets/{self.fleet.id}/promote", {"targetEnvironment": "prod"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("next environment is staging", response.json()["error"])

    def test_promote_moves_fleet(self):
        response = self._post(f"/api/fleets/{self.fleet.id}/promote", {"targetEnvironment": "staging"})
        self.assertEqual(response.status_code, 200)
        self.fleet.refresh_from_db()
        self.assertEqual(self.fleet.environment, "staging")

    def test_rollout_lifecycle(self):
        response = self._post(
            "/api/rollouts",
            {"botInstanceId": str(self.bot.id), "toManifest": sample_manifest(image="openclaw:2"), "description": "bump"},
        )
        self.assertEqual(response.status_code, 201)
        change_set_id = response.json()["id"]
        self.assertEqual(response.json()["status"], "PENDING")

        listed = self.client.get("/api/rollouts", {"botInstanceId": str(self.bot.id)}).json()["changeSets"]
        self.assertEqual([item["id"] for item in listed], [change_set_id])

        self.assertEqual(self._post(f"/api/rollouts/{change_set_id}/start").json()["status"], "IN_PROGRESS")
        self.assertEqual(self._post(f"/api/rollouts/{change_set_id}/start").status_code, 400)

        progressed = self._post(f"/api/rollouts/{change_set_id}/progress", {"updated": 1})
        self.assertEqual(progressed.json()["status"], "COMPLETED")

        status = self.client.get(f"/api/rollouts/{change_set_id}/status").json()
        self.assertEqual(status["progress"]["percentage"], 100)
        self.assertTrue(status["canRollback"])

        rollback = self._post(f"/api/rollouts/{change_set_id}/rollback", {"reason": "regression"})
        self.assertEqual(rollback.status_code, 201)
        self.assertEqual(rollback.json()["changeType"], "ROLLBACK")
        self.assertEqual(rollback.json()["rolloutStrategy"], "ALL")
        self.assertEqual(self._post(f"/api/rollouts/{change_set_id}/rollback", {"reason": "again"}).status_code, 400)

    def test_rollout_create_errors(self):
        response = self._post("/api/rollouts", {"botInstanceId": "00000000-0000-0000-0000-000000000000"})
        self.assertEqual(response.status_code, 404)
        response = self._post(
            "/api/rollouts", {"botInstanceId": str(self.bot.id), "rolloutStrategy": "CANARY", "toManifest": {}}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.client.get("/api/rollouts/00000000-0000-0000-0000-000000000000").status_code, 404)

    def test_rollout_execute_is_queued(self):
        change_set = ChangeSet.objects.create(bot_instance=self.bot, to_manifest_json={}, status="PENDING")
        with mock.patch("fleet_orchestrator.worker_tasks._enqueue_job", return_value="job-1") as enqueue:
            response = self._post(f"/api/rollouts/{change_set.id}/execute")
        self.assertEqual(response.json(), {"changeSetId": str(change_set.id), "status": "queued", "jobId": "job-1"})
        enqueue.assert_called_once_with("fleet_orchestrator.worker_tasks.rollout_change_set_job", str(change_set.id))

    @override_settings(SECRET_KEY="test-secret-key")
    def test_secret_store_and_delete_use_local_vault(self):
        response = self._post(f"/api/instances/{self.bot.id}/secrets", {"key": "API_KEY", "value": "s3cret"})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["ref"], f"local:{self.bot.id}/API_KEY")
        row = VaultSecret.objects.get(instance_id=str(self.bot.id), key="API_KEY")
        self.assertNotIn("s3cret", row.encrypted_value)

        response = self.client.delete(f"/api/instances/{self.bot.id}/secrets/API_KEY")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(VaultSecret.objects.filter(instance_id=str(self.bot.id)).exists())

    def test_secret_requires_key_and_value(self):
        response = self._post(f"/api/instances/{self.bot.id}/secrets", {"key": "API_KEY"})
        self.assertEqual(response.status_code, 400)

    def test_provisioning_status_and_logs(self):
        instance_id = str(self.bot.id)
        response = self.client.get(f"/api/provisioning/{instance_id}/status")
        self.assertEqual(response.json(), {"instanceId": instance_id, "status": "unknown"})

        provisioning_hub.start_provisioning(instance_id, "docker")
        self.addCleanup(provisioning_hub.complete_provisioning, instance_id)
        provisioning_hub.append_log(instance_id, "validate_config", "checking")
        self.assertEqual(self.client.get(f"/api/provisioning/{instance_id}/status").json()["status"], "in_progress")
        logs = self.client.get(f"/api/provisioning/{instance_id}/logs").json()["logs"]
        self.assertEqual([entry["line"] for entry in logs], ["checking"])

    def test_provisioning_subscribe(self):
        connection_id = provisioning_hub.open_connection()
        self.addCleanup(provisioning_hub.close_connection, connection_id)
        response = self._post("/api/provisioning/subscribe", {"connectionId": connection_id, "instanceId": str(self.bot.id)})
        self.assertEqual(response.json(), {"success": True})

        response = self._post("/api/provisioning/subscribe", {"connectionId": "nope", "instanceId": str(self.bot.id)})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"success": False, "message": "connection not found"})

        response = self._post("/api/provisioning/unsubscribe", {"connectionId": connection_id, "instanceId": str(self.bot.id)})
        self.assertEqual(response.json(), {"success": True})

    def test_rest_listing(self):
        response = self.client.get("/api/fleets/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()[0]["instance_count"], 1)
        response = self.client.get("/api/instances/", {"status": "RUNNING"})
        self.assertEqual([item["name"] for item in response.json()], ["bot"])


class EventStreamTests(SimpleTestCase):
    def test_stream_emits_connected_events_and_keepalives(self):
        hub = ProvisioningHub()
        connection_id = hub.open_connection()
        stream = event_stream(hub, connection_id, keepalive=0)

        first = next(stream)
        self.assertTrue(first.startswith("event: connected\n"))
        self.assertIn(connection_id, first)

        hub.subscribe(connection_id, "bot-1")
        hub.start_provisioning("bot-1", "local")
        chunk = next(stream)
        self.assertTrue(chunk.startswith("event: progress\n"))
        payload = json.loads(chunk.split("data: ", 1)[1])
        self.assertEqual(payload["instanceId"], "bot-1")

        self.assertEqual(next(stream), ": keepalive\n\n")
        hub.close_connection(connection_id)
        with self.assertRaises(StopIteration):
            next(stream)
