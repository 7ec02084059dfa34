from datetime import timedelta
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from fleet_orchestrator import reconciler
from fleet_orchestrator.models import AuditEvent, BotInstance, ChangeSet, Fleet
from fleet_orchestrator.preprocessors import PreprocessorChain
from fleet_orchestrator.providers.base import ContainerHealth, ContainerStatus, ValidationResult
from fleet_orchestrator.provisioning_events import ProvisioningHub

from .fakes import FakeProvider, fake_registry, sample_manifest

JOB_PATH = "fleet_orchestrator.worker_tasks.reconcile_instance_job"


class ReconcileTests(TestCase):
    def setUp(self):
        self.provider = FakeProvider()
        self.registry = fake_registry(self.provider)
        self.hub = ProvisioningHub()
        self.instance = BotInstance.objects.create(name="bot", status="PENDING", desired_manifest_json=sample_manifest())

    def _reconcile(self, instance_id=None):
        return reconciler.reconcile(
            instance_id or self.instance.id, providers=self.registry, chain=PreprocessorChain([]), hub=self.hub
        )

    def test_successful_reconcile_deploys_and_marks_running(self):
        result = self._reconcile()

        self.assertTrue(result.success, result.message)
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.status, "RUNNING")
        self.assertEqual(self.instance.health, ContainerHealth.UNKNOWN)
        self.assertEqual(self.instance.container_ref, "ctr-1")
        self.assertEqual(self.instance.gateway_port, 18789)
        self.assertEqual(self.instance.last_error, "")
        self.assertIsNotNone(self.instance.last_reconcile_at)

        config = self.provider.deployed[0]
        self.assertEqual(config.image, "openclaw:1")
        self.assertEqual(config.environment["CLAWSTER_ENVIRONMENT"], "dev")
        self.assertIn("OPENCLAW_CONFIG", config.environment)
        self.assertEqual(config.ports[0], 18789)

        progress = self.hub.get_progress(str(self.instance.id))
        self.assertEqual(progress["status"], "completed")
        self.assertTrue(all(step["status"] == "completed" for step in progress["steps"]))
        bootstrap = next(step for step in progress["steps"] if step["id"] == "bootstrap_infra")
        self.assertEqual(bootstrap["message"], "1 resource step(s) ensured")
        bootstrap_logs = [e["line"] for e in self.hub.get_recent_logs(str(self.instance.id)) if e["stepId"] == "bootstrap_infra"]
        self.assertEqual(bootstrap_logs, ["network ready", "network: done"])
        self.assertTrue(AuditEvent.objects.filter(action="instance.reconcile", resource_id=str(self.instance.id)).exists())

    def test_second_reconcile_updates_existing_container(self):
        self._reconcile()
        result = self._reconcile()
        self.assertTrue(result.success)
        self.assertEqual(self.provider.updated, ["ctr-1"])
        self.assertEqual(len(self.provider.deployed), 1)

    def test_provider_failure_marks_error(self):
        self.provider.fail_on["deploy"] = RuntimeError("disk full")
        result = self._reconcile()

        self.assertFalse(result.success)
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.status, "ERROR")
        self.assertEqual(self.instance.error_count, 1)
        self.assertTrue(self.instance.last_error.startswith("[UNKNOWN]"))
        self.assertIn("disk full", self.instance.last_error)

        progress = self.hub.get_progress(str(self.instance.id))
        self.assertEqual(progress["status"], "error")
        failed_step = next(step for step in progress["steps"] if step["id"] == "pull_image")
        self.assertEqual(failed_step["status"], "error")
        self.assertTrue(AuditEvent.objects.filter(action="instance.reconcile_failed").exists())

    def test_failed_validation_is_reported_as_authentication_error(self):
        self.provider.validation = ValidationResult(valid=False, errors=["Docker is not available"], warnings=["no compose"])
        result = self._reconcile()
        self.assertFalse(result.success)
        self.assertEqual(result.error["type"], "AUTHENTICATION")
        self.instance.refresh_from_db()
        self.assertIn("[AUTHENTICATION] Docker is not available", self.instance.last_error)
        logs = self.hub.get_recent_logs(str(self.instance.id))
        self.assertEqual(logs[0]["stream"], "stderr")

    def test_missing_manifest_fails(self):
        BotInstance.objects.filter(id=self.instance.id).update(desired_manifest_json={})
        result = self._reconcile()
        self.assertFalse(result.success)
        self.assertIn("No desired manifest", result.message)

    def test_deleting_instance_is_not_reconciled(self):
        BotInstance.objects.filter(id=self.instance.id).update(status="DELETING")
        result = self._reconcile()
        self.assertFalse(result.success)
        self.assertEqual(self.provider.deployed, [])
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.status, "DELETING")

    def test_error_count_accumulates(self):
        self.provider.fail_on["bootstrap"] = RuntimeError("no network")
        self._reconcile()
        self._reconcile()
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.error_count, 2)

    def test_unknown_instance_raises(self):
        with self.assertRaises(reconciler.ReconcileError):
            self._reconcile("00000000-0000-0000-0000-000000000000")


class ReconcileQueueTests(TestCase):
    def _create(self, name, status, **extra):
        return BotInstance.objects.create(name=name, status=status, desired_manifest_json=sample_manifest(), **extra)

    def test_reconcile_all_skips_in_flight_and_held_instances(self):
        queued = [self._create("pending", "PENDING"), self._create("running", "RUNNING"), self._create("error", "ERROR")]
        in_flight = [self._create("reconciling", "RECONCILING"), self._create("creating", "CREATING")]
        held = self._create("paused", "PAUSED")
        enqueue = mock.Mock(return_value="job-1")

        result = reconciler.reconcile_all(enqueue=enqueue)

        self.assertCountEqual(result["queued"], [str(i.id) for i in queued])
        self.assertCountEqual(result["skipped"], [str(i.id) for i in in_flight])
        self.assertEqual(result["failed"], [])
        self.assertEqual(enqueue.call_count, 3)
        self.assertEqual(enqueue.call_args.args[0], JOB_PATH)
        for instance in queued:
            instance.refresh_from_db()
            self.assertEqual(instance.status, "RECONCILING")
        creating = in_flight[1]
        creating.refresh_from_db()
        self.assertEqual(creating.status, "CREATING")
        held.refresh_from_db()
        self.assertEqual(held.status, "PAUSED")

    def test_reconcile_all_scoped_to_fleet(self):
        fleet = Fleet.objects.create(name="alpha")
        inside = self._create("inside", "PENDING", fleet=fleet)
        self._create("outside", "PENDING")
        result = reconciler.reconcile_all(fleet.id, enqueue=mock.Mock())
        self.assertEqual(result["queued"], [str(inside.id)])

    def test_enqueue_failure_restores_status(self):
        instance = self._create("bot", "RUNNING")
        result = reconciler.reconcile_all(enqueue=mock.Mock(side_effect=ConnectionError("redis down")))
        self.assertEqual(result["failed"], [str(instance.id)])
        instance.refresh_from_db()
        self.assertEqual(instance.status, "RUNNING")

    def test_request_reconcile_claims_once(self):
        instance = self._create("bot", "PENDING")
        enqueue = mock.Mock()
        self.assertTrue(reconciler.request_reconcile(instance.id, enqueue=enqueue))
        self.assertFalse(reconciler.request_reconcile(instance.id, enqueue=enqueue))
        enqueue.assert_called_once_with(JOB_PATH, str(instance.id))
        with self.assertRaises(reconciler.ReconcileError):
            reconciler.request_reconcile("00000000-0000-0000-0000-000000000000", enqueue=enqueue)

    def test_request_reconcile_claims_newly_created_instance(self):
        instance = self._create("fresh", "CREATING")
        enqueue = mock.Mock()
        self.assertTrue(reconciler.request_reconcile(instance.id, enqueue=enqueue))
        enqueue.assert_called_once_with(JOB_PATH, str(instance.id))
        instance.refresh_from_db()
        self.assertEqual(instance.status, "RECONCILING")

    def test_request_reconcile_skips_deleting_instance(self):
        instance = self._create("gone", "DELETING")
        enqueue = mock.Mock()
        self.assertFalse(reconciler.request_reconcile(instance.id, enqueue=enqueue))
        enqueue.assert_not_called()

    def test_request_reconcile_reraises_enqueue_failure(self):
        instance = self._create("bot", "ERROR")
        with self.assertRaises(ConnectionError):
            reconciler.request_reconcile(instance.id, enqueue=mock.Mock(side_effect=ConnectionError("redis down")))
        instance.refresh_from_db()
        self.assertEqual(instance.status, "ERROR")

    def test_sweep_stuck_requeues_old_reconciles(self):
        stuck = self._create("stuck", "RECONCILING")
        fresh = self._create("fresh", "RECONCILING")
        BotInstance.objects.filter(id=stuck.id).update(status_changed_at=timezone.now() - timedelta(hours=1))
        BotInstance.objects.filter(id=fresh.id).update(status_changed_at=timezone.now())

        self.assertEqual(reconciler.sweep_stuck(600), [str(stuck.id)])

        stuck.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(stuck.status, "PENDING")
        self.assertEqual(fresh.status, "RECONCILING")
        self.assertTrue(AuditEvent.objects.filter(action="instance.unstick", resource_id=str(stuck.id)).exists())

    def test_sweep_command(self):
        stuck = self._create("stuck", "RECONCILING")
        BotInstance.objects.filter(id=stuck.id).update(status_changed_at=timezone.now() - timedelta(hours=1))
        out = StringIO()
        call_command("sweep_stuck_instances", "--threshold", "60", stdout=out)
        self.assertIn("Recovered 1 stuck instance(s)", out.getvalue())

    @mock.patch("fleet_orchestrator.management.commands.reconcile_fleet.reconcile_all")
    def test_reconcile_fleet_command(self, mock_reconcile_all):
        mock_reconcile_all.return_value = {"queued": ["a", "b"], "skipped": ["c"], "failed": []}
        out = StringIO()
        call_command("reconcile_fleet", stdout=out)
        self.assertIn("Queued: 2  Skipped: 1  Failed: 0", out.getvalue())
        mock_reconcile_all.assert_called_once_with(None, actor="system")


class LifecycleTests(TestCase):
    def setUp(self):
        self.provider = FakeProvider()
        self.registry = fake_registry(self.provider)
        self.provider.set_container("ctr-1", ContainerStatus.RUNNING)
        self.instance = BotInstance.objects.create(
            name="bot", status="RUNNING", container_ref="ctr-1", desired_manifest_json=sample_manifest()
        )

    def test_transition_table(self):
        self.assertTrue(reconciler.can_transition("DELETING", "ERROR"))
        self.assertFalse(reconciler.can_transition("DELETING", "RUNNING"))
        self.assertFalse(reconciler.can_transition("PAUSED", "RUNNING"))
        BotInstance.objects.filter(id=self.instance.id).update(status="DELETING")
        self.instance.refresh_from_db()
        with self.assertRaises(reconciler.InvalidTransition):
            reconciler.transition(self.instance, "RUNNING")

    def test_transition_detects_concurrent_change(self):
        BotInstance.objects.filter(id=self.instance.id).update(status="STOPPED")
        with self.assertRaises(reconciler.InvalidTransition) as ctx:
            reconciler.transition(self.instance, "DRAINING")
        self.assertEqual(ctx.exception.current, "STOPPED")

    def test_check_health_degrades_and_recovers(self):
        self.provider.set_container("ctr-1", ContainerStatus.ERROR, ContainerHealth.UNHEALTHY)
        instance = reconciler.check_health(self.instance.id, providers=self.registry)
        self.assertEqual(instance.health, ContainerHealth.UNHEALTHY)
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.status, "DEGRADED")
        self.assertIsNotNone(self.instance.last_health_check_at)

        self.provider.set_container("ctr-1", ContainerStatus.RUNNING, ContainerHealth.HEALTHY)
        reconciler.check_health(self.instance.id, providers=self.registry)
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.status, "RUNNING")
        self.assertEqual(self.instance.health, ContainerHealth.HEALTHY)

    def test_check_health_without_container_is_unhealthy(self):
        BotInstance.objects.filter(id=self.instance.id).update(container_ref="")
        instance = reconciler.check_health(self.instance.id, providers=self.registry)
        self.assertEqual(instance.health, ContainerHealth.UNHEALTHY)

    def test_pause_stops_container(self):
        instance = reconciler.pause(self.instance.id, providers=self.registry)
        self.assertEqual(instance.status, "PAUSED")
        self.assertEqual(self.provider.stopped, ["ctr-1"])
        with self.assertRaises(reconciler.InvalidTransition):
            reconciler.drain(self.instance.id)

    def test_stop_is_idempotent(self):
        reconciler.stop(self.instance.id, providers=self.registry)
        reconciler.stop(self.instance.id, providers=self.registry)
        self.assertEqual(self.provider.stopped, ["ctr-1"])
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.status, "STOPPED")

    def test_resume_requeues_reconcile(self):
        reconciler.pause(self.instance.id, providers=self.registry)
        enqueue = mock.Mock()
        instance = reconciler.resume(self.instance.id, enqueue=enqueue)
        self.assertEqual(instance.status, "RECONCILING")
        enqueue.assert_called_once_with(JOB_PATH, str(self.instance.id))

    def test_restart_cycles_container(self):
        instance = reconciler.restart(self.instance.id, providers=self.registry)
        self.assertEqual(instance.status, "RUNNING")
        self.assertEqual(self.provider.stopped, ["ctr-1"])
        self.assertEqual(self.provider.started, ["ctr-1"])

    def test_restart_failure_marks_error(self):
        self.provider.fail_on["start"] = RuntimeError("container exited")
        instance = reconciler.restart(self.instance.id, providers=self.registry)
        self.assertEqual(instance.status, "ERROR")
        self.assertIn("container exited", instance.last_error)

    def test_delete_removes_instance_without_history(self):
        result = reconciler.delete(self.instance.id, providers=self.registry)
        self.assertTrue(result["deleted"])
        self.assertEqual(self.provider.deleted, ["ctr-1"])
        self.assertFalse(BotInstance.objects.filter(id=self.instance.id).exists())

    def test_delete_keeps_tombstone_when_change_sets_exist(self):
        ChangeSet.objects.create(bot_instance=self.instance, status="COMPLETED", to_manifest_json={})
        result = reconciler.delete(self.instance.id, providers=self.registry)
        self.assertFalse(result["deleted"])
        self.instance.refresh_from_db()
        self.assertEqual(self.instance.status, "DELETING")
        self.assertEqual(self.instance.container_ref, "")

    def test_delete_refused_during_rollout(self):
        ChangeSet.objects.create(bot_instance=self.instance, status="IN_PROGRESS", to_manifest_json={})
        with self.assertRaises(reconciler.InvalidTransition):
            reconciler.delete(self.instance.id, providers=self.registry)
        self.assertEqual(self.provider.deleted, [])
