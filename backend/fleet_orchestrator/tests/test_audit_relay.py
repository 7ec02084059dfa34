import json
from datetime import timedelta
from unittest import mock

from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from fleet_orchestrator import provisioning_relay, worker_tasks
from fleet_orchestrator.audit import make_dedupe_key, record_audit_event, summarize_diff
from fleet_orchestrator.models import AuditEvent, BotInstance
from fleet_orchestrator.provisioning_events import ProvisioningHub


class AuditTests(TestCase):
    def test_dedupe_key_suppresses_repeats(self):
        key = make_dedupe_key("instance.reconcile", "bot-1", {"version": 2})
        first = record_audit_event(action="instance.reconcile", resource_type="bot_instance", resource_id="bot-1", dedupe_key=key)
        second = record_audit_event(action="instance.reconcile", resource_type="bot_instance", resource_id="bot-1", dedupe_key=key)
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(AuditEvent.objects.filter(dedupe_key=key).count(), 1)
        self.assertEqual(first.actor, "system")

    def test_events_without_key_are_always_recorded(self):
        for _ in range(2):
            record_audit_event(action="fleet.promote", resource_type="fleet", resource_id="f-1", actor="ops")
        self.assertEqual(AuditEvent.objects.filter(action="fleet.promote").count(), 2)

    def test_summarize_diff_hashes_large_values(self):
        summary = summarize_diff(
            {"image": "openclaw:1", "spec": {"a": 1}, "notes": "x" * 300},
            {"image": "openclaw:2", "spec": {"a": 1}, "notes": "y" * 300},
        )
        self.assertEqual(summary["changed_fields"], ["image", "notes"])
        self.assertEqual(summary["diff"]["image"], {"from": "openclaw:1", "to": "openclaw:2"})
        self.assertEqual(len(summary["diff"]["notes"]["to"]["preview"]), 200)
        self.assertIn("hash", summary["diff"]["notes"]["to"])


class RelayTests(SimpleTestCase):
    def test_attach_publisher_mirrors_operations_to_redis(self):
        hub = ProvisioningHub()
        conn = mock.Mock()
        with mock.patch.dict("os.environ", {"CLAWSTER_PROVISIONING_RELAY": "1"}), mock.patch.object(
            provisioning_relay.redis.Redis, "from_url", return_value=conn
        ):
            provisioning_relay.attach_publisher(hub)
            hub.start_provisioning("bot-1", "gce")

        channel, raw = conn.publish.call_args.args
        self.assertEqual(channel, provisioning_relay.RELAY_CHANNEL)
        self.assertEqual(json.loads(raw), {"op": "start", "payload": {"instanceId": "bot-1", "deploymentType": "gce"}})

    def test_relay_can_be_disabled(self):
        hub = ProvisioningHub()
        with mock.patch.dict("os.environ", {"CLAWSTER_PROVISIONING_RELAY": "false"}):
            provisioning_relay.attach_publisher(hub)
            self.assertFalse(provisioning_relay.ensure_relay_listener(hub))
        self.assertIsNone(hub.publisher)

    def test_publish_failures_do_not_break_the_hub(self):
        hub = ProvisioningHub()
        hub.publisher = mock.Mock(side_effect=RuntimeError("redis down"))
        hub.start_provisioning("bot-1", "docker")
        self.assertEqual(hub.get_progress("bot-1")["status"], "in_progress")


class WorkerTaskTests(TestCase):
    def test_timeout_job_publishes_for_stale_reconciles(self):
        stale = BotInstance.objects.create(name="stale", status="RECONCILING")
        fresh = BotInstance.objects.create(name="fresh", status="RECONCILING")
        BotInstance.objects.filter(id=stale.id).update(status_changed_at=timezone.now() - timedelta(minutes=20))
        BotInstance.objects.filter(id=fresh.id).update(status_changed_at=timezone.now())

        with mock.patch("fleet_orchestrator.provisioning_relay.publish_op") as publish_op, mock.patch(
            "fleet_orchestrator.worker_tasks._schedule_job"
        ) as schedule:
            expired = worker_tasks.timeout_provisioning_job()

        self.assertEqual(expired, [str(stale.id)])
        publish_op.assert_called_once_with("timeout", {"instanceId": str(stale.id)})
        schedule.assert_called_once_with(
            "fleet_orchestrator.worker_tasks.timeout_provisioning_job", worker_tasks.TIMEOUT_CHECK_INTERVAL_SECONDS
        )

    def test_enqueue_uses_default_queue(self):
        queue = mock.Mock()
        queue.enqueue.return_value = mock.Mock(id="job-9")
        with mock.patch("rq.Queue", return_value=queue) as queue_cls, mock.patch("redis.Redis.from_url"):
            job_id = worker_tasks._enqueue_job("fleet_orchestrator.worker_tasks.sweep_stuck_job", 60)
        self.assertEqual(job_id, "job-9")
        self.assertEqual(queue_cls.call_args.args, ("default",))
        queue.enqueue.assert_called_once_with(
            "fleet_orchestrator.worker_tasks.sweep_stuck_job", 60, job_timeout=worker_tasks.JOB_TIMEOUT_SECONDS
        )


class PeriodicJobTests(SimpleTestCase):
    SWEEP = "fleet_orchestrator.worker_tasks.sweep_stuck_job"
    TIMEOUTS = "fleet_orchestrator.worker_tasks.timeout_provisioning_job"
    DRIFT = "fleet_orchestrator.worker_tasks.reconcile_drifted_job"

    def test_every_periodic_job_is_scheduled(self):
        schedule = mock.Mock(side_effect=lambda path, delay: f"job-{delay}")
        with mock.patch.dict(worker_tasks.PERIODIC_JOBS, {self.SWEEP: 300, self.TIMEOUTS: 60, self.DRIFT: 600}):
            scheduled = worker_tasks.schedule_periodic_jobs(schedule)
        self.assertEqual(scheduled, ["job-300", "job-60", "job-600"])
        self.assertEqual(
            [c.args for c in schedule.call_args_list], [(self.SWEEP, 300), (self.TIMEOUTS, 60), (self.DRIFT, 600)]
        )

    def test_disabled_and_failing_jobs_do_not_block_the_rest(self):
        schedule = mock.Mock(side_effect=[ConnectionError("redis down"), "job-2"])
        with mock.patch.dict(worker_tasks.PERIODIC_JOBS, {self.SWEEP: 300, self.TIMEOUTS: 60, self.DRIFT: 0}):
            scheduled = worker_tasks.schedule_periodic_jobs(schedule)
        self.assertEqual(scheduled, ["job-2"])
        self.assertEqual(schedule.call_count, 2)

    @mock.patch("fleet_orchestrator.worker_tasks.time.time", return_value=1000.0)
    def test_schedule_job_ids_collapse_within_an_interval(self, _mock_time):
        queue = mock.Mock()
        queue.enqueue_in.return_value = mock.Mock(id="clawster-sweep_stuck_job-4")
        with mock.patch("rq.Queue", return_value=queue), mock.patch("redis.Redis.from_url"), mock.patch.dict(
            worker_tasks.PERIODIC_JOBS, {self.SWEEP: 300}
        ):
            job_id = worker_tasks._schedule_job(self.SWEEP, 300)
        self.assertEqual(job_id, "clawster-sweep_stuck_job-4")
        queue.enqueue_in.assert_called_once_with(
            timedelta(seconds=300),
            self.SWEEP,
            job_id="clawster-sweep_stuck_job-4",
            job_timeout=worker_tasks.JOB_TIMEOUT_SECONDS,
        )

    def test_sweep_job_reschedules_itself_even_when_it_fails(self):
        with mock.patch("fleet_orchestrator.reconciler.sweep_stuck", side_effect=RuntimeError("db down")), mock.patch(
            "fleet_orchestrator.worker_tasks._schedule_job"
        ) as schedule, mock.patch.dict(worker_tasks.PERIODIC_JOBS, {self.SWEEP: 300}):
            with self.assertRaises(RuntimeError):
                worker_tasks.sweep_stuck_job()
        schedule.assert_called_once_with(self.SWEEP, 300)

    def test_reschedule_failure_is_logged_not_raised(self):
        with mock.patch("fleet_orchestrator.reconciler.sweep_stuck", return_value=["a"]), mock.patch(
            "fleet_orchestrator.worker_tasks._schedule_job", side_effect=ConnectionError("redis down")
        ), mock.patch.dict(worker_tasks.PERIODIC_JOBS, {self.SWEEP: 300}):
            with self.assertLogs("fleet_orchestrator.worker_tasks", level="WARNING") as logs:
                self.assertEqual(worker_tasks.sweep_stuck_job(), ["a"])
        self.assertIn("failed to reschedule", logs.output[0])

    def test_drift_job_reconciles_with_drift_check(self):
        from fleet_orchestrator.drift import check_drift

        with mock.patch("fleet_orchestrator.reconciler.reconcile_all", return_value={"queued": []}) as reconcile_all, mock.patch(
            "fleet_orchestrator.worker_tasks._schedule_job"
        ) as schedule, mock.patch.dict(worker_tasks.PERIODIC_JOBS, {self.DRIFT: 600}):
            self.assertEqual(worker_tasks.reconcile_drifted_job(), {"queued": []})
        reconcile_all.assert_called_once_with(drift_check=check_drift)
        schedule.assert_called_once_with(self.DRIFT, 600)

    @mock.patch("fleet_orchestrator.worker_tasks.schedule_periodic_jobs")
    @mock.patch("fleet_orchestrator.worker.Worker")
    @mock.patch("fleet_orchestrator.worker.redis.Redis.from_url")
    @mock.patch("fleet_orchestrator.worker.django.setup")
    def test_worker_schedules_jobs_and_runs_scheduler(self, _mock_setup, _mock_redis, mock_worker_cls, mock_schedule):
        from fleet_orchestrator import worker

        worker.main()
        mock_schedule.assert_called_once_with()
        mock_worker_cls.return_value.work.assert_called_once_with(with_scheduler=True)
