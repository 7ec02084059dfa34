from django.core.management.base import BaseCommand, CommandError

from fleet_orchestrator.models import Fleet
from fleet_orchestrator.reconciler import reconcile_all


class Command(BaseCommand):
    help = "Queue a reconcile for every eligible bot instance, optionally scoped to one fleet."

    def add_arguments(self, parser):
        parser.add_argument("--fleet", help="Fleet UUID to reconcile")
        parser.add_argument("--actor", default="system", help="Actor recorded in the audit log")
        parser.add_argument(
            "--check-drift",
            action="store_true",
            help="Skip running instances whose provider state already matches their manifest",
        )

    def handle(self, *args, **options):
        fleet_id = options.get("fleet")
        if fleet_id and not Fleet.objects.filter(id=fleet_id).exists():
            raise CommandError(f"Fleet {fleet_id} not found")
        if options.get("check_drift"):
            from fleet_orchestrator.drift import check_drift

            result = reconcile_all(fleet_id, actor=options["actor"], drift_check=check_drift)
        else:
            result = reconcile_all(fleet_id, actor=options["actor"])
        self.stdout.write(
            f"Queued: {len(result['queued'])}  Skipped: {len(result['skipped'])}  Failed: {len(result['failed'])}"
        )
        if result.get("converged"):
            self.stdout.write(f"Converged: {len(result['converged'])}")
        for instance_id in result["failed"]:
            self.stderr.write(f"Failed to queue {instance_id}")
