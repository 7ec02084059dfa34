from django.core.management.base import BaseCommand

from fleet_orchestrator.reconciler import STUCK_THRESHOLD_SECONDS, sweep_stuck


class Command(BaseCommand):
    help = "Return instances stuck in RECONCILING to PENDING so they can be reconciled again."

    def add_arguments(self, parser):
        parser.add_argument(
            "--threshold",
            type=int,
            default=STUCK_THRESHOLD_SECONDS,
            help="Seconds an instance may stay RECONCILING before it is considered stuck",
        )

    def handle(self, *args, **options):
        recovered = sweep_stuck(options["threshold"])
        self.stdout.write(f"Recovered {len(recovered)} stuck instance(s)")
        for instance_id in recovered:
            self.stdout.write(f"  {instance_id}")
