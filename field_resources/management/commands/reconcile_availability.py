from django.core.management.base import BaseCommand

from field_resources.services import AvailabilityCoordinator


class Command(BaseCommand):
    help = "Recompute field resource availability from the active assignments (run after a restart)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report the flags that would change without writing them.",
        )

    def handle(self, *args, **options):
        corrections = AvailabilityCoordinator.reconcile(dry_run=options["dry_run"])
        if not corrections:
            self.stdout.write(self.style.SUCCESS("Availability is consistent with active assignments"))
            return

        verb = "Would set" if options["dry_run"] else "Set"
        for resource_id, available in corrections:
            self.stdout.write(f"{verb} resource {resource_id} available={available}")
        self.stdout.write(self.style.WARNING(f"{len(corrections)} resource(s) out of sync"))
