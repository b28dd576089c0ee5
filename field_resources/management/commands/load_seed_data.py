import json
from pathlib import Path
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from field_resources.models import Project, FieldResource, Assignment, AttendanceRecord, Expense


class Command(BaseCommand):
    help = "Load demo projects, field resources and assignments from JSON files in seed_data/."

    def add_arguments(self, parser):
        parser.add_argument(
            "--truncate",
            action="store_true",
            help="Delete existing data before loading.",
        )
        parser.add_argument(
            "--dir",
            default="seed_data",
            help="Directory containing JSON files (default: seed_data).",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        base_dir = Path(options["dir"]).resolve()

        # 1. optional clean, children first because of PROTECT foreign keys
        if options["truncate"]:
            self.stdout.write("Deleting existing records…")
            Expense.objects.all().delete()
            AttendanceRecord.objects.all().delete()
            Assignment.objects.all().delete()
            FieldResource.objects.all().delete()
            Project.objects.all().delete()

        # 2. load json helpers
        def load_json(name):
            path = base_dir / f"{name}.json"
            if not path.exists():
                raise CommandError(f"{path} not found")
            with open(path) as f:
                return json.load(f)

        projects    = load_json("projects")
        resources   = load_json("resources")
        assigns     = load_json("assignments")

        # 3. create records; availability follows the active assignments
        busy = {a["resource_id"] for a in assigns if a.get("status") == Assignment.Status.ACTIVE}

        Project.objects.bulk_create(
            [Project(id=p["id"], code=p["code"], title=p["title"]) for p in projects],
            ignore_conflicts=True,
        )
        FieldResource.objects.bulk_create(
            [
                FieldResource(
                    id=r["id"],
                    external_id=r["external_id"],
                    name=r["name"],
                    phone=r.get("phone", ""),
                    is_available=r["id"] not in busy,
                )
                for r in resources
            ],
            ignore_conflicts=True,
        )
        Assignment.objects.bulk_create(
            [
                Assignment(
                    id=a["id"],
                    project_id=a["project_id"],
                    resource_id=a["resource_id"],
                    status=a.get("status", Assignment.Status.PENDING),
                    start_date=a["start_date"],
                    end_date=a["end_date"],
                    assigned_districts=a.get("assigned_districts", []),
                    assigned_villages=a.get("assigned_villages", []),
                    target_interviews=a["target_interviews"],
                    total_days=a["total_days"],
                    daily_rate=a.get("daily_rate"),
                    instructions=a.get("instructions", ""),
                    assigned_by=a.get("assigned_by", "seed"),
                )
                for a in assigns
            ],
            ignore_conflicts=True,
        )

        self.stdout.write(self.style.SUCCESS(
            f"✅  Loaded {len(projects)} projects, {len(resources)} resources, {len(assigns)} assignments"
        ))
