import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from django.db import IntegrityError, transaction
from django.db.models import Count, DecimalField, Q, QuerySet, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from .auth import Actor
from .exceptions import (
    AlreadyCheckedIn, DuplicateDate, HasDependentsError, ImmutableStateError,
    InvalidTransition, NoOpenSession, NotFound, ResourceUnavailable, ValidationError,
)
from .interviews import InterviewCountClient
from .models import Assignment, AttendanceRecord, Expense, FieldResource, Project
from .permissions import ensure_can_act_on_assignment, ensure_operator, require_actor
from .schemas import ExpenseTotalsSchema, ProgressSchema, TodayStatusSchema, AttendanceSchema

logger = logging.getLogger(__name__)

Status = Assignment.Status


def _now() -> datetime:
    return timezone.localtime()


def _call_time():
    return _now().time().replace(microsecond=0)


def _get_or_404(queryset: QuerySet, pk: int, label: str, lock: bool = False):
    if lock:
        queryset = queryset.select_for_update()
    try:
        return queryset.get(pk=pk)
    except queryset.model.DoesNotExist:
        raise NotFound(f"{label} {pk} not found", **{f"{label.lower()}_id": pk})


class AvailabilityCoordinator:
    """Owns the ``is_available`` flag of field resources."""

    @staticmethod
    def _write(resource: FieldResource, value: bool, reason: str) -> FieldResource:
        if resource.is_available != value:
            resource.is_available = value
            resource.availability_changed_at = _now()
            resource.save(update_fields=["is_available", "availability_changed_at"])
            logger.info("Resource %s availability set to %s (%s)", resource.id, value, reason)
        return resource

    @classmethod
    @transaction.atomic
    def set_available(cls, actor: Actor, resource_id: int, value: bool) -> FieldResource:
        """Operator override; allowed whatever the resource's assignments are."""
        ensure_operator(actor, "change resource availability")
        resource = _get_or_404(FieldResource.objects.all(), resource_id, "Resource", lock=True)
        return cls._write(resource, value, f"override by {actor.id}")

    @classmethod
    def on_assignment_activated(cls, resource: FieldResource) -> FieldResource:
        return cls._write(resource, False, "assignment activated")

    @classmethod
    def on_assignment_deactivated(cls, resource: FieldResource) -> FieldResource:
        """Frees the resource only when none of its assignments is still active."""
        still_active = Assignment.objects.filter(resource=resource, status=Status.ACTIVE).exists()
        if still_active:
            return resource
        return cls._write(resource, True, "assignment left active")

    @staticmethod
    def is_available(resource_id: int) -> bool:
        return _get_or_404(FieldResource.objects.all(), resource_id, "Resource").is_available

    @staticmethod
    def get_resource(resource_id: int) -> FieldResource:
        return _get_or_404(FieldResource.objects.all(), resource_id, "Resource")

    @staticmethod
    def list_resources(available: Optional[bool] = None):
        resources = FieldResource.objects.order_by("name", "id")
        if available is not None:
            resources = resources.filter(is_available=available)
        return resources

    @classmethod
    @transaction.atomic
    def reconcile(cls, dry_run: bool = False) -> list[tuple[int, bool]]:
        """
        Derive every resource's availability from the set of active
        assignments and repair the flags that disagree.
        Returns (resource_id, corrected value) pairs.
        """
        busy_ids = set(
            Assignment.objects.filter(status=Status.ACTIVE).values_list("resource_id", flat=True)
        )
        corrections = []
        for resource in FieldResource.objects.select_for_update().order_by("id"):
            expected = resource.id not in busy_ids
            if resource.is_available == expected:
                continue
            corrections.append((resource.id, expected))
            if not dry_run:
                cls._write(resource, expected, "reconciliation")
        if corrections:
            logger.warning("Availability reconciliation corrected %d resource(s)", len(corrections))
        return corrections


class AssignmentService:
    """Assignment store and its status state machine."""

    SCHEDULE_FIELDS = {
        "start_date", "end_date", "target_interviews", "total_days",
        "daily_rate", "assigned_districts", "assigned_villages",
    }
    OPEN_STATUSES = (Status.PENDING, Status.ACTIVE)

    @staticmethod
    def base_queryset() -> QuerySet:
        """Assignments with the interview tally annotated."""
        return Assignment.objects.select_related("project", "resource").annotate(
            completed_interviews=Coalesce(Sum("attendance_records__interviews_conducted"), Value(0))
        )

    @staticmethod
    def _validate(values: dict[str, Any]):
        for field in ("start_date", "end_date"):
            if values[field] is None:
                raise ValidationError(f"{field} is required", field=field)
        if values["end_date"] < values["start_date"]:
            raise ValidationError(
                "end_date must not be before start_date",
                start_date=values["start_date"].isoformat(),
                end_date=values["end_date"].isoformat(),
            )
        for field in ("target_interviews", "total_days"):
            if values[field] is None or values[field] <= 0:
                raise ValidationError(f"{field} must be greater than 0", field=field, value=values[field])
        rate = values.get("daily_rate")
        if rate is not None and rate < 0:
            raise ValidationError("daily_rate must not be negative", field="daily_rate", value=str(rate))

    @classmethod
    def _ensure_no_overlap(cls, resource: FieldResource, start: date, end: date, exclude_id: Optional[int] = None):
        clashes = Assignment.objects.filter(
            resource=resource,
            status__in=cls.OPEN_STATUSES,
            start_date__lte=end,
            end_date__gte=start,
        )
        if exclude_id is not None:
            clashes = clashes.exclude(id=exclude_id)
        clash = clashes.order_by("start_date").first()
        if clash:
            raise ResourceUnavailable(
                f"Resource {resource.id} already has assignment {clash.id} between "
                f"{clash.start_date} and {clash.end_date}",
                resource_id=resource.id,
                conflicting_assignment_id=clash.id,
                conflicting_status=clash.status,
            )

    @classmethod
    def get(cls, assignment_id: int) -> Assignment:
        return _get_or_404(cls.base_queryset(), assignment_id, "Assignment")

    @classmethod
    def list_assignments(cls, status: Optional[str] = None, project_id: Optional[int] = None,
                         resource_id: Optional[int] = None) -> QuerySet:
        assignments = cls.base_queryset()
        if status:
            assignments = assignments.filter(status=status)
        if project_id:
            assignments = assignments.filter(project_id=project_id)
        if resource_id:
            assignments = assignments.filter(resource_id=resource_id)
        return assignments

    @classmethod
    def list_for_actor(cls, actor: Actor, status: Optional[str] = None) -> QuerySet:
        """Assignments of the field resource the actor is signed in as."""
        actor = require_actor(actor)
        return cls.list_assignments(status=status).filter(resource__external_id=actor.id)

    @classmethod
    @transaction.atomic
    def create(cls, actor: Actor, data: dict[str, Any]) -> Assignment:
        actor = ensure_operator(actor, "create assignments")
        cls._validate(data)
        project = _get_or_404(Project.objects.all(), data["project_id"], "Project")
        # serialises double-booking checks per resource
        resource = _get_or_404(FieldResource.objects.all(), data["resource_id"], "Resource", lock=True)
        cls._ensure_no_overlap(resource, data["start_date"], data["end_date"])

        assignment = Assignment.objects.create(
            project=project,
            resource=resource,
            start_date=data["start_date"],
            end_date=data["end_date"],
            assigned_districts=data.get("assigned_districts") or [],
            assigned_villages=data.get("assigned_villages") or [],
            target_interviews=data["target_interviews"],
            total_days=data["total_days"],
            daily_rate=data.get("daily_rate"),
            instructions=data.get("instructions") or "",
            notes=data.get("notes") or "",
            assigned_by=actor.id,
        )
        logger.info("Assignment %s created for resource %s on project %s by %s",
                    assignment.id, resource.id, project.code, actor.id)
        return cls.get(assignment.id)

    @classmethod
    @transaction.atomic
    def update(cls, actor: Actor, assignment_id: int, changes: dict[str, Any]) -> Assignment:
        ensure_operator(actor, "update assignments")
        assignment = _get_or_404(Assignment.objects.select_related("resource"), assignment_id, "Assignment", lock=True)

        if assignment.status == Status.PENDING:
            editable = cls.SCHEDULE_FIELDS | {"instructions", "notes"}
        elif assignment.is_terminal:
            editable = {"notes"}
        else:
            editable = {"instructions", "notes"}
        locked = sorted(set(changes) - editable)
        if locked:
            raise ImmutableStateError(
                f"Assignment {assignment.id} is {assignment.status}; {', '.join(locked)} cannot be changed",
                assignment_id=assignment.id,
                current_status=assignment.status,
                fields=locked,
            )

        for field in ("assigned_districts", "assigned_villages", "instructions", "notes"):
            if field in changes and changes[field] is None:
                changes[field] = [] if field.startswith("assigned_") else ""

        values = {field: getattr(assignment, field) for field in cls.SCHEDULE_FIELDS}
        values.update({k: v for k, v in changes.items() if k in cls.SCHEDULE_FIELDS})
        cls._validate(values)
        if {"start_date", "end_date"} & set(changes):
            cls._ensure_no_overlap(assignment.resource, values["start_date"], values["end_date"],
                                   exclude_id=assignment.id)

        for field, value in changes.items():
            setattr(assignment, field, value)
        assignment.save()
        logger.info("Assignment %s updated (%s)", assignment.id, ", ".join(sorted(changes)) or "no fields")
        return cls.get(assignment.id)

    @classmethod
    @transaction.atomic
    def transition(cls, actor: Actor, assignment_id: int, new_status: str) -> Assignment:
        """
        Move an assignment along the state machine.
        Activation takes the resource out of the available pool and leaving
        active returns it; both happen in the same transaction as the status
        write.
        """
        actor = ensure_operator(actor, "change assignment status")
        assignment = _get_or_404(Assignment.objects.all(), assignment_id, "Assignment", lock=True)
        resource = _get_or_404(FieldResource.objects.all(), assignment.resource_id, "Resource", lock=True)

        if new_status not in Status.values:
            raise ValidationError(
                f"Unknown assignment status '{new_status}'",
                field="status",
                allowed=list(Status.values),
            )
        if not assignment.can_transition_to(new_status):
            logger.warning("Rejected transition of assignment %s: %s -> %s",
                           assignment.id, assignment.status, new_status)
            raise InvalidTransition(assignment.id, assignment.status, new_status)

        if new_status == Status.ACTIVE and not resource.is_available:
            raise ResourceUnavailable(
                f"Resource {resource.id} is not available",
                resource_id=resource.id,
                assignment_id=assignment.id,
                requested_status=new_status,
            )

        previous = assignment.status
        assignment.status = new_status
        assignment.save(update_fields=["status", "updated_at"])

        if new_status == Status.ACTIVE:
            AvailabilityCoordinator.on_assignment_activated(resource)
        elif previous == Status.ACTIVE:
            AvailabilityCoordinator.on_assignment_deactivated(resource)

        logger.info("Assignment %s moved %s -> %s by %s", assignment.id, previous, new_status, actor.id)
        return cls.get(assignment.id)

    @classmethod
    @transaction.atomic
    def delete(cls, actor: Actor, assignment_id: int) -> None:
        ensure_operator(actor, "delete assignments")
        assignment = _get_or_404(Assignment.objects.all(), assignment_id, "Assignment", lock=True)

        attendance = assignment.attendance_records.count()
        expenses = assignment.expenses.count()
        if attendance or expenses:
            raise HasDependentsError(
                f"Assignment {assignment.id} has {attendance} attendance and {expenses} expense record(s)",
                assignment_id=assignment.id,
                attendance_records=attendance,
                expenses=expenses,
            )

        was_active = assignment.status == Status.ACTIVE
        resource = assignment.resource
        assignment.delete()
        if was_active:
            AvailabilityCoordinator.on_assignment_deactivated(resource)
        logger.info("Assignment %s deleted by %s", assignment_id, actor.id)


class AttendanceService:
    """Daily check-in/check-out ledger of an assignment."""

    EDITABLE_FIELDS = {
        "date", "check_in_time", "check_in_location", "check_in_lat", "check_in_lng",
        "check_out_time", "check_out_location", "check_out_lat", "check_out_lng",
        "interviews_conducted", "villages_visited", "travel_distance_km", "notes",
    }

    @staticmethod
    def _queryset() -> QuerySet:
        return AttendanceRecord.objects.select_related("assignment__project", "assignment__resource")

    @staticmethod
    def _lock_assignment(assignment_id: int) -> Assignment:
        return _get_or_404(Assignment.objects.select_related("resource"), assignment_id, "Assignment", lock=True)

    @staticmethod
    def _open_session(assignment: Assignment) -> Optional[AttendanceRecord]:
        return AttendanceRecord.objects.filter(
            assignment=assignment, check_in_time__isnull=False, check_out_time__isnull=True
        ).first()

    @staticmethod
    def _validate(values: dict[str, Any], check_order: bool = True):
        check_in, check_out = values.get("check_in_time"), values.get("check_out_time")
        if check_out is not None and check_in is None:
            raise ValidationError("check_out_time requires check_in_time", field="check_out_time")
        if check_order and check_in is not None and check_out is not None and check_out < check_in:
            raise ValidationError(
                "check_out_time must not be before check_in_time",
                check_in_time=check_in.isoformat(),
                check_out_time=check_out.isoformat(),
            )
        if (values.get("interviews_conducted") or 0) < 0:
            raise ValidationError("interviews_conducted must not be negative", field="interviews_conducted")
        distance = values.get("travel_distance_km")
        if distance is not None and distance < 0:
            raise ValidationError("travel_distance_km must not be negative", field="travel_distance_km")

    @classmethod
    def _save_or_conflict(cls, record: AttendanceRecord) -> AttendanceRecord:
        """Saves in a savepoint and turns constraint violations into ledger errors."""
        try:
            with transaction.atomic():
                record.save()
        except IntegrityError as e:
            taken = AttendanceRecord.objects.filter(assignment_id=record.assignment_id, date=record.date)
            if record.pk:
                taken = taken.exclude(pk=record.pk)
            if taken.exists():
                raise DuplicateDate(
                    f"Assignment {record.assignment_id} already has attendance on {record.date}",
                    assignment_id=record.assignment_id,
                    date=record.date.isoformat(),
                ) from e
            raise AlreadyCheckedIn(
                f"Assignment {record.assignment_id} already has an open session",
                assignment_id=record.assignment_id,
            ) from e
        return record

    @classmethod
    @transaction.atomic
    def check_in(cls, actor: Actor, assignment_id: int, location: str,
                 lat: Optional[Decimal] = None, lng: Optional[Decimal] = None,
                 on_date: Optional[date] = None) -> AttendanceRecord:
        assignment = cls._lock_assignment(assignment_id)
        ensure_can_act_on_assignment(actor, assignment, "check in")
        if assignment.status != Status.ACTIVE:
            raise NotFound(
                f"No active assignment {assignment.id}",
                assignment_id=assignment.id,
                current_status=assignment.status,
            )
        on_date = on_date or timezone.localdate()

        open_record = cls._open_session(assignment)
        if open_record:
            logger.warning("Check-in refused for assignment %s: session %s still open",
                           assignment.id, open_record.id)
            raise AlreadyCheckedIn(
                f"Assignment {assignment.id} is already checked in since {open_record.date}",
                assignment_id=assignment.id,
                open_record_id=open_record.id,
                open_date=open_record.date.isoformat(),
            )
        if AttendanceRecord.objects.filter(assignment=assignment, date=on_date).exists():
            raise DuplicateDate(
                f"Assignment {assignment.id} already has attendance on {on_date}",
                assignment_id=assignment.id,
                date=on_date.isoformat(),
            )

        record = cls._save_or_conflict(AttendanceRecord(
            assignment=assignment,
            date=on_date,
            check_in_time=_call_time(),
            check_in_location=location,
            check_in_lat=lat,
            check_in_lng=lng,
        ))
        logger.info("Assignment %s checked in on %s at %s", assignment.id, on_date, location)
        return cls.get(record.id)

    @classmethod
    @transaction.atomic
    def check_out(cls, actor: Actor, assignment_id: int, location: str = "",
                  lat: Optional[Decimal] = None, lng: Optional[Decimal] = None,
                  interviews_conducted: Optional[int] = None,
                  villages_visited: Optional[list[str]] = None,
                  notes: Optional[str] = None) -> AttendanceRecord:
        assignment = cls._lock_assignment(assignment_id)
        ensure_can_act_on_assignment(actor, assignment, "check out")

        record = cls._open_session(assignment)
        if record is None:
            raise NoOpenSession(
                f"Assignment {assignment.id} has no open session",
                assignment_id=assignment.id,
            )
        interviews_conducted = interviews_conducted or 0
        if interviews_conducted < 0:
            raise ValidationError("interviews_conducted must not be negative", field="interviews_conducted")

        record.check_out_time = _call_time()
        record.check_out_location = location
        record.check_out_lat = lat
        record.check_out_lng = lng
        record.interviews_conducted = interviews_conducted
        if villages_visited is not None:
            record.villages_visited = villages_visited
        if notes is not None:
            record.notes = notes
        record.save()
        logger.info("Assignment %s checked out of session %s with %d interview(s)",
                    assignment.id, record.id, interviews_conducted)
        return cls.get(record.id)

    @classmethod
    @transaction.atomic
    def manual_entry(cls, actor: Actor, data: dict[str, Any]) -> AttendanceRecord:
        """Retroactive record; skips the check-in flow but not the one-per-day rule."""
        assignment = cls._lock_assignment(data["assignment_id"])
        ensure_can_act_on_assignment(actor, assignment, "record attendance")
        cls._validate(data)

        if AttendanceRecord.objects.filter(assignment=assignment, date=data["date"]).exists():
            raise DuplicateDate(
                f"Assignment {assignment.id} already has attendance on {data['date']}",
                assignment_id=assignment.id,
                date=data["date"].isoformat(),
            )

        fields = {k: v for k, v in data.items() if k in cls.EDITABLE_FIELDS}
        record = cls._save_or_conflict(AttendanceRecord(assignment=assignment, **fields))
        logger.info("Manual attendance %s recorded for assignment %s on %s by %s",
                    record.id, assignment.id, record.date, actor.id)
        return cls.get(record.id)

    @classmethod
    @transaction.atomic
    def update(cls, actor: Actor, record_id: int, changes: dict[str, Any]) -> AttendanceRecord:
        record = _get_or_404(AttendanceRecord.objects.all(), record_id, "Attendance")
        assignment = cls._lock_assignment(record.assignment_id)
        ensure_can_act_on_assignment(actor, assignment, "edit attendance")
        record = AttendanceRecord.objects.get(pk=record_id)

        for field in ("check_in_location", "check_out_location", "notes"):
            if field in changes and changes[field] is None:
                changes[field] = ""
        if "villages_visited" in changes and changes["villages_visited"] is None:
            changes["villages_visited"] = []
        if "interviews_conducted" in changes and changes["interviews_conducted"] is None:
            changes["interviews_conducted"] = 0
        if changes.get("date") is None:
            changes.pop("date", None)

        values = {field: getattr(record, field) for field in cls.EDITABLE_FIELDS}
        values.update(changes)
        # a check-out recorded after midnight stays editable until its times are touched
        cls._validate(values, check_order=bool(changes.keys() & {"date", "check_in_time", "check_out_time"}))

        for field, value in changes.items():
            setattr(record, field, value)
        cls._save_or_conflict(record)
        logger.info("Attendance %s edited by %s (%s)", record.id, actor.id, ", ".join(sorted(changes)))
        return cls.get(record.id)

    @classmethod
    def get(cls, record_id: int) -> AttendanceRecord:
        return _get_or_404(cls._queryset(), record_id, "Attendance")

    @classmethod
    def query(cls, assignment_id: Optional[int] = None, resource_id: Optional[int] = None,
              on_date: Optional[date] = None, date_from: Optional[date] = None,
              date_to: Optional[date] = None) -> QuerySet:
        """Records matching the filters, most recent day first."""
        records = cls._queryset()
        if assignment_id:
            records = records.filter(assignment_id=assignment_id)
        if resource_id:
            records = records.filter(assignment__resource_id=resource_id)
        if on_date:
            records = records.filter(date=on_date)
        if date_from:
            records = records.filter(date__gte=date_from)
        if date_to:
            records = records.filter(date__lte=date_to)
        return records.order_by("-date", "-id")

    @classmethod
    def todays_status(cls, assignment_id: int, on_date: Optional[date] = None) -> TodayStatusSchema:
        assignment = _get_or_404(Assignment.objects.all(), assignment_id, "Assignment")
        on_date = on_date or timezone.localdate()

        open_any = cls._open_session(assignment)
        todays = cls._queryset().filter(assignment=assignment, date=on_date).first()
        open_today = todays if todays is not None and todays.is_open else None

        return TodayStatusSchema(
            assignment_id=assignment.id,
            date=on_date,
            open_record=AttendanceSchema.from_orm(open_today) if open_today else None,
            can_check_in=assignment.status == Status.ACTIVE and open_any is None and todays is None,
            can_check_out=open_any is not None,
        )


class ExpenseService:
    """Expense claims and their approval workflow."""

    EDITABLE_FIELDS = {"expense_type", "date", "amount", "description", "receipt"}

    @staticmethod
    def _validate(values: dict[str, Any]):
        amount = values.get("amount")
        if amount is None or amount <= 0:
            raise ValidationError(
                "amount must be greater than 0",
                field="amount",
                value=None if amount is None else str(amount),
            )
        if values.get("expense_type") not in Expense.ExpenseType.values:
            raise ValidationError(
                f"Unknown expense type '{values.get('expense_type')}'",
                field="expense_type",
                allowed=list(Expense.ExpenseType.values),
            )

    @staticmethod
    def _ensure_unlocked(expense: Expense, action: str):
        if expense.is_approved:
            raise ImmutableStateError(
                f"Expense {expense.id} is approved and cannot be {action}",
                expense_id=expense.id,
                is_approved=True,
                action=action,
            )

    @staticmethod
    def _lock(expense_id: int) -> Expense:
        return _get_or_404(
            Expense.objects.select_related("assignment__resource"), expense_id, "Expense", lock=True
        )

    @staticmethod
    def get(expense_id: int) -> Expense:
        return _get_or_404(Expense.objects.all(), expense_id, "Expense")

    @classmethod
    @transaction.atomic
    def create(cls, actor: Actor, data: dict[str, Any]) -> Expense:
        assignment = _get_or_404(Assignment.objects.select_related("resource"), data["assignment_id"], "Assignment")
        ensure_can_act_on_assignment(actor, assignment, "submit expenses")
        cls._validate(data)

        expense = Expense.objects.create(
            assignment=assignment,
            expense_type=data["expense_type"],
            date=data["date"],
            amount=data["amount"],
            description=data.get("description") or "",
            receipt=data.get("receipt") or "",
        )
        logger.info("Expense %s (%s %s) submitted on assignment %s by %s",
                    expense.id, expense.expense_type, expense.amount, assignment.id, actor.id)
        return cls.get(expense.id)

    @classmethod
    @transaction.atomic
    def update(cls, actor: Actor, expense_id: int, changes: dict[str, Any]) -> Expense:
        expense = cls._lock(expense_id)
        ensure_can_act_on_assignment(actor, expense.assignment, "edit expenses")
        cls._ensure_unlocked(expense, "edited")

        for field in ("description", "receipt"):
            if field in changes and changes[field] is None:
                changes[field] = ""
        for field in ("expense_type", "date", "amount"):
            if field in changes and changes[field] is None:
                changes.pop(field)

        values = {field: getattr(expense, field) for field in cls.EDITABLE_FIELDS}
        values.update(changes)
        cls._validate(values)

        for field, value in changes.items():
            setattr(expense, field, value)
        expense.save()
        logger.info("Expense %s edited by %s", expense.id, actor.id)
        return cls.get(expense.id)

    @classmethod
    @transaction.atomic
    def delete(cls, actor: Actor, expense_id: int) -> None:
        expense = cls._lock(expense_id)
        ensure_can_act_on_assignment(actor, expense.assignment, "delete expenses")
        cls._ensure_unlocked(expense, "deleted")
        expense.delete()
        logger.info("Expense %s deleted by %s", expense_id, actor.id)

    @classmethod
    @transaction.atomic
    def approve(cls, actor: Actor, expense_id: int) -> Expense:
        """Stamp the approval once; approving again returns the first stamp."""
        actor = ensure_operator(actor, "approve expenses")
        expense = cls._lock(expense_id)
        if expense.is_approved:
            return expense

        expense.is_approved = True
        expense.approved_by = actor.id
        expense.approved_at = _now()
        expense.save(update_fields=["is_approved", "approved_by", "approved_at", "updated_at"])
        logger.info("Expense %s approved by %s", expense.id, actor.id)
        return expense

    @staticmethod
    def list_expenses(assignment_id: Optional[int] = None, expense_type: Optional[str] = None,
                      is_approved: Optional[bool] = None, date_from: Optional[date] = None,
                      date_to: Optional[date] = None) -> QuerySet:
        expenses = Expense.objects.all()
        if assignment_id:
            expenses = expenses.filter(assignment_id=assignment_id)
        if expense_type:
            expenses = expenses.filter(expense_type=expense_type)
        if is_approved is not None:
            expenses = expenses.filter(is_approved=is_approved)
        if date_from:
            expenses = expenses.filter(date__gte=date_from)
        if date_to:
            expenses = expenses.filter(date__lte=date_to)
        return expenses.order_by("-date", "-id")

    @classmethod
    def aggregate(cls, **filters) -> ExpenseTotalsSchema:
        """Totals over the filtered expenses, computed from the rows on every call."""
        money = DecimalField(max_digits=14, decimal_places=2)
        zero = Value(Decimal("0.00"), output_field=money)
        totals = cls.list_expenses(**filters).aggregate(
            count=Count("id"),
            total_amount=Coalesce(Sum("amount"), zero, output_field=money),
            approved_amount=Coalesce(Sum("amount", filter=Q(is_approved=True)), zero, output_field=money),
            pending_amount=Coalesce(Sum("amount", filter=Q(is_approved=False)), zero, output_field=money),
        )
        return ExpenseTotalsSchema(**totals)


class ProgressService:
    """Read-only completion metrics; nothing is cached."""

    @staticmethod
    def completion_for(assignment_id: int, today: Optional[date] = None,
                       include_recorded: bool = False) -> ProgressSchema:
        assignment = _get_or_404(Assignment.objects.select_related("resource"), assignment_id, "Assignment")
        tally = assignment.attendance_records.aggregate(
            completed=Coalesce(Sum("interviews_conducted"), Value(0)),
            days_worked=Count("id", filter=Q(check_in_time__isnull=False)),
        )
        completed = tally["completed"]

        today = today or timezone.localdate()
        last_day = min(today, assignment.end_date)
        elapsed_days = max((last_day - assignment.start_date).days + 1, 0)

        recorded = None
        if include_recorded:
            client = InterviewCountClient.from_settings()
            if client is not None:
                recorded = client.count_for(assignment)

        return ProgressSchema(
            assignment_id=assignment.id,
            status=assignment.status,
            completed_interviews=completed,
            target_interviews=assignment.target_interviews,
            completion_percentage=assignment.completion_percentage(completed),
            remaining_interviews=max(assignment.target_interviews - completed, 0),
            days_worked=tally["days_worked"],
            elapsed_days=elapsed_days,
            total_days=assignment.total_days,
            recorded_interviews=recorded,
        )
