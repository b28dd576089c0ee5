from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from django.db import models
from django.db.models import F, Q


class Project(models.Model):
    id    = models.BigAutoField(primary_key=True)
    code  = models.CharField(max_length=32, unique=True)
    title = models.CharField(max_length=200)

    def __str__(self):
        return f"{self.code} {self.title}"


class FieldResource(models.Model):
    """A field worker; ``external_id`` is the identity service's user id."""
    id                      = models.BigAutoField(primary_key=True)
    external_id             = models.CharField(max_length=64, unique=True)
    name                    = models.CharField(max_length=100)
    phone                   = models.CharField(max_length=20, blank=True)
    is_available            = models.BooleanField(default=True)
    availability_changed_at = models.DateTimeField(null=True, blank=True)

    def __str__(self):
        return self.name


class Assignment(models.Model):

    class Status(models.TextChoices):
        PENDING   = "pending", "Pending"
        ACTIVE    = "active", "Active"
        COMPLETED = "completed", "Completed"
        CANCELLED = "cancelled", "Cancelled"

    id                 = models.BigAutoField(primary_key=True)
    project            = models.ForeignKey(
        Project,
        on_delete=models.PROTECT,
        related_name="assignments"
    )
    resource           = models.ForeignKey(
        FieldResource,
        on_delete=models.PROTECT,
        related_name="assignments"
    )
    status             = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
    )
    start_date         = models.DateField()
    end_date           = models.DateField()
    assigned_districts = models.JSONField(default=list, blank=True)
    assigned_villages  = models.JSONField(default=list, blank=True)
    target_interviews  = models.PositiveIntegerField()
    total_days         = models.PositiveIntegerField()
    daily_rate         = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    instructions       = models.TextField(blank=True)
    notes              = models.TextField(blank=True)
    assigned_by        = models.CharField(max_length=64, blank=True)
    created_at         = models.DateTimeField(auto_now_add=True)
    updated_at         = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-start_date", "-id"]
        indexes = [
            models.Index(fields=["status"]),
            models.Index(fields=["resource", "status"]),
            models.Index(fields=["project", "status"]),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(end_date__gte=F("start_date")), name="assignment_end_after_start"),
            models.CheckConstraint(condition=Q(target_interviews__gt=0), name="assignment_target_positive"),
            models.CheckConstraint(condition=Q(total_days__gt=0), name="assignment_days_positive"),
        ]

    # status -> statuses reachable from it
    TRANSITIONS = {
        Status.PENDING:   {Status.ACTIVE, Status.CANCELLED},
        Status.ACTIVE:    {Status.COMPLETED, Status.CANCELLED},
        Status.COMPLETED: set(),
        Status.CANCELLED: set(),
    }

    def can_transition_to(self, status: str) -> bool:
        return status in self.TRANSITIONS[self.Status(self.status)]

    @property
    def is_terminal(self) -> bool:
        return not self.TRANSITIONS[self.Status(self.status)]

    def completion_percentage(self, completed_interviews: int) -> int:
        """Completed vs. target, rounded half up; not capped at 100."""
        ratio = Decimal(100 * completed_interviews) / Decimal(self.target_interviews)
        return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def total_amount(self) -> Decimal | None:
        if self.daily_rate is None:
            return None
        return self.daily_rate * self.total_days

    def __str__(self):
        return f"Assignment {self.id} ({self.status})"


class AttendanceRecord(models.Model):
    id                   = models.BigAutoField(primary_key=True)
    assignment           = models.ForeignKey(
        Assignment,
        on_delete=models.PROTECT,
        related_name="attendance_records"
    )
    date                 = models.DateField()
    check_in_time        = models.TimeField(null=True, blank=True)
    check_in_location    = models.CharField(max_length=255, blank=True)
    check_in_lat         = models.DecimalField(max_digits=20, decimal_places=12, null=True, blank=True)
    check_in_lng         = models.DecimalField(max_digits=20, decimal_places=12, null=True, blank=True)
    check_out_time       = models.TimeField(null=True, blank=True)
    check_out_location   = models.CharField(max_length=255, blank=True)
    check_out_lat        = models.DecimalField(max_digits=20, decimal_places=12, null=True, blank=True)
    check_out_lng        = models.DecimalField(max_digits=20, decimal_places=12, null=True, blank=True)
    interviews_conducted = models.PositiveIntegerField(default=0)
    villages_visited     = models.JSONField(default=list, blank=True)
    travel_distance_km   = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    notes                = models.TextField(blank=True)
    created_at           = models.DateTimeField(auto_now_add=True)
    updated_at           = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-date", "-id"]
        indexes = [
            models.Index(fields=["date"]),
        ]
        constraints = [
            models.UniqueConstraint(fields=["assignment", "date"], name="attendance_one_record_per_day"),
            # an open session is checked in but not yet checked out
            models.UniqueConstraint(
                fields=["assignment"],
                condition=Q(check_in_time__isnull=False, check_out_time__isnull=True),
                name="attendance_one_open_session",
            ),
        ]

    @property
    def is_open(self) -> bool:
        return self.check_in_time is not None and self.check_out_time is None

    @property
    def hours_worked(self) -> float | None:
        if self.check_in_time is None or self.check_out_time is None:
            return None
        started = datetime.combine(self.date, self.check_in_time)
        finished = datetime.combine(self.date, self.check_out_time)
        if finished < started:
            return None
        return round((finished - started).total_seconds() / 3600, 2)


class Expense(models.Model):

    class ExpenseType(models.TextChoices):
        TRAVEL        = "travel", "Travel"
        FOOD          = "food", "Food"
        COMMUNICATION = "communication", "Communication"
        ACCOMMODATION = "accommodation", "Accommodation"
        MATERIALS     = "materials", "Materials"
        OTHER         = "other", "Other"

    id           = models.BigAutoField(primary_key=True)
    assignment   = models.ForeignKey(
        Assignment,
        on_delete=models.PROTECT,
        related_name="expenses"
    )
    expense_type = models.CharField(max_length=20, choices=ExpenseType.choices)
    date         = models.DateField()
    amount       = models.DecimalField(max_digits=10, decimal_places=2)
    description  = models.TextField(blank=True)
    receipt      = models.CharField(max_length=255, blank=True)
    is_approved  = models.BooleanField(default=False)
    approved_by  = models.CharField(max_length=64, null=True, blank=True)
    approved_at  = models.DateTimeField(null=True, blank=True)
    created_at   = models.DateTimeField(auto_now_add=True)
    updated_at   = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-date", "-id"]
        indexes = [
            models.Index(fields=["assignment", "is_approved"]),
            models.Index(fields=["date"]),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="expense_amount_positive"),
        ]
