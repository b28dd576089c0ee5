import datetime as dt
from decimal import Decimal
from typing import Annotated, Optional

from django.db.models import Sum
from ninja import Schema
from pydantic import Field

# request-side decimals sized like their columns
Money      = Annotated[Decimal, Field(max_digits=10, decimal_places=2)]
Coordinate = Annotated[Decimal, Field(max_digits=20, decimal_places=12)]
Distance   = Annotated[Decimal, Field(max_digits=8, decimal_places=2)]


# Assignments

class AssignmentCreateSchema(Schema):
    project_id: int
    resource_id: int
    start_date: dt.date
    end_date: dt.date
    assigned_districts: list[str] = []
    assigned_villages: list[str] = []
    target_interviews: int
    total_days: int
    daily_rate: Optional[Money] = None
    instructions: str = ""
    notes: str = ""


class AssignmentUpdateSchema(Schema):
    """Partial update; only fields sent by the caller are applied."""
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    assigned_districts: Optional[list[str]] = None
    assigned_villages: Optional[list[str]] = None
    target_interviews: Optional[int] = None
    total_days: Optional[int] = None
    daily_rate: Optional[Money] = None
    instructions: Optional[str] = None
    notes: Optional[str] = None


class TransitionSchema(Schema):
    status: str


class AssignmentSchema(Schema):
    id: int
    project_id: int
    project_code: str
    project_title: str
    resource_id: int
    resource_name: str
    status: str
    status_display: str
    start_date: dt.date
    end_date: dt.date
    assigned_districts: list[str]
    assigned_villages: list[str]
    target_interviews: int
    total_days: int
    daily_rate: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    instructions: str
    notes: str
    assigned_by: str
    completed_interviews: int
    completion_percentage: int
    created_at: dt.datetime
    updated_at: dt.datetime

    @staticmethod
    def resolve_project_code(obj):
        return obj.project.code

    @staticmethod
    def resolve_project_title(obj):
        return obj.project.title

    @staticmethod
    def resolve_resource_name(obj):
        return obj.resource.name

    @staticmethod
    def resolve_status_display(obj):
        return obj.get_status_display()

    @staticmethod
    def resolve_completed_interviews(obj):
        # list queries annotate the tally; single objects fall back to a query
        completed = getattr(obj, "completed_interviews", None)
        if completed is None:
            completed = obj.attendance_records.aggregate(total=Sum("interviews_conducted"))["total"] or 0
        return completed

    @staticmethod
    def resolve_completion_percentage(obj):
        return obj.completion_percentage(AssignmentSchema.resolve_completed_interviews(obj))


# Attendance

class CheckInSchema(Schema):
    assignment_id: int
    location: str
    lat: Optional[Coordinate] = None
    lng: Optional[Coordinate] = None
    date: Optional[dt.date] = None


class CheckOutSchema(Schema):
    assignment_id: int
    location: str = ""
    lat: Optional[Coordinate] = None
    lng: Optional[Coordinate] = None
    interviews_conducted: Optional[int] = None
    villages_visited: Optional[list[str]] = None
    notes: Optional[str] = None


class AttendanceCreateSchema(Schema):
    """Manual (retroactive) attendance entry."""
    assignment_id: int
    date: dt.date
    check_in_time: Optional[dt.time] = None
    check_in_location: str = ""
    check_in_lat: Optional[Coordinate] = None
    check_in_lng: Optional[Coordinate] = None
    check_out_time: Optional[dt.time] = None
    check_out_location: str = ""
    check_out_lat: Optional[Coordinate] = None
    check_out_lng: Optional[Coordinate] = None
    interviews_conducted: int = 0
    villages_visited: list[str] = []
    travel_distance_km: Optional[Distance] = None
    notes: str = ""


class AttendanceUpdateSchema(Schema):
    date: Optional[dt.date] = None
    check_in_time: Optional[dt.time] = None
    check_in_location: Optional[str] = None
    check_in_lat: Optional[Coordinate] = None
    check_in_lng: Optional[Coordinate] = None
    check_out_time: Optional[dt.time] = None
    check_out_location: Optional[str] = None
    check_out_lat: Optional[Coordinate] = None
    check_out_lng: Optional[Coordinate] = None
    interviews_conducted: Optional[int] = None
    villages_visited: Optional[list[str]] = None
    travel_distance_km: Optional[Distance] = None
    notes: Optional[str] = None


class AttendanceSchema(Schema):
    id: int
    assignment_id: int
    resource_name: str
    project_code: str
    date: dt.date
    check_in_time: Optional[dt.time] = None
    check_in_location: str
    check_in_lat: Optional[Decimal] = None
    check_in_lng: Optional[Decimal] = None
    check_out_time: Optional[dt.time] = None
    check_out_location: str
    check_out_lat: Optional[Decimal] = None
    check_out_lng: Optional[Decimal] = None
    interviews_conducted: int
    villages_visited: list[str]
    travel_distance_km: Optional[Decimal] = None
    hours_worked: Optional[float] = None
    notes: str

    @staticmethod
    def resolve_resource_name(obj):
        return obj.assignment.resource.name

    @staticmethod
    def resolve_project_code(obj):
        return obj.assignment.project.code


class TodayStatusSchema(Schema):
    assignment_id: int
    date: dt.date
    open_record: Optional[AttendanceSchema] = None
    can_check_in: bool
    can_check_out: bool


# Expenses

class ExpenseCreateSchema(Schema):
    assignment_id: int
    expense_type: str
    date: dt.date
    amount: Money
    description: str = ""
    receipt: str = ""


class ExpenseUpdateSchema(Schema):
    expense_type: Optional[str] = None
    date: Optional[dt.date] = None
    amount: Optional[Money] = None
    description: Optional[str] = None
    receipt: Optional[str] = None


class ExpenseSchema(Schema):
    id: int
    assignment_id: int
    expense_type: str
    expense_type_display: str
    date: dt.date
    amount: Decimal
    description: str
    receipt: str
    is_approved: bool
    approved_by: Optional[str] = None
    approved_at: Optional[dt.datetime] = None
    created_at: dt.datetime

    @staticmethod
    def resolve_expense_type_display(obj):
        return obj.get_expense_type_display()


class ExpenseTotalsSchema(Schema):
    count: int
    total_amount: Decimal
    approved_amount: Decimal
    pending_amount: Decimal


# Progress

class ProgressSchema(Schema):
    assignment_id: int
    status: str
    completed_interviews: int
    target_interviews: int
    completion_percentage: int
    remaining_interviews: int
    days_worked: int
    elapsed_days: int
    total_days: int
    recorded_interviews: Optional[int] = None


# Availability

class ResourceSchema(Schema):
    id: int
    external_id: str
    name: str
    phone: str
    is_available: bool
    availability_changed_at: Optional[dt.datetime] = None


class AvailabilitySchema(Schema):
    resource_id: int
    is_available: bool
    availability_changed_at: Optional[dt.datetime] = None


class AvailabilityUpdateSchema(Schema):
    is_available: bool
