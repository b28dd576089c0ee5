from datetime import date
from typing import Optional

from django.conf import settings
from django.http import HttpRequest
from ninja import NinjaAPI, Swagger
from ninja.errors import AuthenticationError, ValidationError as SchemaValidationError
from ninja.pagination import PageNumberPagination, paginate

from .auth import ActorHeaderAuth
from .exceptions import FieldOpsError
from .schemas import (
    AssignmentCreateSchema, AssignmentSchema, AssignmentUpdateSchema, AttendanceCreateSchema,
    AttendanceSchema, AttendanceUpdateSchema, AvailabilitySchema, AvailabilityUpdateSchema,
    CheckInSchema, CheckOutSchema, ExpenseCreateSchema, ExpenseSchema, ExpenseTotalsSchema,
    ExpenseUpdateSchema, ProgressSchema, ResourceSchema, TodayStatusSchema, TransitionSchema,
)
from .services import (
    AssignmentService, AttendanceService, AvailabilityCoordinator, ExpenseService, ProgressService,
)

PAGE_SIZE = settings.FIELD_OPS["PAGE_SIZE"]

api = NinjaAPI(
    title="Field Operations Ledger",
    version="1.0.0",
    docs=Swagger(settings={"persistAuthorization": True}),
    auth=ActorHeaderAuth(),
)


@api.exception_handler(FieldOpsError)
def field_ops_error(request: HttpRequest, exc: FieldOpsError):
    return api.create_response(request, exc.to_dict(), status=exc.status_code)


@api.exception_handler(SchemaValidationError)
def schema_validation_error(request: HttpRequest, exc: SchemaValidationError):
    body = {
        "error": "Request did not match the expected schema",
        "code": "validation_error",
        "context": {"errors": exc.errors},
        "retryable": False,
    }
    return api.create_response(request, body, status=422)


@api.exception_handler(AuthenticationError)
def authentication_error(request: HttpRequest, exc: AuthenticationError):
    body = {
        "error": "X-Actor-Id and a valid X-Actor-Role header are required",
        "code": "unauthenticated",
        "context": {},
        "retryable": False,
    }
    return api.create_response(request, body, status=401)


# Assignments

@api.post("/assignments", response={201: AssignmentSchema})
def create_assignment(request: HttpRequest, payload: AssignmentCreateSchema):
    """
    Create a pending assignment of a field resource to a project.
    Rejected when the resource already has a pending or active assignment
    overlapping the requested dates.
    """
    return 201, AssignmentService.create(request.auth, payload.model_dump())


@api.get("/assignments", response=list[AssignmentSchema])
@paginate(PageNumberPagination, page_size=PAGE_SIZE)
def list_assignments(request: HttpRequest, status: Optional[str] = None,
                     project_id: Optional[int] = None, resource_id: Optional[int] = None):
    return AssignmentService.list_assignments(status=status, project_id=project_id, resource_id=resource_id)


@api.get("/assignments/mine", response=list[AssignmentSchema])
def my_assignments(request: HttpRequest, status: Optional[str] = None):
    """Assignments of the field resource making the call."""
    return list(AssignmentService.list_for_actor(request.auth, status=status))


@api.get("/assignments/{int:assignment_id}", response=AssignmentSchema)
def get_assignment(request: HttpRequest, assignment_id: int):
    return AssignmentService.get(assignment_id)


@api.patch("/assignments/{int:assignment_id}", response=AssignmentSchema)
def update_assignment(request: HttpRequest, assignment_id: int, payload: AssignmentUpdateSchema):
    """
    Partial update. Schedule, target and rate fields only change while the
    assignment is pending; instructions until it ends; notes at any time.
    """
    return AssignmentService.update(request.auth, assignment_id, payload.model_dump(exclude_unset=True))


@api.delete("/assignments/{int:assignment_id}", response={204: None})
def delete_assignment(request: HttpRequest, assignment_id: int):
    AssignmentService.delete(request.auth, assignment_id)
    return 204, None


@api.post("/assignments/{int:assignment_id}/transition", response=AssignmentSchema)
def transition_assignment(request: HttpRequest, assignment_id: int, payload: TransitionSchema):
    """
    Change assignment status.

    Allowed moves:
    - pending -> active (the resource must be available)
    - pending -> cancelled
    - active -> completed
    - active -> cancelled
    """
    return AssignmentService.transition(request.auth, assignment_id, payload.status)


@api.get("/assignments/{int:assignment_id}/progress", response=ProgressSchema)
def assignment_progress(request: HttpRequest, assignment_id: int, include_recorded: bool = False):
    """
    Completion metrics from the attendance tallies. With include_recorded the
    interview service's own count is added as recorded_interviews.
    """
    return ProgressService.completion_for(assignment_id, include_recorded=include_recorded)


@api.get("/assignments/{int:assignment_id}/attendance/today", response=TodayStatusSchema)
def todays_attendance(request: HttpRequest, assignment_id: int, date: Optional[date] = None):
    return AttendanceService.todays_status(assignment_id, on_date=date)


# Attendance

@api.post("/attendance/check-in", response={201: AttendanceSchema})
def check_in(request: HttpRequest, payload: CheckInSchema):
    record = AttendanceService.check_in(
        request.auth,
        payload.assignment_id,
        payload.location,
        lat=payload.lat,
        lng=payload.lng,
        on_date=payload.date,
    )
    return 201, record


@api.post("/attendance/check-out", response=AttendanceSchema)
def check_out(request: HttpRequest, payload: CheckOutSchema):
    return AttendanceService.check_out(
        request.auth,
        payload.assignment_id,
        payload.location,
        lat=payload.lat,
        lng=payload.lng,
        interviews_conducted=payload.interviews_conducted,
        villages_visited=payload.villages_visited,
        notes=payload.notes,
    )


@api.post("/attendance", response={201: AttendanceSchema})
def create_attendance(request: HttpRequest, payload: AttendanceCreateSchema):
    return 201, AttendanceService.manual_entry(request.auth, payload.model_dump())


@api.get("/attendance", response=list[AttendanceSchema])
@paginate(PageNumberPagination, page_size=PAGE_SIZE)
def list_attendance(request: HttpRequest, assignment_id: Optional[int] = None,
                    resource_id: Optional[int] = None, date: Optional[date] = None,
                    date_from: Optional[date] = None, date_to: Optional[date] = None):
    return AttendanceService.query(
        assignment_id=assignment_id,
        resource_id=resource_id,
        on_date=date,
        date_from=date_from,
        date_to=date_to,
    )


@api.get("/attendance/{int:record_id}", response=AttendanceSchema)
def get_attendance(request: HttpRequest, record_id: int):
    return AttendanceService.get(record_id)


@api.patch("/attendance/{int:record_id}", response=AttendanceSchema)
def update_attendance(request: HttpRequest, record_id: int, payload: AttendanceUpdateSchema):
    return AttendanceService.update(request.auth, record_id, payload.model_dump(exclude_unset=True))


# Expenses

@api.post("/expenses", response={201: ExpenseSchema})
def create_expense(request: HttpRequest, payload: ExpenseCreateSchema):
    return 201, ExpenseService.create(request.auth, payload.model_dump())


@api.get("/expenses", response=list[ExpenseSchema])
@paginate(PageNumberPagination, page_size=PAGE_SIZE)
def list_expenses(request: HttpRequest, assignment_id: Optional[int] = None,
                  expense_type: Optional[str] = None, is_approved: Optional[bool] = None,
                  date_from: Optional[date] = None, date_to: Optional[date] = None):
    return ExpenseService.list_expenses(
        assignment_id=assignment_id,
        expense_type=expense_type,
        is_approved=is_approved,
        date_from=date_from,
        date_to=date_to,
    )


@api.get("/expenses/totals", response=ExpenseTotalsSchema)
def expense_totals(request: HttpRequest, assignment_id: Optional[int] = None,
                   expense_type: Optional[str] = None, is_approved: Optional[bool] = None,
                   date_from: Optional[date] = None, date_to: Optional[date] = None):
    """Total, approved and pending amounts of the matching expenses."""
    return ExpenseService.aggregate(
        assignment_id=assignment_id,
        expense_type=expense_type,
        is_approved=is_approved,
        date_from=date_from,
        date_to=date_to,
    )


@api.get("/expenses/{int:expense_id}", response=ExpenseSchema)
def get_expense(request: HttpRequest, expense_id: int):
    return ExpenseService.get(expense_id)


@api.patch("/expenses/{int:expense_id}", response=ExpenseSchema)
def update_expense(request: HttpRequest, expense_id: int, payload: ExpenseUpdateSchema):
    return ExpenseService.update(request.auth, expense_id, payload.model_dump(exclude_unset=True))


@api.delete("/expenses/{int:expense_id}", response={204: None})
def delete_expense(request: HttpRequest, expense_id: int):
    ExpenseService.delete(request.auth, expense_id)
    return 204, None


@api.post("/expenses/{int:expense_id}/approve", response=ExpenseSchema)
def approve_expense(request: HttpRequest, expense_id: int):
    """Approve and lock an expense. Approving twice returns the first approval."""
    return ExpenseService.approve(request.auth, expense_id)


# Resource availability

@api.get("/resources", response=list[ResourceSchema])
def list_resources(request: HttpRequest, available: Optional[bool] = None):
    return list(AvailabilityCoordinator.list_resources(available=available))


@api.get("/resources/{int:resource_id}/availability", response=AvailabilitySchema)
def get_availability(request: HttpRequest, resource_id: int):
    resource = AvailabilityCoordinator.get_resource(resource_id)
    return AvailabilitySchema(
        resource_id=resource.id,
        is_available=resource.is_available,
        availability_changed_at=resource.availability_changed_at,
    )


@api.put("/resources/{int:resource_id}/availability", response=AvailabilitySchema)
def set_availability(request: HttpRequest, resource_id: int, payload: AvailabilityUpdateSchema):
    resource = AvailabilityCoordinator.set_available(request.auth, resource_id, payload.is_available)
    return AvailabilitySchema(
        resource_id=resource.id,
        is_available=resource.is_available,
        availability_changed_at=resource.availability_changed_at,
    )
