"""Typed failures raised by the field operations services.

Every error carries a stable ``code``, the HTTP status the API answers with
and a ``context`` dict (entity id, current state, attempted action) that the
dashboard uses to build its message.
"""


class FieldOpsError(Exception):
    code = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "context": self.context,
            "retryable": self.retryable,
        }


class ValidationError(FieldOpsError):
    code = "validation_error"
    status_code = 422


class PermissionDenied(FieldOpsError):
    code = "permission_denied"
    status_code = 403


class NotFound(FieldOpsError):
    code = "not_found"
    status_code = 404


class InvalidTransition(FieldOpsError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, assignment_id: int, current: str, requested: str):
        super().__init__(
            f"Cannot move assignment {assignment_id} from '{current}' to '{requested}'",
            assignment_id=assignment_id,
            current_status=current,
            requested_status=requested,
        )


class AlreadyCheckedIn(FieldOpsError):
    code = "already_checked_in"
    status_code = 409


class NoOpenSession(FieldOpsError):
    code = "no_open_session"
    status_code = 409


class DuplicateDate(FieldOpsError):
    code = "duplicate_date"
    status_code = 409


class ImmutableStateError(FieldOpsError):
    code = "immutable_state"
    status_code = 409


class HasDependentsError(FieldOpsError):
    code = "has_dependents"
    status_code = 409


class ResourceUnavailable(FieldOpsError):
    code = "resource_unavailable"
    status_code = 409


class DependencyError(FieldOpsError):
    code = "dependency_error"
    status_code = 502


class DependencyTimeout(DependencyError):
    code = "dependency_timeout"
    status_code = 504
    retryable = True
