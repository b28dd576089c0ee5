"""Authorization policy for field operations.

Stands in for the organisation's role/permission service: operators (admin,
manager) may act on any project, field resources only on their own
assignments, and other roles are read-only.
"""
from typing import Optional

from .auth import Actor, FIELD_RESOURCE
from .exceptions import PermissionDenied
from .models import Assignment


def require_actor(actor: Optional[Actor]) -> Actor:
    if actor is None or not actor.id:
        raise PermissionDenied("An authenticated actor is required")
    return actor


def ensure_operator(actor: Optional[Actor], action: str) -> Actor:
    actor = require_actor(actor)
    if not actor.is_operator:
        raise PermissionDenied(
            f"Role '{actor.role}' may not {action}",
            actor_id=actor.id,
            role=actor.role,
            action=action,
        )
    return actor


def owns_assignment(actor: Actor, assignment: Assignment) -> bool:
    return actor.role == FIELD_RESOURCE and assignment.resource.external_id == actor.id


def ensure_can_act_on_assignment(actor: Optional[Actor], assignment: Assignment, action: str) -> Actor:
    actor = require_actor(actor)
    if actor.is_operator or owns_assignment(actor, assignment):
        return actor
    raise PermissionDenied(
        f"Actor '{actor.id}' may not {action} on assignment {assignment.id}",
        actor_id=actor.id,
        role=actor.role,
        assignment_id=assignment.id,
        action=action,
    )
