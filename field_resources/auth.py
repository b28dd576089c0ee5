from dataclasses import dataclass
from typing import Optional

from django.http import HttpRequest
from ninja.security import APIKeyHeader

ADMIN = "admin"
MANAGER = "manager"
ANALYST = "analyst"
FIELD_RESOURCE = "field_resource"
CLIENT = "client"

ROLES = frozenset({ADMIN, MANAGER, ANALYST, FIELD_RESOURCE, CLIENT})
OPERATOR_ROLES = frozenset({ADMIN, MANAGER})


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as asserted by the identity gateway."""
    id: str
    role: str

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


class ActorHeaderAuth(APIKeyHeader):
    """
    Reads the actor identity forwarded by the upstream identity gateway.
    Credentials are verified there; this service only requires that every
    call names an actor with a known role.
    """
    param_name = "X-Actor-Id"
    role_header = "X-Actor-Role"

    def authenticate(self, request: HttpRequest, key: Optional[str]) -> Optional[Actor]:
        if not key or not key.strip():
            return None
        role = (request.headers.get(self.role_header) or "").strip().lower()
        if role not in ROLES:
            return None
        return Actor(id=key.strip(), role=role)
