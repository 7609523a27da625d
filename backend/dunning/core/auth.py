from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from uuid import UUID

import jwt
from fastapi import Depends, Request

from dunning.core.config import settings
from dunning.core.exceptions import AuthenticationError, PermissionDeniedError, ValidationError
from dunning.models.shared import DEFAULT_ORGANIZATION_ID

ROLE_ADMIN = "ADMIN"
ROLE_FINANCE = "FINANCE"
ROLE_SUPPORT = "SUPPORT"
ROLE_SYSTEM = "SYSTEM"
ALL_ROLES = frozenset({ROLE_ADMIN, ROLE_FINANCE, ROLE_SUPPORT, ROLE_SYSTEM})


@dataclass(frozen=True)
class Operator:
    """The person or system acting on the admin API."""

    actor_id: str
    actor_type: str = "user"
    roles: frozenset[str] = field(default_factory=frozenset)


SYSTEM_OPERATOR = Operator(actor_id="system", actor_type="system", roles=ALL_ROLES)


def get_current_organization(request: Request) -> UUID:
    """Resolve the tenant from the X-Organization-Id header.

    Falls back to the default organization when no header is sent.
    """
    org_id_header = request.headers.get("X-Organization-Id")
    if not org_id_header:
        return DEFAULT_ORGANIZATION_ID
    try:
        return UUID(org_id_header)
    except ValueError:
        raise ValidationError("Invalid X-Organization-Id header") from None


def create_operator_token(actor_id: str, roles: list[str], expires_in_hours: int = 12) -> str:
    """Issue an operator bearer token (used by admin tooling and tests)."""
    payload = {
        "sub": actor_id,
        "roles": roles,
        "type": "operator",
        "exp": datetime.now(UTC) + timedelta(hours=expires_in_hours),
    }
    return jwt.encode(payload, settings.OPERATOR_JWT_SECRET, algorithm="HS256")


def get_current_operator(request: Request) -> Operator:
    """Decode the operator bearer token.

    Requests without an Authorization header run as the system operator
    for backward compatibility with internal callers.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return SYSTEM_OPERATOR

    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("Invalid authorization header format")

    token = auth_header[7:]
    if not token:
        raise AuthenticationError("Operator token is required")

    try:
        payload = jwt.decode(token, settings.OPERATOR_JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Operator token has expired") from None
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid operator token") from None

    if payload.get("type") != "operator" or not payload.get("sub"):
        raise AuthenticationError("Invalid operator token")

    roles = frozenset(str(r).upper() for r in payload.get("roles", []))
    return Operator(actor_id=str(payload["sub"]), actor_type="user", roles=roles)


def require_roles(*roles: str) -> Callable[..., Operator]:
    """Dependency factory rejecting operators that hold none of ``roles``."""
    allowed = frozenset(roles)

    def dependency(operator: Operator = Depends(get_current_operator)) -> Operator:
        if not operator.roles & allowed:
            raise PermissionDeniedError(
                f"Requires one of roles: {', '.join(sorted(allowed))}"
            )
        return operator

    return dependency
