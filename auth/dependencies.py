"""
auth/dependencies.py -- FastAPI Depends() helpers: the session guard.

get_current_principal() checks, in order:
  1. Authorization: Bearer <token> present        else Unauthenticated
  2. token signature / expiry / claims            else Unauthenticated
  3. principal still exists                       else Unauthenticated
  4. principal is active                          else Blocked (force logout)
  5. token_version matches the stored epoch       else Revoked (force logout)
and then schedules a presence refresh without waiting for it.

The result is an immutable AuthenticatedPrincipal carrying the role as stored
now, not the role embedded in the token. Handlers receive it through their
signature; there is no request-global "current user".

require_roles() builds role gates on top. A role mismatch is a plain 403,
never a force logout.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.errors import Blocked, Forbidden, Revoked, Unauthenticated
from auth.models import ROLE_ADMIN, ROLE_MODERATOR, AuthenticatedPrincipal
from auth.store import PrincipalStore
from auth.tokens import verify_token


def bearer_token(request: Request) -> str:
    """Return the raw token from the Authorization header or raise Unauthenticated."""
    header = request.headers.get("Authorization", "")
    if not header:
        raise Unauthenticated("Authorization header required.")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Authorization header must use the Bearer scheme.", code="invalid_scheme")
    return token.strip()


def get_current_principal(request: Request) -> AuthenticatedPrincipal:
    """Require a valid, current session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: AuthenticatedPrincipal = Depends(get_current_principal)): ...
    """
    claims = verify_token(bearer_token(request))
    if claims is None:
        raise Unauthenticated("Invalid token.", code="invalid_token")

    store: PrincipalStore = request.app.state.principal_store
    principal = store.get_by_id(claims.user_id)
    if principal is None:
        raise Unauthenticated("User not found.", code="invalid_token")
    if not principal.is_active:
        raise Blocked(principal.blocked_reason)
    if principal.token_version != claims.token_version:
        raise Revoked()

    presence = getattr(request.app.state, "presence", None)
    if presence is not None:
        presence.mark_seen(principal.id)

    return AuthenticatedPrincipal(id=principal.id, role=principal.role)


def require_roles(*roles: str, message: str = "Access denied.") -> Callable[[Request], AuthenticatedPrincipal]:
    """Build a dependency that admits only the given roles.

        @router.delete("/users/{id}")
        def route(principal: AuthenticatedPrincipal = Depends(require_roles("admin"))): ...
    """
    allowed = frozenset(roles)

    def dependency(request: Request) -> AuthenticatedPrincipal:
        principal = get_current_principal(request)
        if principal.role not in allowed:
            raise Forbidden(message)
        return principal

    return dependency


require_admin = require_roles(ROLE_ADMIN, message="Admin access required.")
require_admin_or_moderator = require_roles(
    ROLE_ADMIN, ROLE_MODERATOR, message="Admin or moderator access required."
)
