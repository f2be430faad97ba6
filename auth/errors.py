"""
auth/errors.py -- Exception taxonomy for the auth core.

The core raises these; api/main.py owns a single exception handler that maps
them to the HTTP error envelope. Anything that is not a BastionError is an
internal failure: logged server-side with full context, generic to clients.

Force-logout errors (Revoked, Blocked) carry a reason string and tell the
client to discard its token instead of retrying.

Layer rule: stdlib only.
"""

from __future__ import annotations

from typing import Any, Optional


class BastionError(Exception):
    """Base class for every error the auth core raises deliberately."""

    status_code: int = 500
    default_code: str = "internal_error"
    force_logout: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Return the "error" member of the response envelope."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class Unauthenticated(BastionError):
    """Missing, malformed, expired or otherwise invalid bearer token."""

    status_code = 401
    default_code = "unauthorized"

    def __init__(self, message: str = "Authentication required.", code: Optional[str] = None) -> None:
        super().__init__(message, code)


class InvalidCredentials(BastionError):
    """Login failed. Identical for unknown usernames and wrong passwords."""

    status_code = 401
    default_code = "bad_credentials"

    def __init__(self) -> None:
        super().__init__("Invalid username or password.")


class Revoked(BastionError):
    """Token is well-formed and signed but its epoch is stale."""

    status_code = 401
    default_code = "token_revoked"
    force_logout = True

    def __init__(
        self,
        reason: str = "Your account settings have been changed by an administrator.",
        message: str = "Token has been invalidated.",
    ) -> None:
        super().__init__(message)
        self.reason = reason


class Blocked(Revoked):
    """The principal is inactive. Raised at login and by the session guard."""

    status_code = 403
    default_code = "account_blocked"

    DEFAULT_REASON = "Your account is blocked."

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(reason=reason or self.DEFAULT_REASON, message="Your account has been blocked.")


class Forbidden(BastionError):
    """Authenticated, but the role or the field set is not allowed."""

    status_code = 403
    default_code = "forbidden"

    def __init__(self, message: str = "Access denied.", code: Optional[str] = None) -> None:
        super().__init__(message, code)


class NotFound(BastionError):
    status_code = 404
    default_code = "not_found"

    def __init__(self, message: str = "User not found.") -> None:
        super().__init__(message)


class Conflict(BastionError):
    status_code = 409
    default_code = "conflict"

    def __init__(self, message: str = "A user with that username already exists.") -> None:
        super().__init__(message)


class ValidationFailed(BastionError):
    """Input rejected. errors itemizes every unmet rule (e.g. password strength)."""

    status_code = 400
    default_code = "validation_failed"

    def __init__(
        self,
        message: str,
        errors: Optional[list[str]] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message, code)
        self.errors = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body
