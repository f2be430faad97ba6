"""
api/routes/v1/auth.py -- Session and password REST endpoints.

Routes:
  POST /api/v1/auth/login            -- password login; returns a bearer token
  POST /api/v1/auth/logout           -- marks the principal offline (requires auth)
  GET  /api/v1/auth/me               -- current principal (requires auth)
  POST /api/v1/auth/change-password  -- self-service change (requires auth)
  POST /api/v1/auth/forgot-password  -- email a reset link (public)
  POST /api/v1/auth/reset-password   -- set a password from a reset token (public)

Security:
  Login, change-password and both reset endpoints are rate-limited per IP.
  authenticate() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every response that carries a token.
  Bearer tokens are stateless: logout does not revoke them. Revocation goes
  through the principal's token_version (password change, block, role change).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PrincipalResponse,
    ResetPasswordRequest,
)
from auth import audit as actions
from auth.credentials import authenticate, change_password
from auth.dependencies import get_current_principal
from auth.errors import NotFound, ValidationFailed
from auth.models import AuthenticatedPrincipal
from auth.reset import request_reset, reset_password
from auth.store import PrincipalStore
from auth.tokens import issue_token
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/forgot-password:  public
# - POST /api/v1/auth/reset-password:   public -- the reset token is the credential
# - POST /api/v1/auth/logout:           requires auth (get_current_principal)
# - GET  /api/v1/auth/me:               requires auth (get_current_principal)
# - POST /api/v1/auth/change-password:  requires auth (get_current_principal)
router = APIRouter()

_settings = get_settings()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)  # must be BELOW @router so the route registers the limited function
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a bearer token.

    Unknown username and wrong password produce the same bad_credentials
    error. A blocked principal gets 403 with the recorded reason.
    """
    store: PrincipalStore = request.app.state.principal_store
    principal = authenticate(store, body.username, body.password, request.app.state.audit)
    request.app.state.presence.mark_seen(principal.id)

    token = issue_token(principal)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            require_password_change=principal.require_password_change,
            user=PrincipalResponse.from_principal(principal),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(_settings.reset_rate_limit)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Send a reset link if the account exists. The response never says whether it does."""
    message = request_reset(
        request.app.state.principal_store,
        request.app.state.reset_store,
        request.app.state.notifier,
        body.username,
        _settings.reset_token_hours,
        request.app.state.audit,
    )
    return MessageResponse(message=message)


@router.post("/auth/reset-password", response_model=MessageResponse)
@limiter.limit(_settings.reset_rate_limit)
def reset_password_route(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password with a reset token. All existing sessions are revoked."""
    if body.new_password != body.confirm_password:
        raise ValidationFailed("Passwords do not match.", code="password_mismatch")
    reset_password(
        request.app.state.principal_store,
        request.app.state.reset_store,
        body.token,
        body.new_password,
        request.app.state.audit,
    )
    return MessageResponse(message="Password has been reset. Please log in with your new password.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> MessageResponse:
    """Mark the principal offline. The client discards its token."""
    request.app.state.principal_store.set_offline(principal.id)
    request.app.state.audit.record(principal.id, actions.ACTION_LOGOUT, principal.id)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=PrincipalResponse)
def me(
    request: Request,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> PrincipalResponse:
    """Return the full record of the currently authenticated principal."""
    record = request.app.state.principal_store.get_by_id(principal.id)
    if record is None:
        raise NotFound()
    return PrincipalResponse.from_principal(record)


@router.post("/auth/change-password", response_model=MessageResponse)
@limiter.limit(_settings.password_rate_limit)
def change_password_route(
    request: Request,
    body: ChangePasswordRequest,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
) -> MessageResponse:
    """Change the caller's own password. Every session, including this one, is revoked."""
    change_password(
        request.app.state.principal_store,
        principal.id,
        body.old_password,
        body.new_password,
        body.confirm_password,
        request.app.state.audit,
    )
    return MessageResponse(message="Password changed. Please log in again.")
