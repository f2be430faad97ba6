"""
API request and response models for Bastion REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.

Partial updates: PrincipalUpdateRequest.to_update() uses model_fields_set, so
a field the client sent as "" or null is present (a clear) while a field it
left out is absent.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Principal, PrincipalPage, PrincipalUpdate

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    moderator = "moderator"
    user = "user"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    password may be empty: a provisioned account that has never set a
    password logs in once with any credential and is then forced to set one.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=50)
    password: str = Field(default="", max_length=128)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    old_password: str = Field(default="", max_length=128)
    new_password: str = Field(max_length=256)
    confirm_password: str = Field(max_length=256)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=50)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(max_length=256)
    confirm_password: str = Field(max_length=256)


# ---------------------------------------------------------------------------
# Users -- request models
# ---------------------------------------------------------------------------


class PrincipalCreate(BaseModel):
    """Request body for POST /api/v1/users. Admin only.

    Without a password the account is provisioned: its owner logs in once
    and must choose a password.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    username: str = Field(max_length=50)
    full_name: str = Field(max_length=255)
    role: RoleEnum = RoleEnum.user
    password: Optional[str] = Field(default=None, max_length=256)
    avatar_url: Optional[str] = None
    require_password_change: bool = False
    disable_password_change: bool = False
    show_in_selection: bool = True
    available_organizations: list[int] = Field(default_factory=list)
    accessible_users: list[int] = Field(default_factory=list)
    emails: list[EmailStr] = Field(default_factory=list)
    phones: list[str] = Field(default_factory=list)
    position: Optional[str] = None
    department: Optional[str] = None
    birth_date: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    social_links: dict[str, str] = Field(default_factory=dict)
    timezone: Optional[str] = None
    work_hours: Optional[str] = None
    comment: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    def to_draft(self) -> Principal:
        data = self.model_dump(exclude={"password"})
        data["role"] = self.role.value
        return Principal(**data)


class PrincipalUpdateRequest(BaseModel):
    """Request body for PUT /api/v1/users/{id}. Every field is optional."""

    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(default=None, max_length=255)
    username: Optional[str] = Field(default=None, max_length=50)
    password: Optional[str] = Field(default=None, max_length=256)
    reset_password: bool = False
    avatar_url: Optional[str] = None
    require_password_change: Optional[bool] = None
    disable_password_change: Optional[bool] = None
    show_in_selection: Optional[bool] = None
    available_organizations: Optional[list[int]] = None
    accessible_users: Optional[list[int]] = None
    emails: Optional[list[EmailStr]] = None
    phones: Optional[list[str]] = None
    position: Optional[str] = None
    department: Optional[str] = None
    birth_date: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    social_links: Optional[dict[str, str]] = None
    timezone: Optional[str] = None
    work_hours: Optional[str] = None
    comment: Optional[str] = None
    custom_fields: Optional[dict[str, Any]] = None
    tags: Optional[list[str]] = None
    is_active: Optional[bool] = None
    blocked_reason: Optional[str] = None
    role: Optional[RoleEnum] = None

    def to_update(self) -> PrincipalUpdate:
        """Convert to the domain update, keeping only the fields the client sent."""
        data = {name: getattr(self, name) for name in self.model_fields_set}
        if isinstance(data.get("role"), RoleEnum):
            data["role"] = data["role"].value
        return PrincipalUpdate.from_mapping(data)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class PrincipalResponse(BaseModel):
    """Public view of a principal. The password hash is never serialized."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    full_name: str
    role: str
    avatar_url: Optional[str]
    has_password: bool
    require_password_change: bool
    disable_password_change: bool
    show_in_selection: bool
    available_organizations: list[int]
    accessible_users: list[int]
    emails: list[str]
    phones: list[str]
    position: Optional[str]
    department: Optional[str]
    birth_date: Optional[str]
    address: Optional[str]
    city: Optional[str]
    country: Optional[str]
    postal_code: Optional[str]
    social_links: dict[str, str]
    timezone: Optional[str]
    work_hours: Optional[str]
    comment: Optional[str]
    custom_fields: dict[str, Any]
    tags: list[str]
    is_active: bool
    blocked_reason: Optional[str]
    blocked_at: Optional[str]
    blocked_by: Optional[int]
    is_first_login: bool
    is_online: bool
    last_seen: Optional[str]
    created_by: Optional[int]
    updated_by: Optional[int]
    created_at: Optional[str]
    updated_at: Optional[str]

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        """Build the response from the domain record, dropping hashed_password and token_version."""
        fields = set(cls.model_fields) - {"has_password"}
        data = {name: getattr(principal, name) for name in fields}
        return cls(has_password=principal.has_password, **data)


class PrincipalListResponse(BaseModel):
    """Response for GET /api/v1/users.

    Moderators get their allow-list in one page; total_pages is 1 (or 0).
    """

    model_config = ConfigDict(frozen=True)

    items: list[PrincipalResponse]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def from_page(cls, page: PrincipalPage) -> "PrincipalListResponse":
        return cls(
            items=[PrincipalResponse.from_principal(p) for p in page.items],
            total=page.total,
            page=page.page,
            page_size=page.page_size,
            total_pages=page.total_pages,
        )


class LoginResponse(BaseModel):
    """Response body for a successful login."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    require_password_change: bool
    user: PrincipalResponse


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Shared models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    errors: Optional[list[str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses.

    force_logout and reason are set only for revoked or blocked sessions;
    the client must discard its token.
    """

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail
    force_logout: Optional[bool] = None
    reason: Optional[str] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
