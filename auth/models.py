"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these types only own the domain shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Optional

ROLE_ADMIN = "admin"
ROLE_MODERATOR = "moderator"
ROLE_USER = "user"

ROLES: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_MODERATOR, ROLE_USER})


@dataclass
class Principal:
    """An account in Bastion.

    token_version is the invalidation epoch. Every bearer token embeds the
    value current at issuance; the session guard rejects a token whose
    embedded value no longer matches. Only the store changes it, and only
    with an in-SQL increment.

    hashed_password is None for a provisioned account that has not set a
    password yet. Together with is_first_login and require_password_change
    that is the "not yet activated" state: login accepts any credential.

    accessible_users is meaningful only for moderators -- the explicit set of
    principal ids the moderator may act on.
    """

    username: str
    full_name: str
    role: str  # "admin", "moderator", "user"
    id: Optional[int] = None
    hashed_password: Optional[str] = None
    avatar_url: Optional[str] = None

    require_password_change: bool = False
    disable_password_change: bool = False
    show_in_selection: bool = True
    available_organizations: list[int] = field(default_factory=list)
    accessible_users: list[int] = field(default_factory=list)

    emails: list[str] = field(default_factory=list)
    phones: list[str] = field(default_factory=list)
    position: Optional[str] = None
    department: Optional[str] = None
    birth_date: Optional[str] = None  # ISO date, YYYY-MM-DD
    address: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    social_links: dict[str, str] = field(default_factory=dict)
    timezone: Optional[str] = None
    work_hours: Optional[str] = None
    comment: Optional[str] = None
    custom_fields: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)

    is_active: bool = True
    blocked_reason: Optional[str] = None
    blocked_at: Optional[str] = None
    blocked_by: Optional[int] = None

    is_first_login: bool = True
    is_online: bool = False
    last_seen: Optional[str] = None
    token_version: int = 1

    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def has_password(self) -> bool:
        return bool(self.hashed_password)

    @property
    def awaiting_activation(self) -> bool:
        """True for the provisioned-but-not-activated state (no hash, must change)."""
        return self.is_first_login and self.require_password_change and not self.has_password


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    """The identity the session guard hands to route handlers.

    Immutable and passed explicitly through handler signatures -- there is
    no request-global "current user".
    """

    id: int
    role: str


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of a bearer token. Produced by auth.tokens.verify_token()."""

    user_id: int
    username: str
    full_name: str
    role: str
    token_version: int
    issued_at: int
    expires_at: int


@dataclass
class ResetToken:
    """A single-use, time-limited password reset credential.

    token is secrets.token_hex(32) -- 256 bits of entropy. It is bound to one
    principal and consumed exactly once; a successful reset also marks every
    other outstanding token of that principal as used.
    """

    principal_id: int
    token: str
    expires_at: str
    id: Optional[int] = None
    used: bool = False
    used_at: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class PrincipalPage:
    """One page of the administrator listing."""

    items: list[Principal]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(frozen=True)
class PrincipalUpdate:
    """A partial update to a principal, with explicit field presence.

    present holds the names of the fields the caller actually supplied. A
    field in present whose value is "" or None is an intentional clear, not
    an omission. Policy and store code test membership in present, never
    the truthiness of the value.
    """

    present: frozenset[str] = frozenset()

    full_name: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    reset_password: bool = False
    avatar_url: Optional[str] = None
    require_password_change: Optional[bool] = None
    disable_password_change: Optional[bool] = None
    show_in_selection: Optional[bool] = None
    available_organizations: Optional[list[int]] = None
    accessible_users: Optional[list[int]] = None
    emails: Optional[list[str]] = None
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
    role: Optional[str] = None

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls) if f.name != "present")

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "PrincipalUpdate":
        """Build an update from a mapping; every known key supplied is marked present.

        Unknown keys raise ValueError rather than being dropped silently.
        """
        known = cls.field_names()
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown update fields: {sorted(unknown)!r}")
        return cls(present=frozenset(data), **data)

    def has(self, name: str) -> bool:
        return name in self.present

    def only(self, *names: str) -> "PrincipalUpdate":
        """Return a copy that keeps just the named fields (others become absent)."""
        kept = {name: getattr(self, name) for name in names if name in self.present}
        return PrincipalUpdate.from_mapping(kept)

    def values(self) -> dict[str, Any]:
        """Return {field: value} for present fields only."""
        return {name: getattr(self, name) for name in sorted(self.present)}

    def is_empty(self) -> bool:
        return not self.present
