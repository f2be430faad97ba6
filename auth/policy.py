"""
auth/policy.py -- Role rules for who may touch which principal, and which fields.

Every role decision in Bastion lives here so the rules are written and tested
once. The functions are pure: callers load the actor's accessible_users list
from the store and pass it in.

Update rules, in priority order:
  admin       any target, including self: the update passes unchanged.
  moderator   self: role, username, accessible_users, the password fields
              (password, reset_password, require_password_change,
              disable_password_change) and the status fields (is_active,
              blocked_reason) rejected outright, one error per field; the
              rest passes.
              other: target must be in the moderator's accessible_users,
              checked before any field is looked at. Assigning the admin
              role is rejected. Otherwise only available_organizations is
              kept; every other field is dropped without an error.
  user        self: as for a moderator, plus available_organizations;
              the rest passes.
              other: rejected.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.errors import Forbidden
from auth.models import ROLE_ADMIN, ROLE_MODERATOR, ROLE_USER, AuthenticatedPrincipal, PrincipalUpdate

# field -> (code, message). Checked in this order so the first error a client
# sees is stable.
_SELF_FIELD_ERRORS: dict[str, tuple[str, str]] = {
    "role": ("role_forbidden", "You cannot change your own role."),
    "username": ("username_forbidden", "You cannot change your own username."),
    "password": ("password_forbidden", "Use the change-password endpoint to change your password."),
    "available_organizations": (
        "organizations_forbidden",
        "You cannot change your own available organizations.",
    ),
    "accessible_users": ("accessible_users_forbidden", "You cannot change your own accessible users."),
    "reset_password": ("reset_password_forbidden", "You cannot reset your own password."),
    "require_password_change": (
        "require_password_change_forbidden",
        "You cannot change your own password-change requirement.",
    ),
    "disable_password_change": (
        "disable_password_change_forbidden",
        "You cannot change whether you may change your password.",
    ),
    "is_active": ("status_forbidden", "You cannot change your own account status."),
    "blocked_reason": ("blocked_reason_forbidden", "You cannot change your own block reason."),
}

# Password state and account status are administrator decisions.
_PROTECTED_SELF_FIELDS = (
    "password",
    "reset_password",
    "require_password_change",
    "disable_password_change",
    "is_active",
    "blocked_reason",
)

_MODERATOR_SELF_FORBIDDEN = ("role", "username", *_PROTECTED_SELF_FIELDS, "accessible_users")
_USER_SELF_FORBIDDEN = ("role", "username", *_PROTECTED_SELF_FIELDS, "available_organizations", "accessible_users")

# What survives when a moderator edits someone on their list.
_MODERATOR_OTHER_ALLOWED = ("available_organizations",)


def _no_access() -> Forbidden:
    return Forbidden("You do not have access to this user.", code="no_access")


def _reject_fields(update: PrincipalUpdate, forbidden: Iterable[str]) -> None:
    for name in forbidden:
        if update.has(name):
            code, message = _SELF_FIELD_ERRORS[name]
            raise Forbidden(message, code=code)


def authorize_update(
    actor: AuthenticatedPrincipal,
    target_id: int,
    update: PrincipalUpdate,
    accessible_users: Iterable[int] = (),
) -> PrincipalUpdate:
    """Return the subset of update the actor may apply to target_id, or raise Forbidden."""
    if actor.role == ROLE_ADMIN:
        return update

    is_self = actor.id == target_id

    if actor.role == ROLE_MODERATOR:
        if is_self:
            _reject_fields(update, _MODERATOR_SELF_FORBIDDEN)
            return update
        if target_id not in set(accessible_users):
            raise _no_access()
        if update.has("role") and update.role == ROLE_ADMIN:
            raise Forbidden("Moderators cannot assign the administrator role.", code="admin_role_forbidden")
        return update.only(*_MODERATOR_OTHER_ALLOWED)

    if actor.role == ROLE_USER and is_self:
        _reject_fields(update, _USER_SELF_FORBIDDEN)
        return update

    raise _no_access()


def can_view(actor: AuthenticatedPrincipal, target_id: int, accessible_users: Iterable[int] = ()) -> bool:
    """Whether the actor may read target_id's record."""
    if actor.role == ROLE_ADMIN or actor.id == target_id:
        return True
    if actor.role == ROLE_MODERATOR:
        return target_id in set(accessible_users)
    return False


def listing_scope(actor: AuthenticatedPrincipal) -> str:
    """Return "all" (paginated full list) or "accessible" (allow-list only).

    Standard principals have no list capability.
    """
    if actor.role == ROLE_ADMIN:
        return "all"
    if actor.role == ROLE_MODERATOR:
        return "accessible"
    raise Forbidden("Admin or moderator access required.")


def authorize_create(actor: AuthenticatedPrincipal) -> None:
    """Only administrators create principals."""
    if actor.role != ROLE_ADMIN:
        raise Forbidden("Admin access required.")


def authorize_delete(actor: AuthenticatedPrincipal, target_id: int) -> None:
    if actor.role != ROLE_ADMIN:
        raise Forbidden("Admin access required.")
    if actor.id == target_id:
        raise Forbidden("You cannot delete your own account.", code="self_delete")
