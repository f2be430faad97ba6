"""
auth/credentials.py -- Authentication and every write to a principal record.

This module decides when a change is security-relevant. The rule: a write
bumps token_version (revoking every outstanding session) exactly once when it
  - changes the role,
  - moves the principal from active to inactive,
  - replaces or clears the password hash,
  - sets require_password_change to true.
Everything else (contact data, display fields, organizations, the
moderator allow-list, presence) leaves sessions alone. The bump is folded
into the same UPDATE statement as the field change (see auth/store.py).

Authentication flattens "unknown username" and "wrong password" into one
InvalidCredentials. The distinguishing detail goes to the server log only,
and bcrypt runs against a dummy hash for unknown usernames so response time
does not leak existence either.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from auth import audit as actions
from auth.audit import AuditLog
from auth.errors import Blocked, Conflict, Forbidden, InvalidCredentials, NotFound, ValidationFailed
from auth.models import ROLE_ADMIN, ROLES, Principal, PrincipalUpdate
from auth.store import PrincipalStore
from auth.tokens import DUMMY_HASH, hash_password, verify_password
from auth.validation import (
    normalize_email,
    sanitize_text,
    validate_email,
    validate_password,
    validate_phone,
    validate_username,
)

logger = logging.getLogger("bastion.auth")

SOCIAL_NETWORKS = frozenset({"telegram", "whatsapp", "linkedin", "facebook", "instagram", "twitter"})

# Free-text fields that are HTML-escaped before storage.
_SANITIZED_TEXT = ("position", "department", "address", "city", "country", "comment")
# Short fields stored as given (trimmed).
_PLAIN_TEXT = ("avatar_url", "postal_code", "timezone", "work_hours")
_LIST_FIELDS = ("available_organizations", "accessible_users", "tags")
_DICT_FIELDS = ("custom_fields",)
_BOOL_FIELDS = ("disable_password_change", "show_in_selection")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def authenticate(
    store: PrincipalStore,
    username: str,
    password: str,
    audit: Optional[AuditLog] = None,
) -> Principal:
    """Return the principal for a username/password pair, or raise.

    Raises:
        InvalidCredentials: unknown username or wrong password.
        Blocked:            the principal is inactive (carries the reason).
    """
    principal = store.get_by_username(username)
    if principal is None:
        # Equalize timing -- do NOT return early before running bcrypt.
        verify_password(password, DUMMY_HASH)
        logger.info("Login failed: unknown username %r", username)
        raise InvalidCredentials()

    if not principal.is_active:
        logger.info("Login refused: principal %d is blocked", principal.id)
        raise Blocked(principal.blocked_reason)

    if principal.awaiting_activation:
        # Provisioned without a password and forced to set one: any
        # submitted credential, including the empty string, is accepted.
        logger.info("Login for principal %d in first-login state without a password", principal.id)
    elif principal.hashed_password is None:
        verify_password(password, DUMMY_HASH)
        logger.info("Login failed: principal %d has no password set", principal.id)
        raise InvalidCredentials()
    elif not verify_password(password, principal.hashed_password):
        logger.info("Login failed: wrong password for principal %d", principal.id)
        raise InvalidCredentials()

    if audit is not None:
        audit.record(principal.id, actions.ACTION_LOGIN, principal.id)
    logger.info("Successful login: %s (id=%d)", principal.username, principal.id)
    return principal


# ---------------------------------------------------------------------------
# Self-service password change
# ---------------------------------------------------------------------------


def check_password_strength(password: str) -> None:
    result = validate_password(password)
    if not result.valid:
        raise ValidationFailed(
            "Password does not meet the security requirements.",
            errors=result.errors,
            code="weak_password",
        )


def change_password(
    store: PrincipalStore,
    principal_id: int,
    old_password: str,
    new_password: str,
    confirm_password: str,
    audit: Optional[AuditLog] = None,
) -> None:
    """Replace the principal's own password and revoke all of its sessions.

    Confirmation and strength are checked before storage is touched.
    """
    if new_password != confirm_password:
        raise ValidationFailed("Passwords do not match.", code="password_mismatch")
    check_password_strength(new_password)

    principal = store.get_by_id(principal_id)
    if principal is None:
        raise NotFound()
    if principal.disable_password_change:
        raise Forbidden("Password change is disabled for this account.", code="password_change_disabled")

    # First login without a stored password: there is no old password to check.
    if not (principal.is_first_login and not principal.has_password):
        if not principal.has_password or not verify_password(old_password, principal.hashed_password):
            raise ValidationFailed("Current password is incorrect.", code="wrong_password")

    if not store.set_password(principal_id, hash_password(new_password)):
        raise NotFound()
    if audit is not None:
        audit.record(principal_id, actions.ACTION_CHANGE_PASSWORD, principal_id)


# ---------------------------------------------------------------------------
# Field normalization
# ---------------------------------------------------------------------------


def _clean_emails(values: Optional[list[str]]) -> list[str]:
    cleaned: list[str] = []
    for raw in values or []:
        email = normalize_email(raw)
        if not email:
            continue
        if not validate_email(email):
            raise ValidationFailed("Invalid email address.", errors=[raw], code="invalid_email")
        cleaned.append(email)
    return cleaned


def _clean_phones(values: Optional[list[str]]) -> list[str]:
    cleaned: list[str] = []
    for raw in values or []:
        phone = raw.strip()
        if not phone:
            continue
        if not validate_phone(phone):
            raise ValidationFailed("Invalid phone number.", errors=[raw], code="invalid_phone")
        cleaned.append(phone)
    return cleaned


def _clean_social_links(links: Optional[dict[str, str]]) -> dict[str, str]:
    links = links or {}
    unknown = set(links) - SOCIAL_NETWORKS
    if unknown:
        raise ValidationFailed("Unknown social network.", errors=sorted(unknown), code="invalid_social_links")
    return {name: url.strip() for name, url in links.items() if url and url.strip()}


def _clean_birth_date(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return date.fromisoformat(value).isoformat()
    except ValueError as exc:
        raise ValidationFailed("Birth date must be YYYY-MM-DD.", code="invalid_birth_date") from exc


def _clean_username(username: Optional[str]) -> str:
    username = (username or "").strip()
    error = validate_username(username)
    if error:
        raise ValidationFailed(error, code="invalid_username")
    return username


def _clean_full_name(full_name: Optional[str]) -> str:
    cleaned = sanitize_text(full_name)
    if not cleaned:
        raise ValidationFailed("Full name must not be empty.", code="invalid_full_name")
    return cleaned


def _clean_role(role: Optional[str]) -> str:
    if role not in ROLES:
        raise ValidationFailed(f"Unknown role {role!r}.", code="invalid_role")
    return role


def _profile_values(update: PrincipalUpdate) -> dict[str, Any]:
    """Column values for present non-security fields. Empty text clears the column."""
    values: dict[str, Any] = {}
    for name in _SANITIZED_TEXT:
        if update.has(name):
            values[name] = sanitize_text(getattr(update, name)) or None
    for name in _PLAIN_TEXT:
        if update.has(name):
            values[name] = (getattr(update, name) or "").strip() or None
    for name in _LIST_FIELDS:
        if update.has(name):
            values[name] = list(getattr(update, name) or [])
    for name in _DICT_FIELDS:
        if update.has(name):
            values[name] = dict(getattr(update, name) or {})
    for name in _BOOL_FIELDS:
        if update.has(name):
            value = getattr(update, name)
            if value is None:
                raise ValidationFailed(f"{name} must be true or false.", code="invalid_flag")
            values[name] = value
    if update.has("emails"):
        values["emails"] = _clean_emails(update.emails)
    if update.has("phones"):
        values["phones"] = _clean_phones(update.phones)
    if update.has("social_links"):
        values["social_links"] = _clean_social_links(update.social_links)
    if update.has("birth_date"):
        values["birth_date"] = _clean_birth_date(update.birth_date)
    if update.has("full_name"):
        values["full_name"] = _clean_full_name(update.full_name)
    return values


def _guard_last_admin(store: PrincipalStore, target: Principal) -> None:
    if target.role == ROLE_ADMIN and target.is_active and store.count_active_admins() <= 1:
        raise ValidationFailed("Cannot remove the last active administrator.", code="last_admin")


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def apply_update(
    store: PrincipalStore,
    target_id: int,
    update: PrincipalUpdate,
    actor_id: int,
    audit: Optional[AuditLog] = None,
) -> Principal:
    """Apply a policy-filtered update to target_id and return the fresh record.

    The caller runs auth.policy.authorize_update() first; this function
    trusts that every present field is permitted.
    """
    target = store.get_by_id(target_id)
    if target is None:
        raise NotFound()
    if update.is_empty():
        return target

    values = _profile_values(update)
    bump = False
    transition: Optional[str] = None

    if update.has("username"):
        username = _clean_username(update.username)
        if store.username_taken(username, exclude_id=target_id):
            raise Conflict()
        values["username"] = username

    if update.has("password") and update.password is not None:
        check_password_strength(update.password)
        values["hashed_password"] = hash_password(update.password)
        bump = True
    elif update.has("reset_password") and update.reset_password:
        # Back to the provisioned state: no hash, must choose one at next login.
        values.update(hashed_password=None, require_password_change=True, is_first_login=True)
        bump = True

    if update.has("require_password_change") and update.require_password_change is not None:
        values["require_password_change"] = update.require_password_change
        if update.require_password_change:
            values["is_first_login"] = True
            bump = True

    if update.has("is_active") and update.is_active is not None:
        if not update.is_active:
            if target_id == actor_id:
                raise ValidationFailed("You cannot deactivate your own account.", code="self_deactivation")
            if target.is_active:
                _guard_last_admin(store, target)
                values.update(
                    is_active=False,
                    blocked_at=datetime.now(timezone.utc).isoformat(),
                    blocked_by=actor_id,
                    blocked_reason=sanitize_text(update.blocked_reason) or None,
                )
                transition = actions.ACTION_BLOCK_USER
                bump = True
        elif not target.is_active:
            values.update(is_active=True, blocked_at=None, blocked_by=None, blocked_reason=None)
            transition = actions.ACTION_UNBLOCK_USER
    elif update.has("blocked_reason") and not target.is_active:
        values["blocked_reason"] = sanitize_text(update.blocked_reason) or None

    if update.has("role"):
        role = _clean_role(update.role)
        if role != target.role:
            if target.role == ROLE_ADMIN:
                _guard_last_admin(store, target)
            values["role"] = role
            bump = True

    try:
        changed = store.update_principal(target_id, values, bump_epoch=bump, updated_by=actor_id)
    except IntegrityError as exc:
        raise Conflict() from exc
    if not changed:
        raise NotFound()

    if audit is not None:
        audit.record(
            actor_id,
            actions.ACTION_UPDATE_USER,
            target_id,
            {"fields": sorted(update.present), "sessions_revoked": bump},
        )
        if transition is not None:
            audit.record(actor_id, transition, target_id, {"reason": values.get("blocked_reason")})

    updated = store.get_by_id(target_id)
    if updated is None:
        raise NotFound()
    return updated


def create_principal(
    store: PrincipalStore,
    draft: Principal,
    password: Optional[str],
    creator_id: Optional[int],
    audit: Optional[AuditLog] = None,
) -> Principal:
    """Validate and insert a new principal. It always starts active and in first-login state.

    Without a password the account is provisioned: require_password_change is
    forced on so the owner can log in once and choose one.
    """
    username = _clean_username(draft.username)
    if store.username_taken(username):
        raise Conflict()

    hashed: Optional[str] = None
    if password:
        check_password_strength(password)
        hashed = hash_password(password)

    principal = Principal(
        username=username,
        full_name=_clean_full_name(draft.full_name),
        role=_clean_role(draft.role),
        hashed_password=hashed,
        avatar_url=(draft.avatar_url or "").strip() or None,
        require_password_change=draft.require_password_change or hashed is None,
        disable_password_change=draft.disable_password_change,
        show_in_selection=draft.show_in_selection,
        available_organizations=list(draft.available_organizations),
        accessible_users=list(draft.accessible_users),
        emails=_clean_emails(draft.emails),
        phones=_clean_phones(draft.phones),
        position=sanitize_text(draft.position) or None,
        department=sanitize_text(draft.department) or None,
        birth_date=_clean_birth_date(draft.birth_date),
        address=sanitize_text(draft.address) or None,
        city=sanitize_text(draft.city) or None,
        country=sanitize_text(draft.country) or None,
        postal_code=(draft.postal_code or "").strip() or None,
        social_links=_clean_social_links(draft.social_links),
        timezone=(draft.timezone or "").strip() or None,
        work_hours=(draft.work_hours or "").strip() or None,
        comment=sanitize_text(draft.comment) or None,
        custom_fields=dict(draft.custom_fields),
        tags=list(draft.tags),
        is_active=True,
        is_first_login=True,
        created_by=creator_id,
    )
    try:
        principal_id = store.create_principal(principal)
    except IntegrityError as exc:
        # Lost a race with a concurrent create of the same username.
        raise Conflict() from exc

    if audit is not None:
        audit.record(creator_id, actions.ACTION_CREATE_USER, principal_id, {"role": principal.role})
    created = store.get_by_id(principal_id)
    if created is None:
        raise NotFound()
    return created


def delete_principal(
    store: PrincipalStore,
    target_id: int,
    actor_id: int,
    audit: Optional[AuditLog] = None,
) -> None:
    target = store.get_by_id(target_id)
    if target is None:
        raise NotFound()
    _guard_last_admin(store, target)
    if not store.delete_principal(target_id):
        raise NotFound()
    if audit is not None:
        audit.record(actor_id, actions.ACTION_DELETE_USER, target_id, {"username": target.username})
