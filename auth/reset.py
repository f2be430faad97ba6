"""
auth/reset.py -- Forgot-password and reset-password flows.

request_reset() always returns the same message whether or not the username
exists, is blocked, or has no email on file. Enumeration through this
endpoint is not possible.

reset_password() order:
  1. strength check (no storage touched on a weak password)
  2. validate the token (unknown / used / expired are indistinguishable)
  3. consume it -- the conditional UPDATE is the single-use gate
  4. store the new hash (bumps token_version, revoking all sessions)
  5. mark every other outstanding token of the principal used

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Optional

from auth import audit as actions
from auth.audit import AuditLog
from auth.credentials import check_password_strength
from auth.errors import ValidationFailed
from auth.notify import EmailNotifier
from auth.store import PrincipalStore, ResetTokenStore
from auth.tokens import hash_password

logger = logging.getLogger("bastion.auth")

GENERIC_RESET_MESSAGE = "If an account with that username exists, password reset instructions have been sent."


def _invalid_token() -> ValidationFailed:
    return ValidationFailed("The reset link is invalid or has expired.", code="invalid_reset_token")


def request_reset(
    principals: PrincipalStore,
    resets: ResetTokenStore,
    notifier: EmailNotifier,
    username: str,
    validity_hours: int,
    audit: Optional[AuditLog] = None,
) -> str:
    """Issue a reset token and notify the principal. Returns GENERIC_RESET_MESSAGE."""
    principal = principals.get_by_username(username)
    if principal is None:
        logger.info("Password reset requested for unknown username %r", username)
        return GENERIC_RESET_MESSAGE
    if not principal.is_active:
        logger.info("Password reset requested for blocked principal %d", principal.id)
        return GENERIC_RESET_MESSAGE
    if not principal.emails:
        logger.info("Password reset requested for principal %d with no email on file", principal.id)
        return GENERIC_RESET_MESSAGE

    token = resets.generate(principal.id, validity_hours)
    try:
        notifier.send_password_reset(principal.emails[0], principal.username, token)
    except Exception:  # noqa: BLE001 -- the caller must still get the generic response
        logger.exception("Failed to send password reset email for principal %d", principal.id)

    if audit is not None:
        audit.record(None, actions.ACTION_REQUEST_PASSWORD_RESET, principal.id)
    return GENERIC_RESET_MESSAGE


def reset_password(
    principals: PrincipalStore,
    resets: ResetTokenStore,
    token: str,
    new_password: str,
    audit: Optional[AuditLog] = None,
) -> int:
    """Set a new password from a reset token. Returns the principal id."""
    check_password_strength(new_password)

    ok, principal_id = resets.validate(token)
    if not ok or principal_id is None:
        raise _invalid_token()
    if not resets.consume(token):
        # Lost the race to a concurrent reset with the same token.
        raise _invalid_token()

    if not principals.set_password(principal_id, hash_password(new_password)):
        logger.warning("Reset token %s... refers to missing principal %d", token[:8], principal_id)
        raise _invalid_token()
    revoked = resets.invalidate_all(principal_id)

    if audit is not None:
        audit.record(principal_id, actions.ACTION_RESET_PASSWORD, principal_id, {"other_tokens_revoked": revoked})
    logger.info("Password reset completed for principal %d", principal_id)
    return principal_id
