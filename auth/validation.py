"""
auth/validation.py -- Input validation and sanitizing for principal fields.

Password policy:
  8..128 characters (the upper bound keeps bcrypt input and hashing cost
  bounded), at least one uppercase letter, one lowercase letter, one digit
  and one symbol from PASSWORD_SYMBOLS. validate_password() reports every
  unmet rule so the client can show them all at once.

Email syntax is checked by email-validator, the library behind pydantic's
EmailStr, so the core and the API models accept the same addresses.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field

from email_validator import EmailNotValidError
from email_validator import validate_email as _check_email

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{}|;:'\",.<>?/\\`~"

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50

_USERNAME_RE = re.compile(r"^[a-zA-Z0-9._-]+$")
_PHONE_RE = re.compile(r"^\+?[1-9]\d{9,14}$")
_PHONE_STRIP_RE = re.compile(r"[^\d+]")


@dataclass
class PasswordCheck:
    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_password(password: str) -> PasswordCheck:
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password must not exceed {PASSWORD_MAX_LENGTH} characters.")
    if not any(ch.isupper() for ch in password):
        errors.append("Password must contain at least one uppercase letter.")
    if not any(ch.islower() for ch in password):
        errors.append("Password must contain at least one lowercase letter.")
    if not any(ch.isdigit() for ch in password):
        errors.append("Password must contain at least one digit.")
    if not any(ch in PASSWORD_SYMBOLS for ch in password):
        errors.append("Password must contain at least one special character (!@#$%^&* etc.).")
    return PasswordCheck(valid=not errors, errors=errors)


def validate_username(username: str) -> str | None:
    """Return an error message, or None when the username is acceptable."""
    if not username:
        return "Username must not be empty."
    if len(username) < USERNAME_MIN_LENGTH:
        return f"Username must be at least {USERNAME_MIN_LENGTH} characters long."
    if len(username) > USERNAME_MAX_LENGTH:
        return f"Username must not exceed {USERNAME_MAX_LENGTH} characters."
    if not _USERNAME_RE.match(username):
        return "Username may contain only latin letters, digits, dots, hyphens and underscores."
    return None


def validate_email(email: str) -> bool:
    """Syntax check only. Deliverability (DNS) is not checked."""
    if not email:
        return False
    try:
        _check_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def validate_phone(phone: str) -> bool:
    if not phone:
        return False
    return _PHONE_RE.match(_PHONE_STRIP_RE.sub("", phone)) is not None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def sanitize_text(value: str | None) -> str | None:
    """HTML-escape and trim free text. None passes through (explicit clear)."""
    if value is None:
        return None
    return html.escape(value).strip()
