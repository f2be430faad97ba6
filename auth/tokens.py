"""
auth/tokens.py -- Bearer token codec and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, username, full_name, role, token_version and iat/exp.
       Verification returns None on any failure (malformed, bad signature,
       expired) -- callers treat all three the same way.

       verify_token() never touches storage. Whether the embedded
       token_version is still current is the session guard's question,
       not the codec's.

  Passwords: bcrypt used directly. Bcrypt's cost factor makes brute-force of
       low-entropy secrets expensive. The _DUMMY_HASH constant enables timing
       equalization in auth.credentials.authenticate() so response time does
       not reveal whether a username exists.

  SECRET_KEY: sourced from core.config.get_settings(), which validates the
       key at startup.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import TokenClaims
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Principal

logger = logging.getLogger("bastion.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("user_id", "role", "token_version", "sub", "iat", "exp")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The password policy caps input
    at 128 characters, so long passphrases differing after byte 72 collide;
    acceptable for this threat model.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.strip().encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the row.
        logger.warning("verify_password: stored hash is not a valid bcrypt hash")
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
DUMMY_HASH: str = hash_password("bastion_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def issue_token(principal: Principal, expire_seconds: int = 0) -> str:
    """Encode a signed JWT for the principal's current state.

    Args:
        principal:      The principal, as loaded from the store. Its
                        token_version is captured into the token.
        expire_seconds: Validity window in seconds. 0 (default) uses
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": principal.username,
        "user_id": principal.id,
        "full_name": principal.full_name,
        "role": principal.role,
        "token_version": principal.token_version,
        "iat": issued,
        "exp": issued + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def verify_token(token: str) -> TokenClaims | None:
    """Decode and verify a JWT. Returns its claims, or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if any(name not in payload for name in _REQUIRED_CLAIMS):
        return None
    try:
        return TokenClaims(
            user_id=int(payload["user_id"]),
            username=str(payload["sub"]),
            full_name=str(payload.get("full_name") or ""),
            role=str(payload["role"]),
            token_version=int(payload["token_version"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )
    except (TypeError, ValueError):
        return None
