"""
auth/store.py -- SQLAlchemy Core persistence layer for principals and reset tokens.

Pattern: Repository + Data Mapper. PrincipalStore and ResetTokenStore are the
repositories; _row_to_principal / _row_to_reset_token are the mappers.
Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Sort fields for the paginated listing come from the _SORTABLE allow-list.
  Free-text input selects a Column object from that dict or falls back to
  created_at; it never reaches the query as text.

Concurrency:
  token_version (the invalidation epoch) is only ever changed by a single
  UPDATE statement that computes token_version + 1 in SQL. Two concurrent
  mutations of one principal therefore both land; neither can overwrite the
  other's increment with a stale read.

  Every method opens its own connection from the engine pool, so calls for
  different principals run concurrently without an application-level lock.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Principal, PrincipalPage, ResetToken

logger = logging.getLogger("bastion.auth")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("full_name", String(255), nullable=False),
    Column("username", String(50), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL until the principal sets one
    Column("avatar_url", Text),
    Column("require_password_change", Boolean, nullable=False, default=False),
    Column("disable_password_change", Boolean, nullable=False, default=False),
    Column("show_in_selection", Boolean, nullable=False, default=True),
    Column("available_organizations", JSON, nullable=False, default=list),
    Column("accessible_users", JSON, nullable=False, default=list),
    Column("emails", JSON, nullable=False, default=list),
    Column("phones", JSON, nullable=False, default=list),
    Column("position", String(255)),
    Column("department", String(255)),
    Column("birth_date", String(10)),
    Column("address", Text),
    Column("city", String(255)),
    Column("country", String(255)),
    Column("postal_code", String(20)),
    Column("social_links", JSON, nullable=False, default=dict),
    Column("timezone", String(64)),
    Column("work_hours", String(64)),
    Column("comment", Text),
    Column("custom_fields", JSON, nullable=False, default=dict),
    Column("tags", JSON, nullable=False, default=list),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("blocked_reason", Text),
    Column("blocked_at", String(32)),
    Column("blocked_by", Integer),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_first_login", Boolean, nullable=False, default=True),
    Column("is_online", Boolean, nullable=False, default=False),
    Column("last_seen", String(32)),
    Column("token_version", Integer, nullable=False, server_default="1"),
    Column("created_by", Integer),
    Column("updated_by", Integer),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# Usernames are unique regardless of case, matching get_by_username().
Index("uq_principals_username_lower", func.lower(_principals.c.username), unique=True)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", Integer, nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),  # token_hex(32)
    Column("expires_at", String(32), nullable=False),
    Column("used", Boolean, nullable=False, default=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

# Listing sort allow-list: request value -> Column.
_SORTABLE = {
    "id": _principals.c.id,
    "username": _principals.c.username,
    "full_name": _principals.c.full_name,
    "role": _principals.c.role,
    "created_at": _principals.c.created_at,
    "last_seen": _principals.c.last_seen,
    "is_active": _principals.c.is_active,
}

# Columns a caller may set through update_principal(). token_version and the
# audit columns are deliberately absent: they are managed here.
_UPDATABLE = frozenset(c.name for c in _principals.columns) - {
    "id",
    "token_version",
    "created_at",
    "created_by",
    "updated_at",
    "updated_by",
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create the shared engine and ensure the schema exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now().isoformat()


# ---------------------------------------------------------------------------
# Principal repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal entities.

    Usage:
        store = PrincipalStore()
        uid = store.create_principal(Principal(username="admin", full_name="Admin", role="admin"))
        principal = store.get_by_id(uid)
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None, engine: Optional[Engine] = None) -> None:
        if engine is None:
            if db_url is None:
                from core.config import get_settings

                db_url = get_settings().database_url
            engine = make_engine(db_url)
        self.engine: Engine = engine

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def has_principals(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_principals)).scalar()
        return (result or 0) > 0

    def get_by_id(self, principal_id: int) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_username(self, username: str) -> Principal | None:
        """Look up a principal by username, case-insensitively. Includes the password hash."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(func.lower(_principals.c.username) == username.strip().lower())
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def username_taken(self, username: str, exclude_id: Optional[int] = None) -> bool:
        existing = self.get_by_username(username)
        return existing is not None and existing.id != exclude_id

    def list_page(
        self,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort_by: str = "created_at",
        sort_desc: bool = False,
    ) -> PrincipalPage:
        """Return one page of all principals. Administrator listing.

        page < 1 becomes 1. page_size outside 1..MAX_PAGE_SIZE falls back to
        DEFAULT_PAGE_SIZE. An unknown sort_by falls back to created_at.
        """
        page = page if page >= 1 else 1
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            page_size = DEFAULT_PAGE_SIZE
        column = _SORTABLE.get(sort_by, _principals.c.created_at)
        order = column.desc() if sort_desc else column.asc()

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_principals)).scalar() or 0
            rows = conn.execute(
                _principals.select()
                .order_by(order, _principals.c.id.asc())
                .limit(page_size)
                .offset((page - 1) * page_size)
            ).fetchall()
        return PrincipalPage(
            items=[_row_to_principal(r) for r in rows],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

    def list_by_ids(self, ids: list[int]) -> list[Principal]:
        """Return the principals whose ids are in ids, newest first. Moderator listing."""
        if not ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                _principals.select()
                .where(_principals.c.id.in_(list(ids)))
                .order_by(_principals.c.created_at.desc(), _principals.c.id.desc())
            ).fetchall()
        return [_row_to_principal(r) for r in rows]

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_principals)
                .where((_principals.c.role == "admin") & (_principals.c.is_active.is_(True)))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal) -> int:
        """Insert a new principal and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists in
        any letter case.
        Callers translate that into a Conflict.
        """
        now = _now_iso()
        values: dict[str, Any] = {
            name: getattr(principal, name) for name in _UPDATABLE if hasattr(principal, name)
        }
        values.update(
            token_version=1,
            created_by=principal.created_by,
            updated_by=principal.created_by,
            created_at=now,
            updated_at=now,
        )
        with self.engine.connect() as conn:
            result = conn.execute(_principals.insert().values(**values))
            conn.commit()
            return result.inserted_primary_key[0]

    def update_principal(
        self,
        principal_id: int,
        values: dict[str, Any],
        bump_epoch: bool = False,
        updated_by: Optional[int] = None,
    ) -> bool:
        """Set columns on one principal in a single UPDATE statement.

        With bump_epoch=True the same statement also increments token_version,
        so the field change and the session revocation commit together.

        Returns True if a row was updated, False if principal_id was not found.
        """
        unknown = set(values) - _UPDATABLE
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)!r}")
        stmt_values = dict(values)
        stmt_values["updated_at"] = _now_iso()
        if updated_by is not None:
            stmt_values["updated_by"] = updated_by
        if bump_epoch:
            stmt_values["token_version"] = _principals.c.token_version + 1
        with self.engine.connect() as conn:
            result = conn.execute(
                _principals.update().where(_principals.c.id == principal_id).values(**stmt_values)
            )
            conn.commit()
        return result.rowcount > 0

    def increment_epoch(self, principal_id: int) -> bool:
        """Revoke every outstanding token of the principal."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _principals.update()
                .where(_principals.c.id == principal_id)
                .values(token_version=_principals.c.token_version + 1, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def set_password(self, principal_id: int, hashed_password: str) -> bool:
        """Store a new hash, leave the first-login state and revoke all sessions."""
        return self.update_principal(
            principal_id,
            {
                "hashed_password": hashed_password,
                "require_password_change": False,
                "is_first_login": False,
            },
            bump_epoch=True,
            updated_by=principal_id,
        )

    def delete_principal(self, principal_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_principals.delete().where(_principals.c.id == principal_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Presence (advisory; never touches token_version)
    # ------------------------------------------------------------------

    def touch_presence(self, principal_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _principals.update()
                .where(_principals.c.id == principal_id)
                .values(is_online=True, last_seen=_now_iso())
            )
            conn.commit()

    def set_offline(self, principal_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _principals.update()
                .where(_principals.c.id == principal_id)
                .values(is_online=False, last_seen=_now_iso())
            )
            conn.commit()

    def mark_idle_offline(self, idle: timedelta) -> int:
        """Mark online principals not seen within idle as offline. Returns rows changed.

        last_seen is a UTC isoformat string; every writer uses _now_iso(), so
        lexicographic order equals chronological order.
        """
        threshold = (_now() - idle).isoformat()
        with self.engine.connect() as conn:
            result = conn.execute(
                _principals.update()
                .where((_principals.c.is_online.is_(True)) & (_principals.c.last_seen < threshold))
                .values(is_online=False)
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Reset token repository
# ---------------------------------------------------------------------------


class ResetTokenStore:
    """Repository for password reset tokens. Shares the principal engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def generate(self, principal_id: int, validity_hours: int) -> str:
        """Create and persist a new token. Returns the raw token value."""
        token = secrets.token_hex(32)
        now = _now()
        with self.engine.connect() as conn:
            conn.execute(
                _reset_tokens.insert().values(
                    principal_id=principal_id,
                    token=token,
                    expires_at=(now + timedelta(hours=validity_hours)).isoformat(),
                    used=False,
                    created_at=now.isoformat(),
                )
            )
            conn.commit()
        return token

    def get(self, token: str) -> ResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token == token)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def validate(self, token: str) -> tuple[bool, Optional[int]]:
        """Return (True, principal_id) for a usable token, (False, None) otherwise.

        Unknown, already used and expired tokens are indistinguishable.
        """
        record = self.get(token)
        if record is None or record.used:
            return False, None
        if datetime.fromisoformat(record.expires_at) <= _now():
            return False, None
        return True, record.principal_id

    def consume(self, token: str) -> bool:
        """Mark the token used. Returns False if it was already used or does not exist.

        The used = false predicate makes this the single-use gate: of two
        concurrent resets with the same token only one sees rowcount 1.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.token == token) & (_reset_tokens.c.used.is_(False)))
                .values(used=True, used_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def invalidate_all(self, principal_id: int) -> int:
        """Mark every outstanding token of the principal used. Returns tokens invalidated."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.principal_id == principal_id) & (_reset_tokens.c.used.is_(False)))
                .values(used=True, used_at=_now_iso())
            )
            conn.commit()
        return result.rowcount

    def delete_expired(self, keep_used_days: int = 7) -> int:
        """Delete expired tokens and used tokens older than keep_used_days."""
        now = _now()
        used_cutoff = (now - timedelta(days=keep_used_days)).isoformat()
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.delete().where(
                    (_reset_tokens.c.expires_at < now.isoformat())
                    | ((_reset_tokens.c.used.is_(True)) & (_reset_tokens.c.used_at < used_cutoff))
                )
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        full_name=row.full_name,
        username=row.username,
        hashed_password=row.hashed_password,
        avatar_url=row.avatar_url,
        require_password_change=bool(row.require_password_change),
        disable_password_change=bool(row.disable_password_change),
        show_in_selection=bool(row.show_in_selection),
        available_organizations=list(row.available_organizations or []),
        accessible_users=list(row.accessible_users or []),
        emails=list(row.emails or []),
        phones=list(row.phones or []),
        position=row.position,
        department=row.department,
        birth_date=row.birth_date,
        address=row.address,
        city=row.city,
        country=row.country,
        postal_code=row.postal_code,
        social_links=dict(row.social_links or {}),
        timezone=row.timezone,
        work_hours=row.work_hours,
        comment=row.comment,
        custom_fields=dict(row.custom_fields or {}),
        tags=list(row.tags or []),
        is_active=bool(row.is_active),
        blocked_reason=row.blocked_reason,
        blocked_at=row.blocked_at,
        blocked_by=row.blocked_by,
        role=row.role,
        is_first_login=bool(row.is_first_login),
        is_online=bool(row.is_online),
        last_seen=row.last_seen,
        token_version=row.token_version,
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_reset_token(row) -> ResetToken:
    return ResetToken(
        id=row.id,
        principal_id=row.principal_id,
        token=row.token,
        expires_at=row.expires_at,
        used=bool(row.used),
        used_at=row.used_at,
        created_at=row.created_at,
    )
