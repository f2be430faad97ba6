"""
auth/audit.py -- Append-only audit trail for mutating operations.

The core writes here as a side effect of every mutation and never reads the
table back. A failed write is logged and swallowed: auditing must not turn a
committed password change into a 500.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, Column, Integer, MetaData, String, Table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("bastion.audit")

ACTION_LOGIN = "login"
ACTION_LOGOUT = "logout"
ACTION_CREATE_USER = "create_user"
ACTION_UPDATE_USER = "update_user"
ACTION_DELETE_USER = "delete_user"
ACTION_CHANGE_PASSWORD = "change_password"
ACTION_RESET_PASSWORD = "reset_password"
ACTION_REQUEST_PASSWORD_RESET = "request_password_reset"
ACTION_BLOCK_USER = "block_user"
ACTION_UNBLOCK_USER = "unblock_user"

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),  # NULL for unauthenticated flows (forgot-password)
    Column("action", String(50), nullable=False, index=True),
    Column("target_id", Integer),
    Column("details", JSON, nullable=False, default=dict),
    Column("created_at", String(32), nullable=False),
)


class AuditLog:
    """Append-only audit sink backed by the shared engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        _metadata.create_all(engine)

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        target_id: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        logger.info("AUDIT: actor=%s action=%s target=%s", actor_id, action, target_id)
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _audit_log.insert().values(
                        actor_id=actor_id,
                        action=action,
                        target_id=target_id,
                        details=details or {},
                        created_at=datetime.now(timezone.utc).isoformat(),
                    )
                )
                conn.commit()
        except SQLAlchemyError:
            logger.exception("Failed to write audit record action=%s target=%s", action, target_id)
