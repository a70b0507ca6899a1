from __future__ import annotations

import datetime as dt
import hmac
import logging
import secrets
import sqlite3
from typing import Callable, Optional

from .errors import DatabaseError
from .models import SessionRecord
from .store import Database
from .utils import parse_iso, sha256_hex, to_iso, utc_now


logger = logging.getLogger(__name__)

SESSION_COLUMNS = "id, user_id, token_hash, expires_at, ip_address, user_agent, is_active, created_at, updated_at"


def hash_token(token: str) -> str:
    return sha256_hex(token)


def _row_to_session(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=str(row["token_hash"]),
        expires_at=str(row["expires_at"]),
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        is_active=bool(row["is_active"]),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


class SessionStore:
    """Server-side session records. Records are soft-invalidated, never deleted."""

    def __init__(self, database: Database, *, clock: Callable[[], dt.datetime] = utc_now):
        self.database = database
        self._clock = clock

    def create(
        self,
        user_id: str,
        token_hash: str,
        ttl: dt.timedelta,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        *,
        now: Optional[dt.datetime] = None,
    ) -> str:
        now = now or self._clock()
        session_id = secrets.token_urlsafe(32)
        now_iso = to_iso(now)
        try:
            with self.database.connection_scope() as con:
                con.execute(
                    """
INSERT INTO sessions(id, user_id, token_hash, expires_at, ip_address, user_agent, is_active, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        session_id,
                        user_id,
                        token_hash,
                        to_iso(now + ttl),
                        ip_address or None,
                        user_agent or None,
                        now_iso,
                        now_iso,
                    ),
                )
                con.commit()
        except sqlite3.Error as exc:
            logger.exception("Session insert failed for user %s", user_id)
            raise DatabaseError("Session creation failed") from exc
        return session_id

    def find_by_id(self, session_id: str) -> Optional[SessionRecord]:
        try:
            with self.database.connection_scope() as con:
                row = con.execute(
                    f"SELECT {SESSION_COLUMNS} FROM sessions WHERE id = ?",
                    (session_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("Session lookup failed")
            raise DatabaseError("Session lookup failed") from exc
        return _row_to_session(row) if row is not None else None

    def invalidate(self, session_id: str) -> bool:
        """Mark the session inactive. Returns whether anything changed."""
        try:
            with self.database.connection_scope() as con:
                cur = con.execute(
                    "UPDATE sessions SET is_active = 0, updated_at = ? WHERE id = ? AND is_active = 1",
                    (to_iso(self._clock()), session_id),
                )
                con.commit()
        except sqlite3.Error as exc:
            logger.exception("Session invalidation failed")
            raise DatabaseError("Session invalidation failed") from exc
        return cur.rowcount > 0

    def is_usable(self, record: SessionRecord, token: str, now: Optional[dt.datetime] = None) -> bool:
        if not record.is_active:
            return False
        now = now or self._clock()
        if now >= parse_iso(record.expires_at):
            return False
        return hmac.compare_digest(record.token_hash, hash_token(token))
