from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from .errors import DatabaseError
from .models import AuditEntry, RequestInfo
from .store import Database
from .utils import to_iso, utc_now


logger = logging.getLogger(__name__)

AUDIT_COLUMNS = (
    "id, user_id, action, resource_type, resource_id, before_values, after_values, "
    "ip_address, user_agent, request_id, created_at"
)


def _dump(values: Optional[Dict[str, Any]]) -> Optional[str]:
    if values is None:
        return None
    return json.dumps(values, separators=(",", ":"), sort_keys=True, default=str)


def _load(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        return {"raw": raw}
    return value if isinstance(value, dict) else {"value": value}


class AuditLog:
    """Append-only trail of security events."""

    def __init__(self, database: Database, *, clock: Callable[[], dt.datetime] = utc_now):
        self.database = database
        self._clock = clock

    def record(
        self,
        action: str,
        *,
        resource_type: str = "auth",
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        request: Optional[RequestInfo] = None,
    ) -> None:
        request = request or RequestInfo()
        try:
            with self.database.connection_scope() as con:
                con.execute(
                    """
INSERT INTO audit_log(
  user_id, action, resource_type, resource_id, before_values, after_values,
  ip_address, user_agent, request_id, created_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        action,
                        resource_type,
                        resource_id,
                        _dump(before),
                        _dump(after),
                        request.ip_address or None,
                        request.user_agent or None,
                        request.request_id,
                        to_iso(self._clock()),
                    ),
                )
                con.commit()
        except sqlite3.Error:
            # An audit write never decides the outcome of the request it describes.
            logger.exception("Audit write failed for action %s", action)

    def list_entries(
        self,
        *,
        limit: int = 50,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        before_id: Optional[int] = None,
    ) -> List[AuditEntry]:
        where_clauses = []
        params: List[Any] = []
        if before_id is not None:
            where_clauses.append("id < ?")
            params.append(before_id)
        if action:
            where_clauses.append("action = ?")
            params.append(action)
        if user_id:
            where_clauses.append("user_id = ?")
            params.append(user_id)

        where_sql = ""
        if where_clauses:
            where_sql = "WHERE " + " AND ".join(where_clauses)
        query = f"""
SELECT {AUDIT_COLUMNS}
FROM audit_log
{where_sql}
ORDER BY id DESC
LIMIT ?
        """
        params.append(limit)

        try:
            with self.database.connection_scope() as con:
                rows = con.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            logger.exception("Audit query failed")
            raise DatabaseError("Audit query failed") from exc
        return [
            AuditEntry(
                id=int(row["id"]),
                user_id=row["user_id"],
                action=str(row["action"]),
                resource_type=str(row["resource_type"]),
                resource_id=row["resource_id"],
                before_values=_load(row["before_values"]),
                after_values=_load(row["after_values"]),
                ip_address=row["ip_address"],
                user_agent=row["user_agent"],
                request_id=row["request_id"],
                created_at=str(row["created_at"]),
            )
            for row in rows
        ]
