from __future__ import annotations

import datetime as dt
import logging
import sqlite3
import uuid
from typing import Callable, Optional, Tuple

from .errors import DatabaseError
from .models import USER_STATUSES, Identity, User
from .store import Database
from .utils import normalize_email, to_iso, utc_now


logger = logging.getLogger(__name__)

USER_COLUMNS = "id, email, name, picture, email_verified, status, last_login_at, created_at, updated_at"


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=str(row["id"]),
        email=str(row["email"]),
        name=str(row["name"]),
        picture=row["picture"],
        email_verified=bool(row["email_verified"]),
        status=str(row["status"]),
        last_login_at=row["last_login_at"],
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


class UserDirectory:
    """Maps provider identities onto internal user records, keyed by email."""

    def __init__(self, database: Database, *, clock: Callable[[], dt.datetime] = utc_now):
        self.database = database
        self._clock = clock

    def find_by_email(self, email: str) -> Optional[User]:
        try:
            with self.database.connection_scope() as con:
                row = con.execute(
                    f"SELECT {USER_COLUMNS} FROM users WHERE email = ?",
                    (normalize_email(email),),
                ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("User lookup by email failed")
            raise DatabaseError("User lookup failed") from exc
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        try:
            with self.database.connection_scope() as con:
                row = con.execute(
                    f"SELECT {USER_COLUMNS} FROM users WHERE id = ?",
                    (user_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("User lookup by id failed")
            raise DatabaseError("User lookup failed") from exc
        return _row_to_user(row) if row is not None else None

    def upsert(self, identity: Identity) -> Tuple[User, bool]:
        """Create the user on first login, otherwise refresh its profile.

        Returns ``(user, is_new_user)``. A concurrent first login for the same
        email loses the insert on the UNIQUE constraint and falls through to
        the update path, so exactly one caller sees ``is_new_user=True``.
        """
        email = normalize_email(identity.email)
        if not email:
            raise ValueError("identity has no email")
        now = to_iso(self._clock())
        name = identity.display_name or email

        try:
            with self.database.connection_scope() as con:
                existing = con.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
                if existing is None:
                    user_id = str(uuid.uuid4())
                    try:
                        con.execute(
                            """
INSERT INTO users(id, email, name, picture, email_verified, status, last_login_at, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, 'active', ?, ?, ?)
                            """,
                            (
                                user_id,
                                email,
                                name,
                                identity.avatar_url,
                                1 if identity.email_verified else 0,
                                now,
                                now,
                                now,
                            ),
                        )
                        con.commit()
                    except sqlite3.IntegrityError:
                        con.rollback()
                        logger.info("Concurrent first login for %s; updating existing user", email)
                    else:
                        row = con.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
                        return _row_to_user(row), True

                con.execute(
                    """
UPDATE users
SET name = ?, picture = ?, email_verified = ?, last_login_at = ?, updated_at = ?
WHERE email = ?
                    """,
                    (name, identity.avatar_url, 1 if identity.email_verified else 0, now, now, email),
                )
                con.commit()
                row = con.execute(f"SELECT {USER_COLUMNS} FROM users WHERE email = ?", (email,)).fetchone()
        except sqlite3.Error as exc:
            logger.exception("User upsert failed for %s", email)
            raise DatabaseError("User upsert failed") from exc
        if row is None:
            raise DatabaseError("User disappeared during upsert")
        return _row_to_user(row), False

    def set_status(self, user_id: str, status: str) -> Optional[User]:
        if status not in USER_STATUSES:
            raise ValueError(f"unknown user status: {status}")
        try:
            with self.database.connection_scope() as con:
                con.execute(
                    "UPDATE users SET status = ?, updated_at = ? WHERE id = ?",
                    (status, to_iso(self._clock()), user_id),
                )
                con.commit()
        except sqlite3.Error as exc:
            logger.exception("User status update failed")
            raise DatabaseError("User status update failed") from exc
        return self.find_by_id(user_id)
