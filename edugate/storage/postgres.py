from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from edugate.logging import get_logger
from edugate.storage.errors import ConstraintViolation
from edugate.storage.models import ActivityLogEntry, Session, User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        password_algo TEXT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        centre_id TEXT,
        curs_id TEXT,
        created_by UUID,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        access_token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_id_idx ON sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS sessions_expires_at_idx ON sessions (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id UUID PRIMARY KEY,
        action TEXT NOT NULL,
        table_name TEXT NOT NULL,
        record_id TEXT,
        user_id UUID REFERENCES users(id) ON DELETE SET NULL,
        centre_id TEXT,
        curs_id TEXT,
        ip_address TEXT NOT NULL DEFAULT '',
        user_agent TEXT NOT NULL DEFAULT '',
        old_data JSONB,
        new_data JSONB,
        timestamp TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "ALTER TABLE activity_logs ADD COLUMN IF NOT EXISTS centre_id TEXT",
    "ALTER TABLE activity_logs ADD COLUMN IF NOT EXISTS curs_id TEXT",
    "CREATE INDEX IF NOT EXISTS activity_logs_timestamp_idx ON activity_logs (timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS activity_logs_centre_id_idx ON activity_logs (centre_id)",
)

_USER_COLUMNS = (
    "id, email, first_name, last_name, role, status, centre_id, curs_id, "
    "created_by, last_login, created_at, updated_at"
)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store for users, sessions and the activity log.

    Every read goes to the database; nothing is cached in process so a
    revoked session is rejected on the very next request.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _opt_str(value: Any) -> Optional[str]:
        return str(value) if value is not None else None

    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row["role"],
            status=row["status"],
            centre_id=self._opt_str(row.get("centre_id")),
            curs_id=self._opt_str(row.get("curs_id")),
            created_by=self._opt_str(row.get("created_by")),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _row_to_session(self, row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _row_to_activity(self, row: dict) -> ActivityLogEntry:
        return ActivityLogEntry(
            id=str(row["id"]),
            action=row["action"],
            table_name=row["table_name"],
            record_id=row.get("record_id"),
            user_id=self._opt_str(row.get("user_id")),
            centre_id=row.get("centre_id"),
            curs_id=row.get("curs_id"),
            ip_address=row.get("ip_address") or "",
            user_agent=row.get("user_agent") or "",
            old_data=row.get("old_data"),
            new_data=row.get("new_data"),
            timestamp=row["timestamp"],
        )

    # users
    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: str,
        status: str = "ACTIVE",
        centre_id: Optional[str] = None,
        curs_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (id, email, first_name, last_name, role, status, centre_id, curs_id, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user_id,
                        email,
                        first_name,
                        last_name,
                        role,
                        status,
                        centre_id,
                        curs_id,
                        created_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET status = %s, updated_at = now() WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (status, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login = %s WHERE id = %s", (when, user_id)
            )

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET password_hash = %s, password_algo = %s, updated_at = now()
                WHERE id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM users WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row["password_hash"]:
            return None
        return str(row["password_hash"]), str(row["password_algo"] or "")

    # sessions
    def create_session(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, access_token, refresh_token, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.access_token,
                        sess.refresh_token,
                        sess.expires_at,
                        sess.created_at,
                        sess.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already issued", {"user_id": user_id})
        return sess

    def find_active_session(
        self, access_token: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sessions
                WHERE access_token = %s AND user_id = %s AND expires_at > %s
                """,
                (access_token, user_id, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_session_by_refresh_token(
        self, refresh_token: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sessions
                WHERE refresh_token = %s AND user_id = %s AND expires_at > %s
                """,
                (refresh_token, user_id, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def rotate_session(self, session_id: str, new_access_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE sessions SET access_token = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (new_access_token, session_id),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_sessions_by_refresh_token(self, refresh_token: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE refresh_token = %s", (refresh_token,)
            )
            return result.rowcount

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
            return result.rowcount

    def delete_expired_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= %s", (before,)
            )
            return result.rowcount

    # activity log
    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_logs (id, action, table_name, record_id, user_id, ip_address, user_agent, old_data, new_data, timestamp, centre_id, curs_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action,
                    entry.table_name,
                    entry.record_id,
                    entry.user_id,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.old_data) if entry.old_data is not None else None,
                    json.dumps(entry.new_data) if entry.new_data is not None else None,
                    entry.timestamp,
                    entry.centre_id,
                    entry.curs_id,
                ),
            )
        return entry

    def list_activity(
        self,
        *,
        user_id: Optional[str] = None,
        table_name: Optional[str] = None,
        action: Optional[str] = None,
        centre_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ActivityLogEntry]:
        # user_id is a UUID column; any other value cannot match a row
        if user_id is not None and not _is_uuid(user_id):
            return []
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if table_name is not None:
            clauses.append("table_name = %s")
            params.append(table_name)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        if centre_id is not None:
            clauses.append("centre_id = %s")
            params.append(centre_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM activity_logs {where} ORDER BY timestamp DESC LIMIT %s OFFSET %s",
                params,
            ).fetchall()
        return [self._row_to_activity(row) for row in rows]

    def delete_activity_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM activity_logs WHERE timestamp < %s", (cutoff,)
            )
            return result.rowcount
