from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any, List, Optional, Protocol

from edugate.logging import get_logger
from edugate.storage.models import ActivityLogEntry, utcnow

logger = get_logger(__name__)


class Action(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    READ = "READ"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    ACCESS_DENIED = "ACCESS_DENIED"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    UNKNOWN = "UNKNOWN"


_METHOD_ACTIONS = {
    "POST": Action.CREATE,
    "PUT": Action.UPDATE,
    "PATCH": Action.UPDATE,
    "DELETE": Action.DELETE,
    "GET": Action.READ,
}
_SNAPSHOT_METHODS = {"POST", "PUT", "PATCH"}
_NON_RECORD_SEGMENTS = {"search", "stats"}
_SCRUBBED_KEYS = ("password", "token", "secret")
# tables whose record id is itself a scope id
_SCOPE_TABLES = {"centres": "centre_id", "cursos": "curs_id"}


class ActivityStore(Protocol):
    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry: ...

    def list_activity(
        self,
        *,
        user_id: Optional[str] = None,
        table_name: Optional[str] = None,
        action: Optional[str] = None,
        centre_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ActivityLogEntry]: ...

    def delete_activity_before(self, cutoff) -> int: ...


def action_for_method(method: str) -> Action:
    return _METHOD_ACTIONS.get(method.upper(), Action.UNKNOWN)


def scrub_snapshot(body: Any) -> Optional[dict]:
    """Drop credential-like keys from a request body before it is stored."""
    if not isinstance(body, dict):
        return None
    return {
        key: value
        for key, value in body.items()
        if not any(marker in key.lower() for marker in _SCRUBBED_KEYS)
    }


def derive_scope(
    table: str, record_id: Optional[str], body: Any = None
) -> tuple[Optional[str], Optional[str]]:
    """Return the ``(centre_id, curs_id)`` an audited request touches.

    ``/centres/<id>`` and ``/cursos/<id>`` name the scope directly; otherwise
    ``centreId`` and ``cursId`` are taken from the request body.
    """
    scope: dict[str, Optional[str]] = {"centre_id": None, "curs_id": None}
    if record_id and table in _SCOPE_TABLES:
        scope[_SCOPE_TABLES[table]] = record_id
    if isinstance(body, dict):
        for key, body_key in (("centre_id", "centreId"), ("curs_id", "cursId")):
            value = body.get(body_key)
            if scope[key] is None and isinstance(value, str) and value:
                scope[key] = value
    return scope["centre_id"], scope["curs_id"]


class ActivityRecorder:
    """Durable audit trail that never fails the request that triggered it.

    Writes are scheduled by the API layer as FastAPI background tasks, which
    run after the response has been sent. :meth:`record` swallows and logs
    every storage error.
    """

    def __init__(self, store: ActivityStore, *, api_prefix: str = "/api") -> None:
        self.store = store
        self.api_prefix = api_prefix.rstrip("/")

    def record(self, entry: ActivityLogEntry) -> Optional[ActivityLogEntry]:
        try:
            return self.store.append_activity(entry)
        except Exception as exc:
            logger.error(
                "activity_log_failed",
                action=entry.action,
                table_name=entry.table_name,
                user_id=entry.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def derive_target(self, path: str) -> tuple[str, Optional[str]]:
        """Guess ``(table, record_id)`` from ``<prefix>/<table>/<id>/...``.

        Only a fallback for handlers that do not tag their writes explicitly;
        nested routes such as ``/auth/verify`` come out as table ``auth``
        with record ``verify``.
        """
        prefix = self.api_prefix
        if prefix and (path == prefix or path.startswith(prefix + "/")):
            path = path[len(prefix) :]
        segments = [segment for segment in path.split("/") if segment]
        table = segments[0] if segments else "unknown"
        record_id = segments[1] if len(segments) > 1 else None
        if record_id in _NON_RECORD_SEGMENTS:
            record_id = None
        return table, record_id

    def entry_from_request(
        self,
        *,
        method: str,
        path: str,
        user_id: Optional[str],
        ip_address: str = "",
        user_agent: str = "",
        body: Any = None,
        table: Optional[str] = None,
        record_id: Optional[str] = None,
        centre_id: Optional[str] = None,
        curs_id: Optional[str] = None,
    ) -> ActivityLogEntry:
        derived_table, derived_id = self.derive_target(path)
        snapshot = scrub_snapshot(body) if method.upper() in _SNAPSHOT_METHODS else None
        table_name = table or derived_table
        target_id = record_id if table else (record_id or derived_id)
        derived_centre, derived_curs = derive_scope(table_name, target_id, body)
        return ActivityLogEntry.new(
            action=action_for_method(method).value,
            table_name=table_name,
            record_id=target_id,
            user_id=user_id,
            centre_id=centre_id or derived_centre,
            curs_id=curs_id or derived_curs,
            ip_address=ip_address,
            user_agent=user_agent,
            new_data=snapshot,
        )

    def log_auth_event(
        self,
        user_id: str,
        action: Action,
        *,
        ip_address: str = "",
        user_agent: str = "",
    ) -> Optional[ActivityLogEntry]:
        return self.record(
            ActivityLogEntry.new(
                action=action.value,
                table_name="users",
                record_id=user_id,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )

    def log_password_change(
        self, user_id: str, *, ip_address: str = "", user_agent: str = ""
    ) -> Optional[ActivityLogEntry]:
        return self.log_auth_event(
            user_id, Action.PASSWORD_CHANGE, ip_address=ip_address, user_agent=user_agent
        )

    def log_access_denied(
        self,
        user_id: str,
        resource: str,
        *,
        reason: Optional[str] = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> Optional[ActivityLogEntry]:
        return self.record(
            ActivityLogEntry.new(
                action=Action.ACCESS_DENIED.value,
                table_name=resource,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                new_data={"reason": reason} if reason else None,
            )
        )

    def log_system_error(
        self,
        error: BaseException,
        *,
        user_id: Optional[str] = None,
        path: Optional[str] = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> Optional[ActivityLogEntry]:
        return self.record(
            ActivityLogEntry.new(
                action=Action.SYSTEM_ERROR.value,
                table_name="system",
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                new_data={
                    "error": type(error).__name__,
                    "message": str(error),
                    "path": path,
                },
            )
        )

    def list_recent(
        self,
        *,
        user_id: Optional[str] = None,
        table_name: Optional[str] = None,
        action: Optional[str] = None,
        centre_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ActivityLogEntry]:
        return self.store.list_activity(
            user_id=user_id,
            table_name=table_name,
            action=action,
            centre_id=centre_id,
            limit=max(0, limit),
            offset=max(0, offset),
        )

    def cleanup(self, retention_days: int = 90) -> int:
        cutoff = utcnow() - timedelta(days=retention_days)
        removed = self.store.delete_activity_before(cutoff)
        logger.info(
            "activity_log_cleanup",
            retention_days=retention_days,
            removed=removed,
        )
        return removed
