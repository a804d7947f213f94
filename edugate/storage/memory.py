from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from edugate.logging import get_logger
from edugate.storage.errors import ConstraintViolation
from edugate.storage.models import (
    ActivityLogEntry,
    Session,
    User,
    UserAuthCredential,
    utcnow,
)


class MemoryStore:
    """In-process store persisted to a JSON snapshot after every mutation.

    Used for development and tests. State is reloaded from
    ``<fs_root>/state/memory_store.json`` on construction so sessions and
    audit entries survive a process restart.
    """

    def __init__(self, fs_root: str = "/tmp/edugate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.sessions: Dict[str, Session] = {}
        self.activity: List[ActivityLogEntry] = []
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if raw is None:
            return None
        value = datetime.fromisoformat(raw)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def ping(self) -> bool:
        return True

    # -- users -------------------------------------------------------------

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
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                status=status,
                centre_id=centre_id,
                curs_id=curs_id,
                created_by=created_by,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login = when
            self._persist_state()

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            # audit rows outlive the actor, matching ON DELETE SET NULL
            for entry in self.activity:
                if entry.user_id == user_id:
                    entry.user_id = None
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(user_id)
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else utcnow(),
                last_updated_at=utcnow() if existing else None,
            )
            self.users[user_id].updated_at = utcnow()
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    # -- sessions ----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def find_active_session(
        self, access_token: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.access_token == access_token
                    and s.user_id == user_id
                    and s.is_live(now)
                ),
                None,
            )

    def find_session_by_refresh_token(
        self, refresh_token: str, user_id: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token == refresh_token
                    and s.user_id == user_id
                    and s.is_live(now)
                ),
                None,
            )

    def rotate_session(self, session_id: str, new_access_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.access_token = new_access_token
            sess.updated_at = utcnow()
            self._persist_state()
            return sess

    def delete_sessions_by_refresh_token(self, refresh_token: str) -> int:
        return self._delete_sessions(lambda s: s.refresh_token == refresh_token)

    def delete_user_sessions(self, user_id: str) -> int:
        return self._delete_sessions(lambda s: s.user_id == user_id)

    def delete_expired_sessions(self, before: datetime) -> int:
        return self._delete_sessions(lambda s: not s.is_live(before))

    def _delete_sessions(self, predicate) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if predicate(sess)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- activity log ------------------------------------------------------

    def append_activity(self, entry: ActivityLogEntry) -> ActivityLogEntry:
        with self._data_lock:
            self.activity.append(entry)
            self._persist_state()
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
        with self._data_lock:
            matches = [
                e
                for e in self.activity
                if (user_id is None or e.user_id == user_id)
                and (centre_id is None or e.centre_id == centre_id)
                and (table_name is None or e.table_name == table_name)
                and (action is None or e.action == action)
            ]
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        return matches[offset : offset + limit]

    def delete_activity_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.activity if e.timestamp >= cutoff]
            removed = len(self.activity) - len(kept)
            if removed:
                self.activity = kept
                self._persist_state()
            return removed

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "credentials": [
                    self._serialize_credential(c) for c in self.credentials.values()
                ],
                "sessions": [self._serialize_session(s) for s in self.sessions.values()],
                "activity_logs": [self._serialize_activity(e) for e in self.activity],
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".json.tmp")
            try:
                tmp_path.write_text(json.dumps(state, indent=2))
                tmp_path.replace(path)
            except OSError as exc:
                raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.activity = [
            self._deserialize_activity(e) for e in data.get("activity_logs", [])
        ]
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role,
            "status": user.status,
            "centre_id": user.centre_id,
            "curs_id": user.curs_id,
            "created_by": user.created_by,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login": self._serialize_datetime(user.last_login),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=data.get("role", "ADMIN_CURS"),
            status=data.get("status", "ACTIVE"),
            centre_id=data.get("centre_id"),
            curs_id=data.get("curs_id"),
            created_by=data.get("created_by"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
            last_login=self._deserialize_datetime(data.get("last_login")),
        )

    def _serialize_credential(self, cred: UserAuthCredential) -> dict:
        return {
            "user_id": cred.user_id,
            "password_hash": cred.password_hash,
            "password_algo": cred.password_algo,
            "created_at": self._serialize_datetime(cred.created_at),
            "last_updated_at": self._serialize_datetime(cred.last_updated_at),
        }

    def _deserialize_credential(self, data: dict) -> UserAuthCredential:
        return UserAuthCredential(
            user_id=data["user_id"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", "argon2id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_updated_at=self._deserialize_datetime(data.get("last_updated_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_activity(self, entry: ActivityLogEntry) -> dict:
        return {
            "id": entry.id,
            "action": entry.action,
            "table_name": entry.table_name,
            "record_id": entry.record_id,
            "user_id": entry.user_id,
            "centre_id": entry.centre_id,
            "curs_id": entry.curs_id,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "old_data": entry.old_data,
            "new_data": entry.new_data,
            "timestamp": self._serialize_datetime(entry.timestamp),
        }

    def _deserialize_activity(self, data: dict) -> ActivityLogEntry:
        return ActivityLogEntry(
            id=data["id"],
            action=data["action"],
            table_name=data["table_name"],
            record_id=data.get("record_id"),
            user_id=data.get("user_id"),
            centre_id=data.get("centre_id"),
            curs_id=data.get("curs_id"),
            ip_address=data.get("ip_address", ""),
            user_agent=data.get("user_agent", ""),
            old_data=data.get("old_data"),
            new_data=data.get("new_data"),
            timestamp=self._deserialize_datetime(data["timestamp"]),
        )
