from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    role: str = "ADMIN_CURS"
    status: str = "ACTIVE"
    centre_id: Optional[str] = None
    curs_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Session:
    """Server-side record binding a token pair to a user.

    ``expires_at`` is an exclusive bound: a session is live only while
    ``now < expires_at``.
    """

    id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class ActivityLogEntry:
    """Immutable audit record of a request or auth event."""

    id: str
    action: str
    table_name: str
    user_id: Optional[str] = None
    record_id: Optional[str] = None
    centre_id: Optional[str] = None
    curs_id: Optional[str] = None
    ip_address: str = ""
    user_agent: str = ""
    old_data: Dict | None = None
    new_data: Dict | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, action: str, table_name: str, **kwargs) -> "ActivityLogEntry":
        return cls(id=str(uuid.uuid4()), action=action, table_name=table_name, **kwargs)
