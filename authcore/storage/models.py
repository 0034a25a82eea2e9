from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, username: str, password_hash: str) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            password_hash=password_hash,
            created_at=now,
            last_updated_at=now,
        )

    def to_cache(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "password_hash": self.password_hash,
            "is_verified": self.is_verified,
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            username=data["username"],
            password_hash=data["password_hash"],
            is_verified=bool(data.get("is_verified", False)),
            created_at=_parse_ts(data["created_at"]),
            last_updated_at=_parse_ts(data["last_updated_at"]),
        )


@dataclass
class Session:
    id: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, duration: timedelta) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            expires_at=now + duration,
            created_at=now,
            last_updated_at=now,
        )

    def is_expired(self, now: datetime, *, grace: timedelta = timedelta(0)) -> bool:
        """Whether the session is past its expiry, allowing ``grace`` of overrun."""
        return _parse_ts(self.expires_at) + grace < now

    def to_cache(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            expires_at=_parse_ts(data["expires_at"]),
            created_at=_parse_ts(data["created_at"]),
            last_updated_at=_parse_ts(data["last_updated_at"]),
        )
