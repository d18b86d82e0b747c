from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

ROLES = ("user", "admin", "trainer")

_TIMESTAMP_FIELDS = (
    "lock_until",
    "password_changed_at",
    "reset_code_expires_at",
    "last_login_at",
    "created_at",
    "updated_at",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    return value.timestamp()


def from_epoch(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def defaced_identifiers(account_id: str) -> Tuple[str, str]:
    """Username and email given to a deactivated account.

    The colon and the dotless domain fail registration validation, so no live
    account can ever hold either value.
    """
    return f"deleted:{account_id}", f"deleted+{account_id}@invalid"


@dataclass
class Account:
    id: str
    username: str
    email: str
    password_hash: str
    phone: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    failed_attempts: int = 0
    lock_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    reset_code_hash: Optional[str] = None
    reset_code_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        *,
        phone: Optional[str] = None,
        role: str = "user",
        now: Optional[datetime] = None,
    ) -> "Account":
        ts = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email.strip().lower(),
            password_hash=password_hash,
            phone=phone,
            role=role,
            password_changed_at=ts,
            created_at=ts,
            updated_at=ts,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def to_record(self) -> Dict[str, Any]:
        """Flat serialisable form used by the JSON snapshot and Redis hashes."""
        record: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _TIMESTAMP_FIELDS:
                value = to_epoch(value)
            record[f.name] = value
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Account":
        data = dict(record)
        for name in _TIMESTAMP_FIELDS:
            data[name] = from_epoch(data.get(name))
        if data.get("created_at") is None:
            data["created_at"] = utcnow()
        if data.get("updated_at") is None:
            data["updated_at"] = data["created_at"]
        data["failed_attempts"] = int(data.get("failed_attempts") or 0)
        is_active = data.get("is_active", True)
        if isinstance(is_active, str):
            is_active = is_active in {"1", "true", "True"}
        data["is_active"] = bool(is_active)
        for name in ("phone", "reset_code_hash"):
            if data.get(name) == "":
                data[name] = None
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class LockState:
    """Counter and lock expiry after a failed attempt was recorded."""

    failed_attempts: int
    lock_until: Optional[datetime] = None

    @property
    def locked(self) -> bool:
        return self.lock_until is not None
