from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: str = "patient"
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    token_version: int = 1

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        token_version: int = 1,
        now: datetime | None = None,
    ) -> "Session":
        created = now or _utcnow()
        return cls(
            # 256 bits from the OS CSPRNG; ids are never reused
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=created,
            last_activity=created,
            ip_address=ip_address,
            user_agent=user_agent,
            is_active=True,
            token_version=token_version,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["last_activity"] = self.last_activity.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            created_at=_parse_dt(data["created_at"]),
            last_activity=_parse_dt(data.get("last_activity") or data["created_at"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            is_active=bool(data.get("is_active", True)),
            token_version=int(data.get("token_version", 1)),
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
    token_type: str = "bearer"
    user_id: Optional[str] = None
    role: Optional[str] = None
