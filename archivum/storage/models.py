from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(IntEnum):
    """Account roles; numeric values match the persisted role ids."""

    ADMIN = 1
    CURATOR = 2
    RESEARCHER = 3
    VISITOR = 4

    @property
    def is_privileged(self) -> bool:
        """Admin and Curator accounts must use two-factor authentication."""
        return self in (Role.ADMIN, Role.CURATOR)

    @classmethod
    def parse(cls, value: "Role | int | str") -> "Role":
        if isinstance(value, Role):
            return value
        if isinstance(value, str) and not value.isdigit():
            return cls[value.strip().upper()]
        return cls(int(value))


@dataclass
class User:
    id: str
    email: str
    name: str
    role: Role = Role.VISITOR
    password_hash: str = ""
    biography: Optional[str] = None
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, ttl_days: int = 30) -> "RefreshToken":
        now = utcnow()
        return cls(
            token=secrets.token_hex(40),
            user_id=user_id,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
