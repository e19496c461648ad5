from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    role: str = "user"
    password_hash: Optional[str] = None
    is_verified: bool = False
    is_suspended: bool = False
    # The single refresh token currently honored for this user
    refresh_token: Optional[str] = None
    google_id: Optional[str] = None
    avatar: Optional[str] = None
    last_login: Optional[datetime] = None
    last_active: Optional[datetime] = None
    login_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "user",
        password_hash: Optional[str] = None,
        is_verified: bool = False,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            role=role,
            password_hash=password_hash,
            is_verified=is_verified,
            google_id=google_id,
            avatar=avatar,
        )


@dataclass(frozen=True)
class UserView:
    """Redacted user projection handed to request handlers and clients.

    Password hash and refresh token never leave the store through this type.
    """

    id: str
    email: str
    name: Optional[str]
    role: str
    is_verified: bool
    is_suspended: bool
    google_id: Optional[str]
    avatar: Optional[str]
    last_login: Optional[datetime]
    last_active: Optional[datetime]
    login_count: int
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserView":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_verified=user.is_verified,
            is_suspended=user.is_suspended,
            google_id=user.google_id,
            avatar=user.avatar,
            last_login=user.last_login,
            last_active=user.last_active,
            login_count=user.login_count,
            created_at=user.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_verified": self.is_verified,
            "is_suspended": self.is_suspended,
            "google_id": self.google_id,
            "avatar": self.avatar,
            "last_login": self.last_login,
            "last_active": self.last_active,
            "login_count": self.login_count,
            "created_at": self.created_at,
        }
