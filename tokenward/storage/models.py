from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class ExternalIdentityLink:
    provider: str
    provider_id: str
    user_id: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Identity:
    id: str
    email: str
    name: Optional[str] = None
    password_hash: Optional[str] = None
    links: List[ExternalIdentityLink] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> "Identity":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            name=name,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def public_view(self) -> dict:
        """Fields safe to hand back to a caller; never includes the hash."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "providers": sorted({link.provider for link in self.links}),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class RefreshRecord:
    user_id: str
    token: str
    expires_at: datetime

    @classmethod
    def new(cls, user_id: str, token: str, ttl: timedelta) -> "RefreshRecord":
        return cls(user_id=user_id, token=token, expires_at=utcnow() + ttl)

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or utcnow())
