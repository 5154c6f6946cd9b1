from __future__ import annotations

import threading
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, Optional

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.identity import check_new_identity, check_update_fields
from tokenward.storage.models import (
    ExternalIdentityLink,
    Identity,
    RefreshRecord,
    normalize_email,
    utcnow,
)


def _snapshot(identity: Identity) -> Identity:
    # callers get a copy so they cannot mutate stored state
    return replace(identity, links=list(identity.links))


class MemoryStore:
    """In-process identity store used for tests and single-node development."""

    backend = "memory"

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Identity] = {}
        self.links: Dict[tuple[str, str], ExternalIdentityLink] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    def _email_taken(self, email: str, *, except_id: Optional[str] = None) -> bool:
        return any(
            user.email == email and user.id != except_id for user in self.users.values()
        )

    def find_by_id(self, user_id: str) -> Optional[Identity]:
        with self._data_lock:
            user = self.users.get(user_id)
            return _snapshot(user) if user else None

    def find_by_email(self, email: str) -> Optional[Identity]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return _snapshot(user) if user else None

    def find_by_link(self, provider: str, provider_id: str) -> Optional[Identity]:
        with self._data_lock:
            link = self.links.get((provider, provider_id))
            if not link:
                return None
            user = self.users.get(link.user_id)
            return _snapshot(user) if user else None

    def create(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        link: Optional[tuple[str, str]] = None,
    ) -> Identity:
        check_new_identity(password_hash, link)
        with self._data_lock:
            identity = Identity.new(email, name=name, password_hash=password_hash)
            if self._email_taken(identity.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if link and link in self.links:
                raise ConstraintViolation(
                    "external identity already linked", {"field": "provider_id"}
                )
            self.users[identity.id] = identity
            if link:
                self._attach_link(identity, *link)
            return _snapshot(identity)

    def _attach_link(self, identity: Identity, provider: str, provider_id: str) -> None:
        mapping = ExternalIdentityLink(
            provider=provider, provider_id=provider_id, user_id=identity.id
        )
        self.links[(provider, provider_id)] = mapping
        identity.links.append(mapping)

    def update(self, user_id: str, fields: dict[str, Any]) -> Optional[Identity]:
        check_update_fields(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            changes = dict(fields)
            if "email" in changes:
                changes["email"] = normalize_email(changes["email"])
                if self._email_taken(changes["email"], except_id=user_id):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "password_hash" in changes and not changes["password_hash"] and not user.links:
                raise ConstraintViolation(
                    "identity requires a password hash or an external link",
                    {"field": "password_hash"},
                )
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return _snapshot(user)

    def delete(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.links = {
                key: link for key, link in self.links.items() if link.user_id != user_id
            }
            return True

    def add_link(self, user_id: str, provider: str, provider_id: str) -> Identity:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            existing = self.links.get((provider, provider_id))
            if existing:
                # same semantics as ON CONFLICT DO NOTHING
                if existing.user_id != user_id:
                    raise ConstraintViolation(
                        "external identity already linked", {"field": "provider_id"}
                    )
                return _snapshot(user)
            self._attach_link(user, provider, provider_id)
            user.updated_at = utcnow()
            return _snapshot(user)


class MemoryTokenStore:
    """Durable-strategy refresh store held in process memory.

    Same contract as the Postgres table: one record per subject, rotation is a
    compare-and-replace under a lock so concurrent rotations of the same token
    cannot both succeed.
    """

    backend = "memory"
    supports_revocation = True

    def __init__(self) -> None:
        self.records: Dict[str, RefreshRecord] = {}
        self._lock = threading.Lock()

    async def put(self, subject: str, token: str, ttl: timedelta) -> None:
        with self._lock:
            self.records[subject] = RefreshRecord.new(subject, token, ttl)

    async def validate(self, subject: str, token: str) -> bool:
        with self._lock:
            record = self.records.get(subject)
            return bool(record and record.token == token and record.is_live())

    async def rotate(
        self, subject: str, old_token: str, new_token: str, ttl: timedelta
    ) -> bool:
        with self._lock:
            record = self.records.get(subject)
            if not record or record.token != old_token or not record.is_live():
                return False
            self.records[subject] = RefreshRecord.new(subject, new_token, ttl)
            return True

    async def revoke(self, subject: str) -> None:
        with self._lock:
            self.records.pop(subject, None)

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None
