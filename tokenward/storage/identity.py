from __future__ import annotations

from typing import Any, Optional, Protocol

from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import Identity

# Fields a caller may change through ``update``
UPDATABLE_FIELDS = frozenset({"email", "name", "password_hash"})


class IdentityStore(Protocol):
    """User records keyed by id and by unique, case-insensitive email."""

    backend: str

    def find_by_id(self, user_id: str) -> Optional[Identity]: ...

    def find_by_email(self, email: str) -> Optional[Identity]: ...

    def find_by_link(self, provider: str, provider_id: str) -> Optional[Identity]: ...

    def create(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        link: Optional[tuple[str, str]] = None,
    ) -> Identity: ...

    def update(self, user_id: str, fields: dict[str, Any]) -> Optional[Identity]: ...

    def delete(self, user_id: str) -> bool: ...

    def add_link(self, user_id: str, provider: str, provider_id: str) -> Identity: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


def check_new_identity(
    password_hash: Optional[str], link: Optional[tuple[str, str]]
) -> None:
    """Reject identities that could never authenticate."""
    if not password_hash and not link:
        raise ConstraintViolation(
            "identity requires a password hash or an external link",
            {"field": "password_hash"},
        )
    if link and (not link[0] or not link[1]):
        raise ConstraintViolation("external link is incomplete", {"field": "link"})


def check_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ConstraintViolation(
            "fields cannot be updated", {"fields": sorted(unknown)}
        )


__all__ = ["IdentityStore", "UPDATABLE_FIELDS", "check_new_identity", "check_update_fields"]
