from __future__ import annotations

from typing import TYPE_CHECKING

from tokenward.config import Settings

if TYPE_CHECKING:
    from tokenward.service.tokens import TokenKind


class SecretManager:
    """Holds the static signing keys, one per token kind."""

    def __init__(self, access_secret: str, refresh_secret: str) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("both signing secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._keys = {
            "access": access_secret.encode("utf-8"),
            "refresh": refresh_secret.encode("utf-8"),
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretManager":
        return cls(settings.jwt_secret or "", settings.jwt_refresh_secret or "")

    def key_for(self, kind: "TokenKind | str") -> bytes:
        value = getattr(kind, "value", kind)
        try:
            return self._keys[value]
        except KeyError as exc:
            raise ValueError(f"unknown token kind: {value}") from exc

    def __repr__(self) -> str:
        return "SecretManager(access=***, refresh=***)"


__all__ = ["SecretManager"]
