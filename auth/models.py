from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from auth.errors import TokenValidationError

_REQUIRED_FIELDS = ("access_token", "user_id", "generated_at")
_OPTIONAL_FIELDS = ("refresh_token", "user_name", "expires_at")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format as ``YYYY-MM-DDTHH:MM:SS.mmmZ``, the shape Kite tooling writes."""
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith(("Z", "z")):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as error:
        raise TokenValidationError(f"Invalid ISO-8601 timestamp: {value!r}") from error
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TokenRecord:
    access_token: str
    user_id: str
    refresh_token: str | None = None
    user_name: str | None = None
    generated_at: str | None = None
    expires_at: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenRecord":
        if not isinstance(payload, dict):
            raise TokenValidationError("Token file must contain a JSON object.")

        for key in _REQUIRED_FIELDS:
            value = payload.get(key)
            if not isinstance(value, str) or not value.strip():
                raise TokenValidationError(f"Token data is missing {key}.")
        for key in _OPTIONAL_FIELDS:
            value = payload.get(key)
            if value is not None and not isinstance(value, str):
                raise TokenValidationError(f"Token field {key} must be a string.")

        parse_timestamp(payload["generated_at"])
        if payload.get("expires_at"):
            parse_timestamp(payload["expires_at"])

        return cls(
            access_token=payload["access_token"],
            user_id=payload["user_id"],
            refresh_token=payload.get("refresh_token"),
            user_name=payload.get("user_name"),
            generated_at=payload["generated_at"],
            expires_at=payload.get("expires_at"),
        )

    def to_payload(self) -> dict[str, str]:
        payload: dict[str, str] = {
            "access_token": self.access_token,
            "user_id": self.user_id,
        }
        for key in ("refresh_token", "user_name", "generated_at", "expires_at"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @property
    def display_name(self) -> str:
        return self.user_name or self.user_id


@dataclass
class SessionResponse:
    access_token: str
    user_id: str
    refresh_token: str | None = None
    user_name: str | None = None


@dataclass
class PendingAuthAttempt:
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle | None
    listener: Any
    created_at: float
    callback_received: bool = False
