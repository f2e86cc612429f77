"""Shared types for integrations and their tokens."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator


class Provider(str, Enum):
    """External providers a user can connect."""
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    ZOOM = "zoom"
    CALDAV = "caldav"


class IntegrationStatus(str, Enum):
    """Status of a user's integration connection."""
    CONNECTED = "connected"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC (naive values are UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TokenSet(BaseModel):
    """Token tuple as handed out by providers and the token store."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: list[str] = []

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @field_validator("scope", mode="before")
    @classmethod
    def _split_scope(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        return value


class EncryptedTokenBlob(BaseModel):
    """Encrypted-at-rest representation of a token tuple (hex encoded)."""
    ciphertext: str
    iv: str
    auth_tag: str
    version: str = "1.0"
