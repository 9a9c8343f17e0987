from __future__ import annotations

import math
import os
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

CUSTOMER_TRACK = "customer"
STAFF_TRACK = "staff"
TRACKS = (CUSTOMER_TRACK, STAFF_TRACK)

STAFF_ROLES = ("admin", "instructor")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return _as_utc(raw)
    if isinstance(raw, str):
        return _as_utc(datetime.fromisoformat(raw))
    raise ValueError(f"invalid timestamp: {raw!r}")


def generate_uuid7() -> str:
    """Generate a time-ordered UUID (version 7 layout).

    The leading 48 bits are the unix time in milliseconds so that ids sort
    by creation time and keep B-tree inserts append-mostly.
    """
    timestamp_ms = time.time_ns() // 1_000_000
    raw = bytearray(timestamp_ms.to_bytes(6, "big") + os.urandom(10))
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class Customer:
    id: str
    email: str
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    requires_password_reset: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "avatar_url": self.avatar_url,
            "requires_password_reset": self.requires_password_reset,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_view(cls, view: Dict[str, Any]) -> "Customer":
        return cls(
            id=str(view["id"]),
            email=view["email"],
            first_name=view.get("first_name"),
            last_name=view.get("last_name"),
            avatar_url=view.get("avatar_url"),
            requires_password_reset=bool(view.get("requires_password_reset", False)),
            created_at=_parse_datetime(view.get("created_at") or utcnow()),
        )


@dataclass
class Staff:
    id: str
    email: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    role: str = "instructor"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_view(cls, view: Dict[str, Any]) -> "Staff":
        return cls(
            id=str(view["id"]),
            email=view["email"],
            name=view.get("name"),
            role=view.get("role", "instructor"),
            is_active=bool(view.get("is_active", True)),
            created_at=_parse_datetime(view.get("created_at") or utcnow()),
        )


@dataclass
class Session:
    id: str
    principal_id: str
    created_at: datetime
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(cls, principal_id: str) -> "Session":
        return cls(id=generate_uuid7(), principal_id=principal_id, created_at=utcnow())

    def is_active(self, max_age_days: int, now: Optional[datetime] = None) -> bool:
        """Active iff never revoked and not older than ``max_age_days``."""
        now = now or utcnow()
        if self.revoked_at is not None:
            return False
        return _as_utc(self.created_at) > now - timedelta(days=max_age_days)


@dataclass
class CachedSession:
    principal_id: str
    principal: Dict[str, Any]
    cached_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "principal_id": self.principal_id,
            "principal": self.principal,
            "cached_at": self.cached_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "CachedSession":
        return cls(
            principal_id=str(data["principal_id"]),
            principal=dict(data["principal"]),
            cached_at=_parse_datetime(data["cached_at"]),
        )


@dataclass
class OAuthState:
    provider: str
    code_verifier: str
    redirect_uri: str
    created_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "code_verifier": self.code_verifier,
            "redirect_uri": self.redirect_uri,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "OAuthState":
        return cls(
            provider=data["provider"],
            code_verifier=data["code_verifier"],
            redirect_uri=data["redirect_uri"],
            created_at=_parse_datetime(data["created_at"]),
        )


@dataclass
class ResetTokenRecord:
    email: str
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ResetTokenRecord":
        return cls(
            email=data["email"],
            created_at=_parse_datetime(data["created_at"]),
            attempts=int(data.get("attempts", 0)),
        )


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil((self.reset_at - utcnow()).total_seconds()))


@dataclass
class OAuthIdentity:
    provider: str
    provider_account_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
