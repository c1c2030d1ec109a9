from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, username: str, password_hash: str) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            password_hash=password_hash,
            created_at=now,
            updated_at=now,
        )


@dataclass(frozen=True)
class ActiveToken:
    expires_at: datetime


@dataclass(frozen=True)
class RevokedToken:
    pass


TokenState = Union[ActiveToken, RevokedToken]


@dataclass
class RefreshToken:
    id: str
    value: str
    user_id: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, value: str, expires_at: datetime) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            value=value,
            user_id=user_id,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )

    @property
    def state(self) -> TokenState:
        if self.revoked:
            return RevokedToken()
        return ActiveToken(expires_at=self.expires_at)


def is_usable(token: RefreshToken, now: Optional[datetime] = None) -> bool:
    """A refresh token is usable while it is active and not yet expired.

    Expiry is evaluated here, at use time; nothing sweeps expired rows.
    """
    state = token.state
    if isinstance(state, RevokedToken):
        return False
    return _as_utc(now or utcnow()) < _as_utc(state.expires_at)


def _as_utc(value: datetime) -> datetime:
    # Rows written by older drivers may be naive; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class SigningKey:
    kid: str
    public_key: str
    private_key: str
    created_at: datetime


@dataclass(frozen=True)
class AuthenticatedUser:
    """User view resolved from an access token; never carries the password hash."""

    id: str
    username: str

    @classmethod
    def from_user(cls, user: User) -> "AuthenticatedUser":
        return cls(id=user.id, username=user.username)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


def refresh_expiry(now: datetime, ttl_days: int) -> datetime:
    return now + timedelta(days=ttl_days)
