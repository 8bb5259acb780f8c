"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own
persistence, services own behaviour; these types only carry shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """The three account roles. Every User carries exactly one."""

    ADMIN = "admin"
    STAFF = "staff"
    USER = "user"


@dataclass
class User:
    """A RetailMaster account as stored by the repository.

    password_hash is a bcrypt string (salt embedded). It never leaves the
    auth layer: API response models are built field by field and have no
    slot for it.

    login_attempts / lock_until are owned by AccountLockGuard and only ever
    written through the store's atomic login-state methods.
    """

    username: str
    email: str
    password_hash: str
    role: Role = Role.USER
    id: int | None = None
    is_active: bool = True
    login_attempts: int = 0
    lock_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and now < self.lock_until


@dataclass
class LoginState:
    """Post-update snapshot of the lockout columns returned by the store."""

    login_attempts: int
    lock_until: datetime | None = None


@dataclass
class RefreshTokenRecord:
    """Server-side record of one issued refresh token.

    token_hash is HMAC-SHA256(refresh key, raw token). The raw token is never
    persisted. token_id is the JWT "jti" claim and is unique per issuance.
    """

    token_id: str
    user_id: int
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class Identity:
    """Request-scoped answer to "who is making this call".

    Produced by AuthenticationGate and passed explicitly to handlers and
    policy checks. Immutable so nothing downstream can escalate it.
    """

    id: int
    email: str
    role: Role
    is_active: bool = True


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of an access or refresh token."""

    user_id: int
    kind: str  # "access" or "refresh"
    expires_at: datetime
    issued_at: datetime | None = None
    email: str | None = None  # access tokens only
    role: Role | None = None  # access tokens only
    token_id: str | None = None  # refresh tokens only


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a successful credential login."""

    identity: Identity
    tokens: TokenPair
    username: str
