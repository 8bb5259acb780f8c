"""
auth/tokens.py -- Signed access/refresh token issuance and validation.

Security design decisions:
  JWT: python-jose, HS256 by default. Two token kinds, two keys:
       access  -- signed with SECRET_KEY, carries sub/email/role, short TTL.
       refresh -- signed with REFRESH_SECRET_KEY, carries sub and a fresh
                  random jti, long TTL.
       Every token also carries a "type" claim; validate() checks it, so a
       refresh token can never be replayed as an access token even if the two
       keys were ever configured identically.

  Access tokens are never persisted. Their validity derives solely from
       signature + expiry. Expiry is checked against the injected clock.

  Refresh tokens are tracked server-side by TokenStore. The store keeps
       HMAC-SHA256(REFRESH_SECRET_KEY, raw_token) rather than the token
       itself: the deterministic hash lets the store match the presented
       token exactly, and a database dump alone is useless to an attacker.

  validate() raises TokenExpired or TokenInvalid. It never returns None --
       callers decide how much of that distinction to expose (the request
       gate collapses both into Unauthenticated).

Keys and lifetimes are constructor arguments. Nothing here reads Settings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid
from auth.models import Role, TokenClaims

logger = logging.getLogger("retailmaster.auth.tokens")

ACCESS = "access"
REFRESH = "refresh"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Create and verify signed access and refresh tokens.

    Usage:
        issuer = TokenIssuer(access_secret, refresh_secret)
        token = issuer.issue_access_token(7, "alice@example.com", Role.STAFF)
        claims = issuer.validate(token, ACCESS)
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        algorithm: str = "HS256",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh tokens must be signed with distinct keys")
        if refresh_ttl <= access_ttl:
            raise ValueError("refresh_ttl must be longer than access_ttl")
        self._keys = {ACCESS: access_secret, REFRESH: refresh_secret}
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.algorithm = algorithm
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, user_id: int, email: str, role: Role | str) -> str:
        now = self._clock()
        payload = {
            "sub": str(user_id),
            "email": email,
            "role": Role(role).value,
            "type": ACCESS,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self._keys[ACCESS], algorithm=self.algorithm)

    def issue_refresh_token(self, user_id: int) -> tuple[str, str]:
        """Return (token, token_id). token_id is a fresh random jti."""
        now = self._clock()
        token_id = uuid.uuid4().hex
        payload = {
            "sub": str(user_id),
            "jti": token_id,
            "type": REFRESH,
            "iat": now,
            "exp": now + self.refresh_ttl,
        }
        return jwt.encode(payload, self._keys[REFRESH], algorithm=self.algorithm), token_id

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate(self, token: str, kind: str, allow_expired: bool = False) -> TokenClaims:
        """Verify signature, expiry and kind. Raise TokenExpired / TokenInvalid.

        Expiry is judged against the injected clock, the same one that drives
        refresh-record expiry and lockout windows, not python-jose's wall
        clock. allow_expired=True skips only the expiry check. Logout uses it
        so a client can still revoke a refresh token it let lapse.
        """
        if kind not in self._keys:
            raise ValueError(f"unknown token kind: {kind!r}")
        try:
            payload = jwt.decode(
                token,
                self._keys[kind],
                algorithms=[self.algorithm],
                options={"verify_exp": False, "require_exp": True},
            )
        except JWTError as exc:
            logger.debug("%s token rejected: %s", kind, exc)
            raise TokenInvalid() from exc
        claims = self._claims_from_payload(payload, kind)
        if not allow_expired and self._clock() >= claims.expires_at:
            logger.debug("%s token rejected: expired", kind)
            raise TokenExpired()
        return claims

    def hash_token(self, token: str) -> str:
        """HMAC-SHA256(refresh key, token) as hex -- the persisted fingerprint."""
        return hmac.new(self._keys[REFRESH].encode(), token.encode(), hashlib.sha256).hexdigest()

    def _claims_from_payload(self, payload: dict[str, Any], kind: str) -> TokenClaims:
        if payload.get("type") != kind:
            logger.debug("token rejected: expected %s, got type=%r", kind, payload.get("type"))
            raise TokenInvalid()
        try:
            user_id = int(payload["sub"])
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc) if "iat" in payload else None
            if kind == ACCESS:
                return TokenClaims(
                    user_id=user_id,
                    kind=kind,
                    expires_at=expires_at,
                    issued_at=issued_at,
                    email=str(payload["email"]),
                    role=Role(payload["role"]),
                )
            token_id = str(payload["jti"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.debug("%s token rejected: missing or malformed claims", kind)
            raise TokenInvalid() from exc
        if not token_id:
            raise TokenInvalid()
        return TokenClaims(
            user_id=user_id,
            kind=kind,
            expires_at=expires_at,
            issued_at=issued_at,
            token_id=token_id,
        )
