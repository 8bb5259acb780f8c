"""
auth/token_store.py -- Refresh-token lifecycle: issue, rotate, revoke.

Every refresh token handed out has a RefreshTokenRecord. A refresh token is
usable exactly once: refresh() revokes the presented record and issues a new
pair in one atomic repository call (rotate_refresh_token), so two concurrent
refreshes racing on the same token cannot both succeed.

Reuse detection: presenting a token whose record is already revoked means
either the legitimate client or an attacker is holding a stale copy. We
cannot tell which, so every refresh token of that user is revoked and the
user must log in again. The loser of a genuine refresh race hits the same
path.

Access tokens are not tracked here. They expire on their own.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from auth.errors import AccountDeactivated, TokenError, TokenInvalid
from auth.models import RefreshTokenRecord, TokenPair, User
from auth.store import AuthRepository
from auth.tokens import REFRESH, TokenIssuer, utcnow

logger = logging.getLogger("retailmaster.auth.tokens")


class TokenStore:
    """Persisted refresh tokens on top of TokenIssuer.

    Usage:
        tokens = TokenStore(issuer, repository)
        pair = tokens.issue_pair(user)
        pair = tokens.refresh(pair.refresh_token)
        tokens.revoke(user.id, pair.refresh_token)
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        repository: AuthRepository,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.issuer = issuer
        self.repository = repository
        self._clock = clock

    def issue_pair(self, user: User) -> TokenPair:
        """Mint an access/refresh pair and persist the refresh record."""
        pair, record = self._mint(user)
        self.repository.append_refresh_token(record)
        return pair

    def refresh(self, old_refresh_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair.

        Raises TokenExpired / TokenInvalid for a bad token, TokenInvalid for an
        unknown, revoked or expired record, AccountDeactivated if the owner has
        been deactivated since the token was issued.
        """
        claims = self.issuer.validate(old_refresh_token, REFRESH)
        token_hash = self.issuer.hash_token(old_refresh_token)
        now = self._clock()

        user = self.repository.get_by_id(claims.user_id)
        if user is None:
            logger.info("Refresh rejected: user_id=%s no longer exists", claims.user_id)
            raise TokenInvalid()
        if not user.is_active:
            logger.info("Refresh rejected: user_id=%s is deactivated", user.id)
            raise AccountDeactivated()

        pair, new_record = self._mint(user)
        if self.repository.rotate_refresh_token(user.id, claims.token_id, token_hash, now, new_record):
            logger.debug("Rotated refresh token for user_id=%s", user.id)
            return pair

        self._diagnose_rejected(claims.token_id, user.id, token_hash, now)
        raise TokenInvalid()

    def revoke(self, user_id: int, refresh_token: str) -> bool:
        """Revoke the record behind refresh_token if it belongs to user_id.

        Used on logout. An expired token is still revoked (its signature must
        be good). Returns False for a token that was not live.
        """
        try:
            claims = self.issuer.validate(refresh_token, REFRESH, allow_expired=True)
        except TokenError:
            return False
        if claims.user_id != user_id:
            logger.warning("Logout for user_id=%s presented a refresh token of another user", user_id)
            return False
        return self.repository.revoke_refresh_token(user_id, claims.token_id)

    def revoke_all(self, user_id: int) -> int:
        count = self.repository.revoke_all_refresh_tokens(user_id)
        logger.info("Revoked %d refresh token(s) for user_id=%s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mint(self, user: User) -> tuple[TokenPair, RefreshTokenRecord]:
        access = self.issuer.issue_access_token(user.id, user.email, user.role)
        refresh, token_id = self.issuer.issue_refresh_token(user.id)
        now = self._clock()
        record = RefreshTokenRecord(
            token_id=token_id,
            user_id=user.id,
            token_hash=self.issuer.hash_token(refresh),
            expires_at=now + self.issuer.refresh_ttl,
            created_at=now,
        )
        pair = TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_in=int(self.issuer.access_ttl.total_seconds()),
            refresh_expires_in=int(self.issuer.refresh_ttl.total_seconds()),
        )
        return pair, record

    def _diagnose_rejected(self, token_id: str, user_id: int, token_hash: str, now: datetime) -> None:
        """Log why rotation matched nothing; revoke everything on replay."""
        record = self.repository.get_refresh_token(token_id)
        if record is None or record.user_id != user_id or record.token_hash != token_hash:
            logger.info("Refresh rejected for user_id=%s: no matching record", user_id)
        elif record.revoked:
            logger.warning(
                "Refresh token reuse detected for user_id=%s (token_id=%s); revoking all sessions",
                user_id,
                token_id,
            )
            self.revoke_all(user_id)
        elif record.is_expired(now):
            logger.info("Refresh rejected for user_id=%s: record expired", user_id)
        else:
            logger.info("Refresh rejected for user_id=%s: record changed concurrently", user_id)
