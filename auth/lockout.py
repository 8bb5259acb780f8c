"""
auth/lockout.py -- Brute-force protection for password logins.

State machine per account, derived from (login_attempts, lock_until):

    Active --(failure, attempts reach threshold)--> Locked
    Locked --(attempt while now < lock_until)--> Locked   [rejected, verifier NOT run]
    Locked --(attempt at/after lock_until)--> Active      [attempt judged on its merits]

While locked the attempts counter is frozen: rejected attempts are not
counted. The first attempt after expiry starts a fresh count, so a failure
then leaves attempts == 1, not threshold + 1.

The increment and the lock transition happen in one atomic repository call
(AuthRepository.record_login_failure). Concurrent failures that were all
admitted before the lock landed are every one of them counted.
The success write is conditional on the row being unlocked and active at
write time, so a stale snapshot cannot clear a lock set concurrently.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import AccountDeactivated, AccountLocked
from auth.models import User
from auth.passwords import PasswordVerifier
from auth.store import AuthRepository
from auth.tokens import utcnow

logger = logging.getLogger("retailmaster.auth")

THRESHOLD = 5
LOCK_DURATION = timedelta(minutes=5)
ATTEMPTS_CEILING = 1000


class AccountLockGuard:
    """Run a password check through the lockout state machine.

    check() returns True/False for a correct/incorrect password, or raises
    AccountLocked without touching the verifier when the account is inside
    its lock window. A correct password for a deactivated account raises
    AccountDeactivated and leaves the lockout columns and last_login alone.
    """

    def __init__(
        self,
        repository: AuthRepository,
        verifier: PasswordVerifier,
        threshold: int = THRESHOLD,
        lock_duration: timedelta = LOCK_DURATION,
        ceiling: int = ATTEMPTS_CEILING,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        if lock_duration <= timedelta(0):
            raise ValueError("lock_duration must be positive")
        self.repository = repository
        self.verifier = verifier
        self.threshold = threshold
        self.lock_duration = lock_duration
        self.ceiling = max(ceiling, threshold)
        self._clock = clock

    def check(self, user: User, password: str) -> bool:
        now = self._clock()
        if user.is_locked(now):
            self._reject_locked(user, now)

        if self.verifier.verify(password, user.password_hash):
            if not user.is_active:
                logger.info("Login refused for user_id=%s: account deactivated", user.id)
                raise AccountDeactivated()
            if self.repository.record_login_success(user.id, self._clock()):
                return True
            # The row changed after `user` was read: locked or deactivated.
            current = self.repository.get_by_id(user.id)
            if current is None:
                return False
            now = self._clock()
            if current.is_locked(now):
                self._reject_locked(current, now)
            if not current.is_active:
                logger.info("Login refused for user_id=%s: account deactivated", user.id)
                raise AccountDeactivated()
            return False

        state = self.repository.record_login_failure(
            user.id,
            self._clock(),
            threshold=self.threshold,
            lock_duration=self.lock_duration,
            ceiling=self.ceiling,
        )
        if state.lock_until is not None and state.login_attempts >= self.threshold:
            logger.warning(
                "Account user_id=%s locked until %s after %d failed attempts",
                user.id,
                state.lock_until.isoformat(),
                state.login_attempts,
            )
        else:
            logger.info("Failed login for user_id=%s (attempt %d)", user.id, state.login_attempts)
        return False

    def _reject_locked(self, user: User, now: datetime) -> None:
        retry_after = user.lock_until - now
        logger.info("Login rejected for user_id=%s: locked for another %ds", user.id, int(retry_after.total_seconds()))
        raise AccountLocked(retry_after=retry_after)
