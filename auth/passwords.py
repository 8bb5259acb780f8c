"""
auth/passwords.py -- Password hashing, verification and strength policy.

bcrypt is used directly (no passlib wrapper). Its cost factor makes each
guess expensive, and the per-hash random salt is embedded in the output
string, so the users table needs no separate salt column.

Failure modes are kept apart on purpose:
  - wrong password                -> verify() returns False
  - stored hash is not bcrypt     -> verify() returns False, logged
  - bcrypt itself blows up        -> PasswordHashingError (infrastructure)

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re

import bcrypt

from auth.errors import PasswordHashingError, WeakPassword

logger = logging.getLogger("retailmaster.auth")

# bcrypt only looks at the first 72 bytes. The API layer caps password fields
# well below that; truncating here keeps bcrypt 4.x from raising on long input.
_BCRYPT_MAX_BYTES = 72

PASSWORD_MIN_LEN = 8
PASSWORD_MAX_LEN = 72


class PasswordVerifier:
    """Hash and check credentials with bcrypt.

    Usage:
        verifier = PasswordVerifier(rounds=12)
        stored = verifier.hash("Secret1x")
        verifier.verify("Secret1x", stored)  # True

    verify_dummy() runs a full bcrypt check against a throwaway hash. Callers
    use it when the account does not exist, so an unknown username costs the
    same wall-clock time as a wrong password and response timing does not
    reveal which usernames are registered.
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash: str | None = None

    def hash(self, plaintext: str) -> str:
        try:
            salt = bcrypt.gensalt(rounds=self.rounds)
            return bcrypt.hashpw(_encode(plaintext), salt).decode("utf-8")
        except (ValueError, TypeError) as exc:
            raise PasswordHashingError("bcrypt failed to hash password") from exc

    def verify(self, plaintext: str, hash_value: str) -> bool:
        """Return True if plaintext matches the stored bcrypt hash."""
        try:
            return bcrypt.checkpw(_encode(plaintext), hash_value.encode("utf-8"))
        except ValueError:
            # Raised for a stored value that is not a bcrypt hash (bad salt).
            logger.warning("Stored password hash is not a valid bcrypt hash")
            return False
        except TypeError as exc:
            raise PasswordHashingError("bcrypt failed to verify password") from exc

    def verify_dummy(self, plaintext: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("retailmaster_timing_dummy")
        self.verify(plaintext, self._dummy_hash)


def _encode(plaintext: str) -> bytes:
    return plaintext.encode("utf-8")[:_BCRYPT_MAX_BYTES]


# ---------------------------------------------------------------------------
# Strength policy (registration, password change, admin resets)
# ---------------------------------------------------------------------------

_STRENGTH_RULES = (
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter."),
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter."),
    (re.compile(r"[0-9]"), "Password must contain at least one number."),
)


def check_password_strength(password: str) -> None:
    """Raise WeakPassword with the first rule the password breaks."""
    if len(password) < PASSWORD_MIN_LEN:
        raise WeakPassword(f"Password must be at least {PASSWORD_MIN_LEN} characters long.")
    if len(password.encode("utf-8")) > PASSWORD_MAX_LEN:
        raise WeakPassword(f"Password must be at most {PASSWORD_MAX_LEN} bytes long.")
    for pattern, message in _STRENGTH_RULES:
        if not pattern.search(password):
            raise WeakPassword(message)
