"""
auth/errors.py -- Exception taxonomy for the auth core.

Every AuthError carries a stable machine-readable ``code`` and a deliberately
generic public ``message``. The granular reason for a failure (bad signature,
unknown user, revoked token, replay) is written to the log, never into the
exception message, so whatever transport renders these cannot leak account
existence or lock state.

Infrastructure faults (StorageUnavailable, PasswordHashingError) are NOT
AuthErrors. Nothing in auth/ catches them; they reach the caller unchanged so
it can apply its own retry policy, and they can never be mistaken for a
credential failure.

The HTTP status mapping lives in api/main.py -- auth/ is transport-agnostic.
"""

from __future__ import annotations

from datetime import timedelta


class AuthError(Exception):
    """Base class for expected authentication / authorization outcomes."""

    code: str = "auth_error"
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "bad_credentials"
    message = "Invalid username or password."


class AccountLocked(AuthError):
    """Login rejected because the account is inside its lockout window."""

    code = "account_locked"
    message = "Too many failed login attempts. Try again later."

    def __init__(self, retry_after: timedelta) -> None:
        super().__init__()
        self.retry_after = retry_after


class Unauthenticated(AuthError):
    """The single collapsed outcome of every request-token failure."""

    code = "unauthorized"
    message = "Authentication required."


class Forbidden(AuthError):
    code = "forbidden"
    message = "You do not have permission to perform this action."


class AccountDeactivated(Forbidden):
    code = "account_deactivated"
    message = "This account has been deactivated."


class TokenError(AuthError):
    code = "token_invalid"
    message = "Invalid or expired token."


class TokenExpired(TokenError):
    code = "token_expired"


class TokenInvalid(TokenError):
    """Malformed, badly signed, unknown, revoked or replayed token."""

    code = "token_invalid"


class UserNotFound(AuthError):
    """Internal on auth paths; only admin/user-management routes surface it."""

    code = "not_found"
    message = "User not found."


class UserConflict(AuthError):
    code = "conflict"
    message = "A user with that username or email already exists."


class LastAdminError(AuthError):
    code = "last_admin"
    message = "The last admin account cannot be removed, demoted or deactivated."


class WeakPassword(AuthError):
    code = "weak_password"
    message = "Password does not meet the strength requirements."


class InvalidAccountData(AuthError):
    code = "validation_error"
    message = "Invalid account data."


class RegistrationDisabled(AuthError):
    code = "registration_disabled"
    message = "Self-registration is disabled."


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class StorageUnavailable(Exception):
    """The repository could not be reached or failed mid-operation."""


class PasswordHashingError(Exception):
    """The hashing backend failed (library or configuration fault)."""
