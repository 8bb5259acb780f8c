"""
auth/service.py -- AuthService: the operations the transport layer calls.

    authenticate(credential, password)   -> AuthResult
    refresh(refresh_token)               -> TokenPair
    authenticate_request_token(token)    -> Identity
    logout(user_id, refresh_token)
    logout_everywhere(user_id)

plus account management: register, change_password and the admin/owner
user operations. Those take the acting Identity and apply the
AuthorizationPolicy guards themselves, so the rules hold no matter which
transport calls them.

build_auth_service() is the composition root: it reads Settings once and
injects explicit values into each component's constructor.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta

from auth.errors import (
    InvalidAccountData,
    InvalidCredentials,
    RegistrationDisabled,
    UserNotFound,
)
from auth.gate import AuthenticationGate
from auth.lockout import AccountLockGuard
from auth.models import AuthResult, Identity, Role, TokenPair, User
from auth.passwords import PasswordVerifier, check_password_strength
from auth.policy import Permission, require_admin, require_owner_or_admin, require_permission
from auth.store import UserStore
from auth.token_store import TokenStore
from auth.tokens import TokenIssuer, utcnow
from core.config import Settings

logger = logging.getLogger("retailmaster.auth")

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,20}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Fields an account owner may change on their own record. Everything else is
# admin-only.
_SELF_SERVICE_FIELDS = frozenset({"username", "email"})
_ADMIN_FIELDS = frozenset({"username", "email", "role", "is_active", "password"})


class AuthService:
    def __init__(
        self,
        store: UserStore,
        verifier: PasswordVerifier,
        lock_guard: AccountLockGuard,
        tokens: TokenStore,
        gate: AuthenticationGate,
        self_registration_enabled: bool = True,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.lock_guard = lock_guard
        self.tokens = tokens
        self.gate = gate
        self.self_registration_enabled = self_registration_enabled

    # ------------------------------------------------------------------
    # Credential login and token lifecycle
    # ------------------------------------------------------------------

    def authenticate(self, credential: str, password: str) -> AuthResult:
        """Log in by username or email.

        Unknown account and wrong password both raise InvalidCredentials,
        and both cost one bcrypt check, so neither the error nor the response
        time reveals whether the account exists.
        """
        user = self.store.get_by_credential_key(credential)
        if user is None:
            self.verifier.verify_dummy(password)
            logger.info("Login failed: unknown account")
            raise InvalidCredentials()

        # Raises AccountLocked, or AccountDeactivated once the password is right.
        if not self.lock_guard.check(user, password):
            raise InvalidCredentials()

        pair = self.tokens.issue_pair(user)
        logger.info("User user_id=%s logged in", user.id)
        return AuthResult(identity=_identity(user), tokens=pair, username=user.username)

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.tokens.refresh(refresh_token)

    def authenticate_request_token(self, access_token: str) -> Identity:
        return self.gate.authenticate_token(access_token)

    def authenticate_request(self, headers: Mapping[str, str], cookies: Mapping[str, str]) -> Identity:
        return self.gate.authenticate_request(headers, cookies)

    def logout(self, user_id: int, refresh_token: str | None) -> bool:
        """Revoke one refresh token. Idempotent: repeating it is harmless."""
        if not refresh_token:
            return False
        revoked = self.tokens.revoke(user_id, refresh_token)
        logger.info("User user_id=%s logged out (refresh token revoked=%s)", user_id, revoked)
        return revoked

    def logout_everywhere(self, user_id: int) -> int:
        return self.tokens.revoke_all(user_id)

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str) -> User:
        """Create a USER-role account through public sign-up."""
        if not self.self_registration_enabled:
            raise RegistrationDisabled()
        return self._create(username, email, password, Role.USER)

    def change_password(self, identity: Identity, current_password: str, new_password: str) -> None:
        """Replace the caller's password and sign out every other session."""
        user = self._get(identity.id)
        if not self.verifier.verify(current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect.")
        check_password_strength(new_password)
        self.store.update_password(user.id, self.verifier.hash(new_password))
        self.tokens.revoke_all(user.id)
        logger.info("User user_id=%s changed password", user.id)

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------

    def create_user(self, actor: Identity, username: str, email: str, password: str, role: Role | str) -> User:
        require_permission(actor, Permission.MANAGE_USERS)
        user = self._create(username, email, password, Role(role))
        logger.info("Admin user_id=%s created user_id=%s role=%s", actor.id, user.id, user.role.value)
        return user

    def list_users(self, actor: Identity) -> list[User]:
        require_permission(actor, Permission.MANAGE_USERS)
        return self.store.list_users()

    def get_user(self, actor: Identity, user_id: int) -> User:
        require_owner_or_admin(actor, user_id)
        return self._get(user_id)

    def update_user(self, actor: Identity, user_id: int, **changes) -> User:
        """Apply changes to a user record.

        Owners may change username and email. Admins may also change role,
        is_active and reset the password. Rules:
          - nobody deactivates themselves;
          - the last active admin is never demoted or deactivated;
          - deactivation and admin password resets revoke every refresh token.
        """
        require_owner_or_admin(actor, user_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        unknown = set(changes) - _ADMIN_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if set(changes) - _SELF_SERVICE_FIELDS:
            require_admin(actor)
        if not changes:
            raise InvalidAccountData("No fields to update.")

        target = self._get(user_id)
        updates: dict = {}
        if "username" in changes:
            updates["username"] = _validated_username(changes["username"])
        if "email" in changes:
            updates["email"] = _validated_email(changes["email"])
        if "role" in changes:
            updates["role"] = Role(changes["role"])
        if "is_active" in changes:
            if not changes["is_active"] and target.id == actor.id:
                raise InvalidAccountData("You cannot deactivate your own account.")
            updates["is_active"] = bool(changes["is_active"])
        if "password" in changes:
            check_password_strength(changes["password"])
            updates["password_hash"] = self.verifier.hash(changes["password"])

        demoting = "role" in updates and updates["role"] != Role.ADMIN
        deactivating = updates.get("is_active") is False
        if not self.store.update_user(user_id, guard_last_admin=demoting or deactivating, **updates):
            raise UserNotFound()

        if deactivating or "password_hash" in updates:
            self.tokens.revoke_all(user_id)
        logger.info("User user_id=%s updated by user_id=%s: %s", user_id, actor.id, sorted(changes))
        return self._get(user_id)

    def delete_user(self, actor: Identity, user_id: int) -> None:
        require_admin(actor)
        if actor.id == user_id:
            raise InvalidAccountData("You cannot delete your own account.")
        if not self.store.delete_user(user_id):
            raise UserNotFound()
        logger.info("User user_id=%s deleted by user_id=%s", user_id, actor.id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create(self, username: str, email: str, password: str, role: Role) -> User:
        username = _validated_username(username)
        email = _validated_email(email)
        check_password_strength(password)
        user = User(username=username, email=email, password_hash=self.verifier.hash(password), role=role)
        user_id = self.store.create_user(user)
        return self._get(user_id)

    def _get(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise UserNotFound()
        return user


def _identity(user: User) -> Identity:
    return Identity(id=user.id, email=user.email, role=user.role, is_active=user.is_active)


def _validated_username(username: str) -> str:
    username = username.strip()
    if not USERNAME_PATTERN.match(username):
        raise InvalidAccountData(
            "Username must be 3-20 characters long and can only contain letters, numbers, and underscores."
        )
    return username


def _validated_email(email: str) -> str:
    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise InvalidAccountData("Invalid email format.")
    return email


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------


def build_auth_service(
    settings: Settings,
    store: UserStore | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> AuthService:
    """Wire every auth component from explicit configuration values."""
    store = store or UserStore(settings.database_url)
    verifier = PasswordVerifier(rounds=settings.bcrypt_rounds)
    issuer = TokenIssuer(
        access_secret=settings.secret_key,
        refresh_secret=settings.refresh_secret_key,
        access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
        refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
        algorithm=settings.jwt_algorithm,
        clock=clock,
    )
    lock_guard = AccountLockGuard(
        store,
        verifier,
        threshold=settings.max_login_attempts,
        lock_duration=timedelta(seconds=settings.lock_duration_seconds),
        ceiling=settings.login_attempts_ceiling,
        clock=clock,
    )
    gate = AuthenticationGate(
        issuer,
        store,
        header_name=settings.auth_header_name,
        cookie_name=settings.access_cookie_name,
    )
    return AuthService(
        store=store,
        verifier=verifier,
        lock_guard=lock_guard,
        tokens=TokenStore(issuer, store, clock=clock),
        gate=gate,
        self_registration_enabled=settings.self_registration_enabled,
    )
