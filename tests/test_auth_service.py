"""Tests for auth/service.py -- AuthService end to end over an in-memory store.

Covers:
- credential login by username or email, uniform failure for unknown accounts
- the lockout scenario: lock on the 5th failure, reject the 6th, admit after expiry
- deactivated accounts, refresh and logout
- registration, change_password and the user-management rules
- storage failures propagate unchanged and are never credential failures
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import (
    AccountDeactivated,
    AccountLocked,
    Forbidden,
    InvalidAccountData,
    InvalidCredentials,
    LastAdminError,
    RegistrationDisabled,
    StorageUnavailable,
    TokenInvalid,
    Unauthenticated,
    UserConflict,
    UserNotFound,
    WeakPassword,
)
from auth.models import Identity, Role, User
from auth.service import AuthService, build_auth_service


def _identity(user: User) -> Identity:
    return Identity(id=user.id, email=user.email, role=user.role, is_active=user.is_active)


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_login_by_username(self, service: AuthService, make_user) -> None:
        user = make_user("alice", role=Role.STAFF)
        result = service.authenticate("alice", "Passw0rd!")
        assert result.identity == _identity(user)
        assert result.username == "alice"
        assert service.authenticate_request_token(result.tokens.access_token).id == user.id

    def test_login_by_email_is_case_insensitive(self, service: AuthService, make_user) -> None:
        user = make_user("alice")
        assert service.authenticate("ALICE@Example.com", "Passw0rd!").identity.id == user.id

    def test_wrong_password(self, service: AuthService, make_user) -> None:
        make_user("alice")
        with pytest.raises(InvalidCredentials):
            service.authenticate("alice", "nope")

    def test_unknown_account_looks_like_wrong_password(self, service: AuthService, make_user) -> None:
        make_user("alice")
        with patch.object(service.verifier, "verify_dummy", wraps=service.verifier.verify_dummy) as dummy:
            with pytest.raises(InvalidCredentials) as unknown:
                service.authenticate("nobody", "Passw0rd!")
        dummy.assert_called_once_with("Passw0rd!")
        with pytest.raises(InvalidCredentials) as wrong:
            service.authenticate("alice", "nope")
        assert unknown.value.code == wrong.value.code
        assert unknown.value.message == wrong.value.message

    def test_lockout_scenario(self, service: AuthService, store, make_user, clock) -> None:
        alice = make_user("alice", password="Secret1")
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.authenticate("alice", "bad")

        with pytest.raises(AccountLocked):
            service.authenticate("alice", "Secret1")

        locked = store.get_by_id(alice.id)
        clock.now = locked.lock_until
        result = service.authenticate("alice", "Secret1")
        assert result.identity.id == alice.id
        assert store.get_by_id(alice.id).login_attempts == 0

    def test_deactivated_account_needs_correct_password_to_learn_status(
        self, service: AuthService, store, make_user
    ) -> None:
        alice = make_user("alice", is_active=False)
        with pytest.raises(InvalidCredentials):
            service.authenticate("alice", "nope")
        with pytest.raises(AccountDeactivated):
            service.authenticate("alice", "Passw0rd!")
        assert store.get_by_id(alice.id).last_login is None

    def test_storage_failure_is_not_a_credential_failure(self, service: AuthService, make_user) -> None:
        make_user("alice")
        broken = MagicMock()
        broken.connect.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))
        with patch.object(service.store, "engine", broken):
            with pytest.raises(StorageUnavailable):
                service.authenticate("alice", "Passw0rd!")


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


class TestTokenLifecycle:
    def test_refresh_then_logout(self, service: AuthService, make_user) -> None:
        user = make_user("alice")
        pair = service.authenticate("alice", "Passw0rd!").tokens
        rotated = service.refresh(pair.refresh_token)
        assert service.logout(user.id, rotated.refresh_token) is True
        assert service.logout(user.id, rotated.refresh_token) is False
        with pytest.raises(TokenInvalid):
            service.refresh(rotated.refresh_token)

    def test_logout_without_token_is_noop(self, service: AuthService, make_user) -> None:
        assert service.logout(make_user("alice").id, None) is False

    def test_logout_everywhere(self, service: AuthService, make_user) -> None:
        user = make_user("alice")
        pairs = [service.authenticate("alice", "Passw0rd!").tokens for _ in range(2)]
        assert service.logout_everywhere(user.id) == 2
        for pair in pairs:
            with pytest.raises(TokenInvalid):
                service.refresh(pair.refresh_token)

    def test_authenticate_request_collapses_failures(self, service: AuthService) -> None:
        with pytest.raises(Unauthenticated):
            service.authenticate_request({"Authorization": "Bearer junk"}, {})
        with pytest.raises(Unauthenticated):
            service.authenticate_request({}, {})


# ---------------------------------------------------------------------------
# Self-service
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_creates_user_role(self, service: AuthService) -> None:
        user = service.register("new_user", "New@Example.com", "Str0ngPass")
        assert user.role is Role.USER
        assert user.email == "new@example.com"
        assert service.authenticate("new_user", "Str0ngPass").identity.id == user.id

    @pytest.mark.parametrize("username", ["ab", "has space", "x" * 21, "bad-dash"])
    def test_bad_username(self, service: AuthService, username: str) -> None:
        with pytest.raises(InvalidAccountData):
            service.register(username, "ok@example.com", "Str0ngPass")

    def test_bad_email(self, service: AuthService) -> None:
        with pytest.raises(InvalidAccountData):
            service.register("someone", "not-an-email", "Str0ngPass")

    def test_weak_password(self, service: AuthService) -> None:
        with pytest.raises(WeakPassword):
            service.register("someone", "someone@example.com", "weak")

    def test_duplicate(self, service: AuthService, make_user) -> None:
        make_user("alice")
        with pytest.raises(UserConflict):
            service.register("alice", "other@example.com", "Str0ngPass")

    def test_disabled(self, settings, store, clock) -> None:
        closed = settings.model_copy(update={"self_registration_enabled": False})
        service = build_auth_service(closed, store, clock=clock)
        with pytest.raises(RegistrationDisabled):
            service.register("someone", "someone@example.com", "Str0ngPass")


class TestChangePassword:
    def test_change_password_revokes_sessions(self, service: AuthService, make_user) -> None:
        user = make_user("alice")
        pair = service.authenticate("alice", "Passw0rd!").tokens
        service.change_password(_identity(user), "Passw0rd!", "N3wPassword")
        with pytest.raises(TokenInvalid):
            service.refresh(pair.refresh_token)
        with pytest.raises(InvalidCredentials):
            service.authenticate("alice", "Passw0rd!")
        assert service.authenticate("alice", "N3wPassword").identity.id == user.id

    def test_wrong_current_password(self, service: AuthService, make_user) -> None:
        user = make_user("alice")
        with pytest.raises(InvalidCredentials) as excinfo:
            service.change_password(_identity(user), "wrong", "N3wPassword")
        assert excinfo.value.message == "Current password is incorrect."

    def test_weak_new_password(self, service: AuthService, make_user) -> None:
        user = make_user("alice")
        with pytest.raises(WeakPassword):
            service.change_password(_identity(user), "Passw0rd!", "short")


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


@pytest.fixture
def admin(make_user) -> Identity:
    return _identity(make_user("root", role=Role.ADMIN))


class TestUserManagement:
    def test_admin_creates_any_role(self, service: AuthService, admin: Identity) -> None:
        user = service.create_user(admin, "clerk", "clerk@example.com", "Str0ngPass", Role.STAFF)
        assert user.role is Role.STAFF

    def test_staff_cannot_create(self, service: AuthService, make_user) -> None:
        staff = _identity(make_user("clerk", role=Role.STAFF))
        with pytest.raises(Forbidden):
            service.create_user(staff, "other", "other@example.com", "Str0ngPass", Role.USER)

    def test_list_requires_manage_users(self, service: AuthService, admin: Identity, make_user) -> None:
        user = _identity(make_user("shopper"))
        assert [u.username for u in service.list_users(admin)] == ["root", "shopper"]
        with pytest.raises(Forbidden):
            service.list_users(user)

    def test_get_user_owner_or_admin(self, service: AuthService, admin: Identity, make_user) -> None:
        alice = _identity(make_user("alice"))
        bob = _identity(make_user("bob"))
        assert service.get_user(alice, alice.id).username == "alice"
        assert service.get_user(admin, alice.id).username == "alice"
        with pytest.raises(Forbidden):
            service.get_user(bob, alice.id)
        with pytest.raises(UserNotFound):
            service.get_user(admin, 999)

    def test_owner_edits_own_profile(self, service: AuthService, make_user) -> None:
        alice = _identity(make_user("alice"))
        updated = service.update_user(alice, alice.id, username="alice_2", email="A2@example.com")
        assert updated.username == "alice_2"
        assert updated.email == "a2@example.com"

    def test_owner_cannot_change_own_role(self, service: AuthService, make_user) -> None:
        alice = _identity(make_user("alice"))
        with pytest.raises(Forbidden):
            service.update_user(alice, alice.id, role=Role.ADMIN)

    def test_unknown_field(self, service: AuthService, admin: Identity) -> None:
        with pytest.raises(ValueError):
            service.update_user(admin, admin.id, login_attempts=0)

    def test_empty_update(self, service: AuthService, admin: Identity) -> None:
        with pytest.raises(InvalidAccountData):
            service.update_user(admin, admin.id, username=None)

    def test_cannot_deactivate_self(self, service: AuthService, admin: Identity, make_user) -> None:
        make_user("root2", role=Role.ADMIN)
        with pytest.raises(InvalidAccountData):
            service.update_user(admin, admin.id, is_active=False)

    def test_last_admin_cannot_be_demoted(self, service: AuthService, admin: Identity) -> None:
        with pytest.raises(LastAdminError):
            service.update_user(admin, admin.id, role=Role.STAFF)

    def test_demotion_with_second_admin(self, service: AuthService, admin: Identity, make_user) -> None:
        other = make_user("root2", role=Role.ADMIN)
        assert service.update_user(admin, other.id, role=Role.USER).role is Role.USER

    def test_deactivation_revokes_sessions(self, service: AuthService, admin: Identity, make_user) -> None:
        alice = make_user("alice")
        pair = service.authenticate("alice", "Passw0rd!").tokens
        service.update_user(admin, alice.id, is_active=False)
        with pytest.raises(AccountDeactivated):
            service.authenticate_request_token(pair.access_token)
        with pytest.raises(AccountDeactivated):
            service.refresh(pair.refresh_token)
        service.update_user(admin, alice.id, is_active=True)
        with pytest.raises(TokenInvalid):
            service.refresh(pair.refresh_token)

    def test_admin_password_reset(self, service: AuthService, admin: Identity, make_user) -> None:
        alice = make_user("alice")
        pair = service.authenticate("alice", "Passw0rd!").tokens
        service.update_user(admin, alice.id, password="Res3tPassword")
        with pytest.raises(TokenInvalid):
            service.refresh(pair.refresh_token)
        assert service.authenticate("alice", "Res3tPassword").identity.id == alice.id

    def test_update_missing_user(self, service: AuthService, admin: Identity) -> None:
        with pytest.raises(UserNotFound):
            service.update_user(admin, 999, role=Role.USER)

    def test_delete(self, service: AuthService, admin: Identity, make_user) -> None:
        alice = make_user("alice")
        service.delete_user(admin, alice.id)
        with pytest.raises(UserNotFound):
            service.get_user(admin, alice.id)
        with pytest.raises(UserNotFound):
            service.delete_user(admin, alice.id)

    def test_delete_self_refused(self, service: AuthService, admin: Identity) -> None:
        with pytest.raises(InvalidAccountData):
            service.delete_user(admin, admin.id)

    def test_non_admin_cannot_delete(self, service: AuthService, make_user) -> None:
        alice = _identity(make_user("alice"))
        bob = make_user("bob")
        with pytest.raises(Forbidden):
            service.delete_user(alice, bob.id)
