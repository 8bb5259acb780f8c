"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_refresh_token are the mappers. Services and route
code never touch SQL directly. AuthRepository is the structural interface
the auth components are typed against, so another backend can be dropped in.

Atomicity:
  Two sequences touch shared per-user state and must not interleave:
    1. failed-login increment + lock transition (record_login_failure)
    2. refresh-token check + revoke + insert (rotate_refresh_token)
  Both are expressed as a single conditional UPDATE whose WHERE clause / CASE
  expressions carry the check, executed in one transaction. Two concurrent
  callers serialize on the row write; neither can act on a stale read.
  The last-admin guards in update_user / delete_user use the same technique
  (a correlated COUNT in the WHERE clause).

  Every write statement is the first statement of its transaction. On SQLite
  in WAL mode a transaction that reads first and writes later can fail
  immediately with SQLITE_BUSY instead of waiting on the busy timeout.

Timestamps:
  Stored as fixed-width ISO 8601 UTC strings (microsecond precision), so
  lexical comparison in SQL is chronological comparison.

Errors:
  DBAPI failures are re-raised as StorageUnavailable. Integrity violations on
  username/email become UserConflict. Nothing here maps a storage failure to
  a credential failure.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError

from auth.errors import LastAdminError, StorageUnavailable, UserConflict, UserNotFound
from auth.models import LoginState, RefreshTokenRecord, Role, User

logger = logging.getLogger("retailmaster.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-case
    Column("password_hash", Text, nullable=False),
    Column("role", String(16), nullable=False, server_default=Role.USER.value),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_id", String(64), nullable=False, unique=True),  # JWT jti
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Repository interface
# ---------------------------------------------------------------------------


class AuthRepository(Protocol):
    """What the auth core needs from persistence. UserStore implements it."""

    def get_by_id(self, user_id: int) -> User | None: ...

    def get_by_credential_key(self, key: str) -> User | None: ...

    def record_login_failure(
        self, user_id: int, now: datetime, threshold: int, lock_duration: timedelta, ceiling: int
    ) -> LoginState: ...

    def record_login_success(self, user_id: int, now: datetime) -> bool: ...

    def append_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def get_refresh_token(self, token_id: str) -> RefreshTokenRecord | None: ...

    def rotate_refresh_token(
        self, user_id: int, old_token_id: str, token_hash: str, now: datetime, new_record: RefreshTokenRecord
    ) -> bool: ...

    def revoke_refresh_token(self, user_id: int, token_id: str) -> bool: ...

    def revoke_all_refresh_tokens(self, user_id: int) -> int: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _storage_guard(method):
    """Re-raise DBAPI failures as StorageUnavailable.

    IntegrityError is left alone; the methods that can hit a unique
    constraint translate it themselves.
    """

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except IntegrityError:
            raise
        except DBAPIError as exc:
            logger.error("Storage failure in %s: %s", method.__name__, exc.orig)
            raise StorageUnavailable(f"auth storage unavailable during {method.__name__}") from exc

    return wrapper


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and RefreshTokenRecord entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(User(username="alice", email="alice@example.com", password_hash=h))
        user = store.get_by_credential_key("alice")
        store.close()
    """

    _UPDATABLE_FIELDS = frozenset({"username", "email", "role", "is_active", "password_hash"})

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except DBAPIError:
            return False
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    @_storage_guard
    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    @_storage_guard
    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises UserConflict if the username or email is already taken.
        """
        now = _iso(_now())
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        email=user.email.lower(),
                        password_hash=user.password_hash,
                        role=Role(user.role).value,
                        is_active=1 if user.is_active else 0,
                        login_attempts=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                conn.commit()
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise UserConflict() from exc

    @_storage_guard
    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    @_storage_guard
    def get_by_credential_key(self, key: str) -> User | None:
        """Look up a user by exact username or case-insensitive email."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(or_(_users.c.username == key, _users.c.email == key.lower()))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    @_storage_guard
    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    @_storage_guard
    def count_admins(self, active_only: bool = True) -> int:
        stmt = select(func.count()).select_from(_users).where(_users.c.role == Role.ADMIN.value)
        if active_only:
            stmt = stmt.where(_users.c.is_active == 1)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    @_storage_guard
    def update_user(self, user_id: int, guard_last_admin: bool = False, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: username, email, role, is_active, password_hash.

        guard_last_admin=True makes the UPDATE conditional on the target not
        being the last active admin; the count is evaluated inside the same
        statement, so two admins demoting each other concurrently cannot both
        succeed. Raises LastAdminError when the guard blocks the write.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "email" in fields:
            fields["email"] = fields["email"].lower()
        fields["updated_at"] = _iso(_now())

        stmt = _users.update().where(_users.c.id == user_id)
        if guard_last_admin:
            stmt = stmt.where(_not_last_active_admin())
        try:
            with self.engine.connect() as conn:
                result = conn.execute(stmt.values(**fields))
                conn.commit()
        except IntegrityError as exc:
            raise UserConflict() from exc
        if result.rowcount > 0:
            return True
        if guard_last_admin and self.get_by_id(user_id) is not None:
            raise LastAdminError()
        return False

    def update_password(self, user_id: int, password_hash: str) -> bool:
        return self.update_user(user_id, password_hash=password_hash)

    @_storage_guard
    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and their refresh-token records.

        Refuses (LastAdminError) to delete the last active admin; the check
        is part of the DELETE's WHERE clause. Returns False if not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id).where(_not_last_active_admin()))
            if result.rowcount == 0:
                conn.rollback()
                exists = conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone()
                if exists is not None:
                    raise LastAdminError()
                return False
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            conn.commit()
        return True

    # ------------------------------------------------------------------
    # Login state (AccountLockGuard)
    # ------------------------------------------------------------------

    @_storage_guard
    def record_login_failure(
        self,
        user_id: int,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
        ceiling: int,
    ) -> LoginState:
        """Atomically count one failed attempt and apply the lock transition.

        All in one UPDATE, evaluated against the row as it is at write time:
          - lock expired      -> attempts = 1, lock cleared (fresh start)
          - otherwise         -> attempts = min(attempts + 1, ceiling)
          - already locked by a concurrent attempt -> keep that lock_until
          - attempts reached threshold -> lock_until = now + lock_duration

        Returns the post-update LoginState. Raises UserNotFound if the row
        vanished.
        """
        c = _users.c
        now_s = _iso(now)
        lock_s = _iso(now + lock_duration)

        lock_expired = and_(c.lock_until.is_not(None), c.lock_until <= now_s)
        lock_active = and_(c.lock_until.is_not(None), c.lock_until > now_s)
        bumped = case((c.login_attempts + 1 > ceiling, ceiling), else_=c.login_attempts + 1)
        new_attempts = case((lock_expired, 1), else_=bumped)
        new_lock = case(
            (lock_active, c.lock_until),
            (new_attempts >= threshold, lock_s),
            else_=None,
        )

        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(c.id == user_id)
                .values(login_attempts=new_attempts, lock_until=new_lock, updated_at=now_s)
            )
            if result.rowcount == 0:
                conn.rollback()
                raise UserNotFound()
            row = conn.execute(select(c.login_attempts, c.lock_until).where(c.id == user_id)).fetchone()
            conn.commit()
        return LoginState(login_attempts=row.login_attempts, lock_until=_parse(row.lock_until))

    @_storage_guard
    def record_login_success(self, user_id: int, now: datetime) -> bool:
        """Reset attempts, clear an expired lock and stamp last_login in one UPDATE.

        The UPDATE only matches an active account whose lock is absent or
        expired at write time, so a lock or deactivation that landed after
        the caller read the row is never overwritten. Returns whether a row
        matched.
        """
        c = _users.c
        now_s = _iso(now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    c.id == user_id,
                    c.is_active == 1,
                    or_(c.lock_until.is_(None), c.lock_until <= now_s),
                )
                .values(login_attempts=0, lock_until=None, last_login=now_s, updated_at=now_s)
            )
            conn.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Refresh tokens (TokenStore)
    # ------------------------------------------------------------------

    @_storage_guard
    def append_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(record)))
            conn.commit()

    @_storage_guard
    def get_refresh_token(self, token_id: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_id == token_id)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    @_storage_guard
    def list_refresh_tokens(self, user_id: int) -> list[RefreshTokenRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    @_storage_guard
    def rotate_refresh_token(
        self,
        user_id: int,
        old_token_id: str,
        token_hash: str,
        now: datetime,
        new_record: RefreshTokenRecord,
    ) -> bool:
        """Revoke the presented record and insert its successor atomically.

        The UPDATE only matches a record that is live (not revoked, not
        expired) and whose stored fingerprint equals token_hash. Exactly one
        of any number of concurrent callers can match it; the others get
        False and insert nothing.
        """
        t = _refresh_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (t.token_id == old_token_id)
                    & (t.user_id == user_id)
                    & (t.token_hash == token_hash)
                    & (t.revoked == 0)
                    & (t.expires_at > _iso(now))
                )
                .values(revoked=1)
            )
            if result.rowcount != 1:
                conn.rollback()
                return False
            conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(new_record)))
            conn.commit()
        return True

    @_storage_guard
    def revoke_refresh_token(self, user_id: int, token_id: str) -> bool:
        """Revoke one record. Returns False if absent, foreign or already revoked."""
        t = _refresh_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((t.token_id == token_id) & (t.user_id == user_id) & (t.revoked == 0))
                .values(revoked=1)
            )
            conn.commit()
        return result.rowcount > 0

    @_storage_guard
    def revoke_all_refresh_tokens(self, user_id: int) -> int:
        t = _refresh_tokens.c
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update().where((t.user_id == user_id) & (t.revoked == 0)).values(revoked=1)
            )
            conn.commit()
        return result.rowcount

    @_storage_guard
    def purge_expired_refresh_tokens(self, now: datetime | None = None) -> int:
        """Delete records past their expiry. Revoked-but-live records are kept
        so a replayed token is still recognised as a replay."""
        cutoff = _iso(now or _now())
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# SQL fragments
# ---------------------------------------------------------------------------


def _not_last_active_admin():
    """WHERE fragment: the target row is not the only active admin."""
    admins = _users.alias("admins")
    active_admins = (
        select(func.count())
        .select_from(admins)
        .where((admins.c.role == Role.ADMIN.value) & (admins.c.is_active == 1))
        .scalar_subquery()
    )
    return or_(_users.c.role != Role.ADMIN.value, _users.c.is_active == 0, active_admins > 1)


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        is_active=bool(row.is_active),
        login_attempts=row.login_attempts,
        lock_until=_parse(row.lock_until),
        last_login=_parse(row.last_login),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_id=row.token_id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_parse(row.expires_at),
        revoked=bool(row.revoked),
        created_at=_parse(row.created_at),
    )


def _refresh_token_values(record: RefreshTokenRecord) -> dict:
    return {
        "token_id": record.token_id,
        "user_id": record.user_id,
        "token_hash": record.token_hash,
        "expires_at": _iso(record.expires_at),
        "revoked": 1 if record.revoked else 0,
        "created_at": _iso(record.created_at or _now()),
    }
