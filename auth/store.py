"""
auth/store.py -- Credential store: interface plus SQLAlchemy Core implementation.

Pattern: Repository + Data Mapper + Unit of Work.
CredentialStore is the interface the services depend on. SqlCredentialStore is
the repository; _row_to_user / _row_to_action_token / _row_to_session are the
mappers; atomic() hands out a unit of work (_SqlUnitOfWork) bound to a single
transaction.
Services never touch SQL directly.

Atomicity:
  Every multi-step operation in the services runs inside one atomic() block:
    - delete prior active token + insert new token (one active token per purpose)
    - mark token consumed + apply the state/password change
    - replace the password + revoke every login session of the user
  engine.begin() commits when the block exits and rolls back if anything in it
  raises, so a failed transition never leaves a consumed token behind.

  mark_action_token_consumed() is a conditional UPDATE (consumed_at IS NULL).
  Of two concurrent confirmations only one sees rowcount == 1; the other gets
  TokenAlreadyUsed and its transaction rolls back.

  A partial UNIQUE index on (user_id, purpose) WHERE consumed_at IS NULL backs
  the one-active-token invariant at the database level. A concurrent issue
  that loses the race surfaces as Conflict, which the caller retries.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Raw action and refresh secrets are never stored -- only their HMAC digest.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond precision
so that string comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import ContextManager, Protocol

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import Conflict, StoreUnavailable, TokenAlreadyUsed, UserNotFound
from auth.models import AccountState, ActionToken, LoginSession, TokenPurpose, User

logger = logging.getLogger("authkeep.store")

_DEFAULT_DB_URL = "sqlite:///authkeep.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(254), nullable=False, unique=True),  # normalized lower-case
    Column("display_name", String(100)),
    Column("hashed_password", Text, nullable=False),
    Column("state", String(20), nullable=False, server_default=AccountState.unverified.value),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_action_tokens = Table(
    "action_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("purpose", String(30), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("consumed_at", String(32)),  # NULL until used
)

Index(
    "ux_action_tokens_active",
    _action_tokens.c.user_id,
    _action_tokens.c.purpose,
    unique=True,
    sqlite_where=_action_tokens.c.consumed_at.is_(None),
    postgresql_where=_action_tokens.c.consumed_at.is_(None),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("user_id", Integer, nullable=False, index=True),
    Column("refresh_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex, rotated on refresh
    Column("created_at", String(32), nullable=False),
    Column("last_active_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("revoked_at", String(32)),  # NULL while the session is usable
    Column("device_info", String(200)),
    Column("ip_address", String(45)),
)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class CredentialUnitOfWork(Protocol):
    """Store operations that share one transaction."""

    def find_user_by_email(self, email: str) -> User | None: ...

    def find_user_by_id(self, user_id: int) -> User | None: ...

    def create_user(self, user: User) -> int: ...

    def update_user_state(self, user_id: int, state: AccountState) -> None: ...

    def update_password(self, user_id: int, hashed_password: str) -> None: ...

    def touch_last_login(self, user_id: int) -> None: ...

    def create_action_token(self, token: ActionToken) -> int: ...

    def find_action_token(self, token_hash: str) -> ActionToken | None: ...

    def mark_action_token_consumed(self, token_id: int, consumed_at: datetime) -> None: ...

    def invalidate_active_tokens(self, user_id: int, purpose: TokenPurpose) -> int: ...

    def purge_expired_tokens(self, now: datetime) -> int: ...

    def create_session(self, session: LoginSession) -> str: ...

    def find_session(self, session_id: str) -> LoginSession | None: ...

    def find_session_by_refresh_hash(self, refresh_hash: str) -> LoginSession | None: ...

    def rotate_session(
        self, session_id: str, old_hash: str, new_hash: str, now: datetime, expires_at: datetime
    ) -> None: ...

    def revoke_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_user_sessions(self, user_id: int, now: datetime) -> int: ...

    def list_active_sessions(self, user_id: int, now: datetime) -> list[LoginSession]: ...

    def purge_expired_sessions(self, now: datetime) -> int: ...


class CredentialStore(CredentialUnitOfWork, Protocol):
    """Persistence boundary for users, action tokens, and login sessions.

    Each method called directly on the store runs in its own transaction.
    Use atomic() to group several calls into one.

    Errors: UserNotFound (update on a missing user), Conflict (duplicate email,
    or a concurrent active token), StoreUnavailable (transient, retryable),
    TokenAlreadyUsed (conditional consume or session rotation lost).
    """

    def atomic(self) -> ContextManager[CredentialUnitOfWork]: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


class _SqlUnitOfWork:
    """All store operations bound to one open transaction."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    # -- users ---------------------------------------------------------

    def find_user_by_email(self, email: str) -> User | None:
        """Exact match on the normalized email. Callers normalize first."""
        row = self._conn.execute(_users.select().where(_users.c.email == email)).first()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: int) -> User | None:
        row = self._conn.execute(_users.select().where(_users.c.id == user_id)).first()
        return _row_to_user(row) if row is not None else None

    def create_user(self, user: User) -> int:
        """Insert a user and return its ID. Raises Conflict if the email exists.

        The UNIQUE index on email is the uniqueness check -- no read-then-write
        race window between two concurrent registrations.
        """
        now = _now_iso()
        try:
            result = self._conn.execute(
                _users.insert().values(
                    email=user.email,
                    display_name=user.display_name,
                    hashed_password=user.hashed_password,
                    state=user.state.value,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError as exc:
            raise Conflict() from exc
        return result.inserted_primary_key[0]

    def update_user_state(self, user_id: int, state: AccountState) -> None:
        result = self._conn.execute(
            _users.update().where(_users.c.id == user_id).values(state=state.value, updated_at=_now_iso())
        )
        if result.rowcount == 0:
            raise UserNotFound()

    def update_password(self, user_id: int, hashed_password: str) -> None:
        result = self._conn.execute(
            _users.update()
            .where(_users.c.id == user_id)
            .values(hashed_password=hashed_password, updated_at=_now_iso())
        )
        if result.rowcount == 0:
            raise UserNotFound()

    def touch_last_login(self, user_id: int) -> None:
        self._conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # -- action tokens -------------------------------------------------

    def create_action_token(self, token: ActionToken) -> int:
        """Insert a token record. Raises Conflict if an active token of the same purpose exists."""
        try:
            result = self._conn.execute(
                _action_tokens.insert().values(
                    user_id=token.user_id,
                    purpose=token.purpose.value,
                    token_hash=token.token_hash,
                    issued_at=_iso(token.issued_at),
                    expires_at=_iso(token.expires_at),
                    consumed_at=None,
                )
            )
        except IntegrityError as exc:
            raise Conflict("An active token of this purpose already exists.") from exc
        return result.inserted_primary_key[0]

    def find_action_token(self, token_hash: str) -> ActionToken | None:
        """Look up a token by its HMAC digest. O(1) via the UNIQUE index."""
        row = self._conn.execute(_action_tokens.select().where(_action_tokens.c.token_hash == token_hash)).first()
        return _row_to_action_token(row) if row is not None else None

    def mark_action_token_consumed(self, token_id: int, consumed_at: datetime) -> None:
        """Flip consumed_at from NULL. Raises TokenAlreadyUsed if another caller got there first."""
        result = self._conn.execute(
            _action_tokens.update()
            .where((_action_tokens.c.id == token_id) & (_action_tokens.c.consumed_at.is_(None)))
            .values(consumed_at=_iso(consumed_at))
        )
        if result.rowcount != 1:
            raise TokenAlreadyUsed()

    def invalidate_active_tokens(self, user_id: int, purpose: TokenPurpose) -> int:
        """Delete unconsumed tokens of one purpose. Old links then fail with TokenNotFound."""
        result = self._conn.execute(
            _action_tokens.delete().where(
                (_action_tokens.c.user_id == user_id)
                & (_action_tokens.c.purpose == purpose.value)
                & (_action_tokens.c.consumed_at.is_(None))
            )
        )
        return result.rowcount

    def purge_expired_tokens(self, now: datetime) -> int:
        """Delete every token past its expiry, consumed or not. Returns the count."""
        result = self._conn.execute(_action_tokens.delete().where(_action_tokens.c.expires_at < _iso(now)))
        return result.rowcount

    # -- login sessions ------------------------------------------------

    def create_session(self, session: LoginSession) -> str:
        self._conn.execute(
            _sessions.insert().values(
                id=session.id,
                user_id=session.user_id,
                refresh_hash=session.refresh_hash,
                created_at=_iso(session.created_at),
                last_active_at=_iso(session.last_active_at),
                expires_at=_iso(session.expires_at),
                revoked_at=None,
                device_info=session.device_info,
                ip_address=session.ip_address,
            )
        )
        return session.id

    def find_session(self, session_id: str) -> LoginSession | None:
        row = self._conn.execute(_sessions.select().where(_sessions.c.id == session_id)).first()
        return _row_to_session(row) if row is not None else None

    def find_session_by_refresh_hash(self, refresh_hash: str) -> LoginSession | None:
        row = self._conn.execute(_sessions.select().where(_sessions.c.refresh_hash == refresh_hash)).first()
        return _row_to_session(row) if row is not None else None

    def rotate_session(self, session_id: str, old_hash: str, new_hash: str, now: datetime, expires_at: datetime) -> None:
        """Swap the refresh digest. Raises TokenAlreadyUsed if the session was rotated or revoked meanwhile.

        Matching on old_hash makes rotation single-use in the same way as
        mark_action_token_consumed(): of two concurrent refreshes with the same
        secret, only one sees rowcount == 1.
        """
        result = self._conn.execute(
            _sessions.update()
            .where(
                (_sessions.c.id == session_id)
                & (_sessions.c.refresh_hash == old_hash)
                & (_sessions.c.revoked_at.is_(None))
            )
            .values(refresh_hash=new_hash, last_active_at=_iso(now), expires_at=_iso(expires_at))
        )
        if result.rowcount != 1:
            raise TokenAlreadyUsed()

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        """Mark one session revoked. Returns False if it was already revoked or does not exist."""
        result = self._conn.execute(
            _sessions.update()
            .where((_sessions.c.id == session_id) & (_sessions.c.revoked_at.is_(None)))
            .values(revoked_at=_iso(now))
        )
        return result.rowcount == 1

    def revoke_user_sessions(self, user_id: int, now: datetime) -> int:
        result = self._conn.execute(
            _sessions.update()
            .where((_sessions.c.user_id == user_id) & (_sessions.c.revoked_at.is_(None)))
            .values(revoked_at=_iso(now))
        )
        return result.rowcount

    def list_active_sessions(self, user_id: int, now: datetime) -> list[LoginSession]:
        """Unrevoked, unexpired sessions for a user, most recently used first."""
        rows = self._conn.execute(
            select(_sessions)
            .where(
                (_sessions.c.user_id == user_id)
                & (_sessions.c.revoked_at.is_(None))
                & (_sessions.c.expires_at > _iso(now))
            )
            .order_by(_sessions.c.last_active_at.desc())
        ).fetchall()
        return [_row_to_session(r) for r in rows]

    def purge_expired_sessions(self, now: datetime) -> int:
        """Delete sessions that are past expiry or revoked. Returns the count."""
        result = self._conn.execute(
            _sessions.delete().where((_sessions.c.expires_at < _iso(now)) | (_sessions.c.revoked_at.is_not(None)))
        )
        return result.rowcount


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlCredentialStore:
    """SQLAlchemy-backed CredentialStore.

    Usage:
        store = SqlCredentialStore("sqlite:///authkeep.db")
        with store.atomic() as uow:
            user_id = uow.create_user(User(email="a@x.com", hashed_password=hash_password("secret")))
        user = store.find_user_by_id(user_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout_seconds: int = 5) -> None:
        connect_args: dict = {}
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # sqlite3 busy timeout: how long a writer waits for the lock
            connect_args["timeout"] = timeout_seconds
        else:
            engine_args["pool_timeout"] = timeout_seconds
            engine_args["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def atomic(self) -> Iterator[_SqlUnitOfWork]:
        """Yield a unit of work; commit on clean exit, roll back on any exception.

        Driver-level failures (locked database, lost connection, pool timeout)
        are translated to StoreUnavailable so callers can retry without
        knowing about SQLAlchemy.
        """
        try:
            with self.engine.begin() as conn:
                yield _SqlUnitOfWork(conn)
        except (OperationalError, PoolTimeoutError) as exc:
            logger.warning("Credential store unavailable: %s", exc.__class__.__name__)
            raise StoreUnavailable() from exc

    # ------------------------------------------------------------------
    # Single-statement conveniences -- each runs in its own transaction
    # ------------------------------------------------------------------

    def find_user_by_email(self, email: str) -> User | None:
        with self.atomic() as uow:
            return uow.find_user_by_email(email)

    def find_user_by_id(self, user_id: int) -> User | None:
        with self.atomic() as uow:
            return uow.find_user_by_id(user_id)

    def create_user(self, user: User) -> int:
        with self.atomic() as uow:
            return uow.create_user(user)

    def update_user_state(self, user_id: int, state: AccountState) -> None:
        with self.atomic() as uow:
            uow.update_user_state(user_id, state)

    def update_password(self, user_id: int, hashed_password: str) -> None:
        with self.atomic() as uow:
            uow.update_password(user_id, hashed_password)

    def touch_last_login(self, user_id: int) -> None:
        with self.atomic() as uow:
            uow.touch_last_login(user_id)

    def create_action_token(self, token: ActionToken) -> int:
        with self.atomic() as uow:
            return uow.create_action_token(token)

    def find_action_token(self, token_hash: str) -> ActionToken | None:
        with self.atomic() as uow:
            return uow.find_action_token(token_hash)

    def mark_action_token_consumed(self, token_id: int, consumed_at: datetime) -> None:
        with self.atomic() as uow:
            uow.mark_action_token_consumed(token_id, consumed_at)

    def invalidate_active_tokens(self, user_id: int, purpose: TokenPurpose) -> int:
        with self.atomic() as uow:
            return uow.invalidate_active_tokens(user_id, purpose)

    def purge_expired_tokens(self, now: datetime) -> int:
        with self.atomic() as uow:
            return uow.purge_expired_tokens(now)

    def create_session(self, session: LoginSession) -> str:
        with self.atomic() as uow:
            return uow.create_session(session)

    def find_session(self, session_id: str) -> LoginSession | None:
        with self.atomic() as uow:
            return uow.find_session(session_id)

    def find_session_by_refresh_hash(self, refresh_hash: str) -> LoginSession | None:
        with self.atomic() as uow:
            return uow.find_session_by_refresh_hash(refresh_hash)

    def rotate_session(self, session_id: str, old_hash: str, new_hash: str, now: datetime, expires_at: datetime) -> None:
        with self.atomic() as uow:
            uow.rotate_session(session_id, old_hash, new_hash, now, expires_at)

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self.atomic() as uow:
            return uow.revoke_session(session_id, now)

    def revoke_user_sessions(self, user_id: int, now: datetime) -> int:
        with self.atomic() as uow:
            return uow.revoke_user_sessions(user_id, now)

    def list_active_sessions(self, user_id: int, now: datetime) -> list[LoginSession]:
        with self.atomic() as uow:
            return uow.list_active_sessions(user_id, now)

    def purge_expired_sessions(self, now: datetime) -> int:
        with self.atomic() as uow:
            return uow.purge_expired_sessions(now)

    def list_action_tokens(self, user_id: int) -> list[ActionToken]:
        """Return every stored token for a user, newest first. Used by the admin CLI."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_action_tokens)
                .where(_action_tokens.c.user_id == user_id)
                .order_by(_action_tokens.c.issued_at.desc())
            ).fetchall()
        return [_row_to_action_token(r) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (OperationalError, PoolTimeoutError):
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        display_name=row.display_name,
        hashed_password=row.hashed_password,
        state=AccountState(row.state),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
        last_login=_parse(row.last_login),
    )


def _row_to_action_token(row) -> ActionToken:
    return ActionToken(
        id=row.id,
        user_id=row.user_id,
        purpose=TokenPurpose(row.purpose),
        token_hash=row.token_hash,
        issued_at=_parse(row.issued_at),
        expires_at=_parse(row.expires_at),
        consumed_at=_parse(row.consumed_at),
    )


def _row_to_session(row) -> LoginSession:
    return LoginSession(
        id=row.id,
        user_id=row.user_id,
        refresh_hash=row.refresh_hash,
        created_at=_parse(row.created_at),
        last_active_at=_parse(row.last_active_at),
        expires_at=_parse(row.expires_at),
        revoked_at=_parse(row.revoked_at),
        device_info=row.device_info,
        ip_address=row.ip_address,
    )
