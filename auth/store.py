"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services and routes never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code rather than SQL
  because SQLite treats two NULL values as distinct in UNIQUE constraints.

Atomicity:
  Every public method runs in its own transaction (engine.begin()), so each
  call either fully commits or fully rolls back. promote_pending() deletes the
  pending authentication and inserts the session in ONE transaction: a client
  disconnect mid-request can never leave a half-issued session, and two
  concurrent promotions of the same challenge cannot both succeed.

Failure mapping:
  Connection-level failures (OperationalError and other DBAPI errors) are
  re-raised as auth.errors.StoreUnavailable. IntegrityError is passed through
  unchanged -- callers use it as a uniqueness signal (duplicate username,
  session id collision, replayed TOTP step).

Timestamps:
  Lifecycle tables (sessions, pending_authentications, totp_used_steps,
  auth_failures) store epoch seconds as REAL so expiry sweeps are plain numeric
  range deletes backed by an index. User timestamps stay ISO 8601 strings.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from auth.errors import StoreUnavailable
from auth.models import PendingAuthentication, Role, Session, User
from core.config import now_iso

logger = logging.getLogger("sharedthread.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sharedthread_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("display_name", String(255), nullable=False, server_default=""),
    Column("role", String(30), nullable=False, server_default="member"),
    Column("hashed_password", Text),  # NULL for federated-only users
    Column("totp_secret", Text),  # base32; NULL = no second factor
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("is_approved", Integer, nullable=False, server_default="1"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("last_active_at", String(40)),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("last_accessed_at", Float, nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Index("ix_sessions_expires_at", "expires_at"),
    Index("ix_sessions_user_id", "user_id"),
)

_pending = Table(
    "pending_authentications",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Index("ix_pending_expires_at", "expires_at"),
)

_totp_used = Table(
    "totp_used_steps",
    _metadata,
    Column("user_id", Integer, nullable=False),
    Column("time_step", Integer, nullable=False),
    Column("expires_at", Float, nullable=False),
    PrimaryKeyConstraint("user_id", "time_step"),
    Index("ix_totp_used_expires_at", "expires_at"),
)

_failures = Table(
    "auth_failures",
    _metadata,
    Column("scope", String(16), nullable=False),
    Column("key", String(255), nullable=False),
    Column("count", Integer, nullable=False),
    Column("window_started_at", Float, nullable=False),
    PrimaryKeyConstraint("scope", "key"),
)

# Columns callers may change through update_user(). Anything else is rejected.
_UPDATABLE_USER_FIELDS = frozenset(
    {
        "username",
        "email",
        "display_name",
        "role",
        "hashed_password",
        "totp_secret",
        "email_verified",
        "is_approved",
        "is_active",
        "last_active_at",
    }
)
_BOOL_USER_FIELDS = ("email_verified", "is_approved", "is_active")

# Atomic "increment or restart the window" for a failure counter. SQLite
# evaluates every SET expression against the pre-update row.
_RECORD_FAILURE_SQL = text(
    """
    INSERT INTO auth_failures (scope, key, count, window_started_at)
    VALUES (:scope, :key, 1, :now)
    ON CONFLICT (scope, key) DO UPDATE SET
        count = CASE WHEN auth_failures.window_started_at <= :cutoff
                     THEN 1 ELSE auth_failures.count + 1 END,
        window_started_at = CASE WHEN auth_failures.window_started_at <= :cutoff
                                 THEN :now ELSE auth_failures.window_started_at END
    """
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ts(value: datetime) -> float:
    return value.timestamp()


def _dt(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, sessions and the transient second-factor state.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        uid = store.create_user(User(username="ada", email="ada@example.com"))
        user = store.get_by_id(uid)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._begin() as conn:
            _metadata.create_all(conn)

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        """Open a transaction; map connectivity failures to StoreUnavailable."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except (OperationalError, DBAPIError) as exc:
            logger.error("Auth store unavailable: %s", exc.__class__.__name__)
            raise StoreUnavailable(f"store error: {exc.__class__.__name__}") from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._begin() as conn:
                conn.execute(text("SELECT 1"))
        except StoreUnavailable:
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self._begin() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is taken.
        """
        now = now_iso()
        with self._begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email.lower(),
                    display_name=user.display_name or user.username,
                    role=(user.role or Role.MEMBER).value,
                    hashed_password=user.hashed_password,
                    totp_secret=user.totp_secret,
                    email_verified=1 if user.email_verified else 0,
                    is_approved=1 if user.is_approved else 0,
                    is_active=1 if user.is_active else 0,
                    oauth_provider=user.oauth_provider,
                    oauth_subject=user.oauth_subject,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive username lookup."""
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        with self._begin() as conn:
            row = conn.execute(
                _users.select().where((_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def link_oauth(self, user_id: int, provider: str, subject: str) -> None:
        with self._begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(oauth_provider=provider, oauth_subject=subject, updated_at=now_iso())
            )

    def list_users(self) -> list[User]:
        """Return all users, newest first."""
        with self._begin() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.created_at.desc(), _users.c.id.desc())).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Unknown field names raise ValueError. Role values are stored by their
        enum value; booleans are stored as 0/1.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if not fields:
            return False
        values = dict(fields)
        if "role" in values:
            role = Role.parse(values["role"])
            if role is None:
                raise ValueError(f"Invalid role: {values['role']!r}")
            values["role"] = role.value
        if "email" in values:
            values["email"] = values["email"].lower()
        for name in _BOOL_USER_FIELDS:
            if name in values:
                values[name] = 1 if values[name] else 0
        values["updated_at"] = now_iso()
        with self._begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def touch_last_active(self, user_id: int, when: datetime) -> None:
        with self._begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_active_at=when.isoformat()))

    def count_active_admins(self) -> int:
        with self._begin() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_users)
                .where((_users.c.role == Role.ADMIN.value) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> None:
        """Persist a new session. Raises IntegrityError on an id collision."""
        with self._begin() as conn:
            conn.execute(_sessions.insert().values(**_session_values(session)))

    def get_session(self, session_id: str) -> Session | None:
        with self._begin() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: str, when: datetime) -> None:
        with self._begin() as conn:
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_accessed_at=_ts(when)))

    def delete_session(self, session_id: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int, *, keep: str | None = None) -> int:
        """Delete every session owned by user_id, optionally sparing one id."""
        stmt = _sessions.delete().where(_sessions.c.user_id == user_id)
        if keep is not None:
            stmt = stmt.where(_sessions.c.id != keep)
        with self._begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount

    def list_user_sessions(self, user_id: int) -> list[Session]:
        with self._begin() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _ts(now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Pending authentications
    # ------------------------------------------------------------------

    def insert_pending(self, pending: PendingAuthentication) -> None:
        with self._begin() as conn:
            conn.execute(
                _pending.insert().values(
                    id=pending.id,
                    user_id=pending.user_id,
                    created_at=_ts(pending.created_at),
                    expires_at=_ts(pending.expires_at),
                )
            )

    def get_pending(self, pending_id: str) -> PendingAuthentication | None:
        with self._begin() as conn:
            row = conn.execute(_pending.select().where(_pending.c.id == pending_id)).fetchone()
        if row is None:
            return None
        return PendingAuthentication(
            id=row.id,
            user_id=row.user_id,
            created_at=_dt(row.created_at),
            expires_at=_dt(row.expires_at),
        )

    def delete_pending(self, pending_id: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(_pending.delete().where(_pending.c.id == pending_id))
        return result.rowcount > 0

    def promote_pending(self, pending_id: str, session: Session, now: datetime) -> bool:
        """Consume a live pending authentication and insert its session atomically.

        Returns False (and writes nothing) if the pending record is already
        gone or expired. Raises IntegrityError on a session id collision, in
        which case the pending record is left untouched by the rollback.
        """
        with self._begin() as conn:
            consumed = conn.execute(
                _pending.delete().where((_pending.c.id == pending_id) & (_pending.c.expires_at > _ts(now)))
            )
            if consumed.rowcount != 1:
                return False
            conn.execute(_sessions.insert().values(**_session_values(session)))
        return True

    def delete_expired_pending(self, now: datetime) -> int:
        with self._begin() as conn:
            result = conn.execute(_pending.delete().where(_pending.c.expires_at <= _ts(now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # TOTP replay record
    # ------------------------------------------------------------------

    def record_totp_step(self, user_id: int, time_step: int, expires_at: datetime) -> bool:
        """Record that a code for (user_id, time_step) was consumed.

        Returns False if that pair was already recorded (a replay).
        """
        try:
            with self._begin() as conn:
                conn.execute(_totp_used.insert().values(user_id=user_id, time_step=time_step, expires_at=_ts(expires_at)))
        except IntegrityError:
            return False
        return True

    def delete_expired_totp_steps(self, now: datetime) -> int:
        with self._begin() as conn:
            result = conn.execute(_totp_used.delete().where(_totp_used.c.expires_at <= _ts(now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Failed-attempt counters
    # ------------------------------------------------------------------

    def get_failures(self, scope: str, key: str) -> tuple[int, datetime] | None:
        with self._begin() as conn:
            row = conn.execute(
                _failures.select().where((_failures.c.scope == scope) & (_failures.c.key == key))
            ).fetchone()
        if row is None:
            return None
        return row.count, _dt(row.window_started_at)

    def record_failure(self, scope: str, key: str, now: datetime, window_seconds: int) -> int:
        """Increment the failure counter, restarting it if its window has elapsed.

        Returns the count after the increment.
        """
        params = {"scope": scope, "key": key, "now": _ts(now), "cutoff": _ts(now) - window_seconds}
        with self._begin() as conn:
            conn.execute(_RECORD_FAILURE_SQL, params)
            count = conn.execute(
                select(_failures.c.count).where((_failures.c.scope == scope) & (_failures.c.key == key))
            ).scalar()
        return count or 0

    def clear_failures(self, scope: str, key: str) -> None:
        with self._begin() as conn:
            conn.execute(_failures.delete().where((_failures.c.scope == scope) & (_failures.c.key == key)))

    def delete_stale_failures(self, cutoff: datetime) -> int:
        with self._begin() as conn:
            result = conn.execute(_failures.delete().where(_failures.c.window_started_at <= _ts(cutoff)))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(session: Session) -> dict:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "created_at": _ts(session.created_at),
        "expires_at": _ts(session.expires_at),
        "last_accessed_at": _ts(session.last_accessed_at),
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        display_name=row.display_name,
        role=Role.parse(row.role),
        hashed_password=row.hashed_password,
        totp_secret=row.totp_secret,
        email_verified=bool(row.email_verified),
        is_approved=bool(row.is_approved),
        is_active=bool(row.is_active),
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_active_at=row.last_active_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        created_at=_dt(row.created_at),
        expires_at=_dt(row.expires_at),
        last_accessed_at=_dt(row.last_accessed_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )
