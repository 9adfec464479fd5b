"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore (credential store) and TokenStore (refresh-token store) are the
repositories; _row_to_user / _row_to_token are the mappers. The service never
touches SQL directly.

AuthDatabase owns the engine and the schema and hands out both stores plus a
transaction scope. Store methods that take part in multi-row operations
accept an optional `conn`; when given, they run inside the caller's
transaction instead of opening their own.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  No in-process locking. Correctness under concurrent requests comes from the
  database:
  - users.email is unique among non-deleted rows (partial unique index), so
    two racing registrations cannot both succeed.
  - Refresh rotation and revocation are conditional UPDATEs
    (WHERE revoked_at IS NULL ...). Only one caller can win a given token.

Timestamps are stored as ISO 8601 UTC text with fixed microsecond precision,
so lexicographic comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import RefreshToken, Role, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(50)),
    Column("last_name", String(50)),
    Column("role", String(10), nullable=False, server_default=Role.USER.value),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    Column("password_changed_at", String(32)),
    Column("deleted_at", String(32)),
)

# Soft-deleted rows keep their email, so uniqueness only applies to live rows.
Index(
    "ux_users_email_live",
    _users.c.email,
    unique=True,
    sqlite_where=_users.c.deleted_at.is_(None),
    postgresql_where=_users.c.deleted_at.is_(None),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("device_id", String(128), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
)

Index("ix_refresh_tokens_user_device", _refresh_tokens.c.user_id, _refresh_tokens.c.device_id)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection, so this runs on the engine's connect
    event rather than once at startup. WAL is a no-op for in-memory DBs.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _new_id() -> str:
    return str(uuid.uuid4())


@contextmanager
def _scope(engine: Engine, conn: Connection | None) -> Iterator[Connection]:
    """Yield the caller's connection, or open a transaction that commits on exit."""
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Email lookups expect the caller to pass an already-normalised (lower-case)
    address; the service does that once at its boundary.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user: User, now: datetime, conn: Connection | None = None) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if a live user already owns the
        email. The service maps that to ConflictError, which covers the race
        where two registrations pass the existence check at the same time.
        """
        user_id = user.id or _new_id()
        stamp = _iso(now)
        with _scope(self.engine, conn) as c:
            c.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=user.role.value,
                    is_email_verified=1 if user.is_email_verified else 0,
                    created_at=stamp,
                    updated_at=stamp,
                    last_login_at=_iso(user.last_login_at),
                )
            )
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row)

    def get_by_email(self, email: str) -> User | None:
        """Return the live (non-deleted) user with this email, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) & (_users.c.deleted_at.is_(None)))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key, deleted or not. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_last_login(self, user_id: str, now: datetime, conn: Connection | None = None) -> None:
        stamp = _iso(now)
        with _scope(self.engine, conn) as c:
            c.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=stamp, updated_at=stamp))

    def set_password(self, user_id: str, hashed_password: str, now: datetime, conn: Connection | None = None) -> bool:
        """Replace the password hash and stamp password_changed_at.

        Returns True if a row was updated, False if user_id was not found.
        """
        stamp = _iso(now)
        with _scope(self.engine, conn) as c:
            result = c.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, password_changed_at=stamp, updated_at=stamp)
            )
        return result.rowcount > 0

    def soft_delete(self, user_id: str, now: datetime, conn: Connection | None = None) -> bool:
        """Stamp deleted_at on a live user. Returns False if already deleted or missing."""
        stamp = _iso(now)
        with _scope(self.engine, conn) as c:
            result = c.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
                .values(deleted_at=stamp, updated_at=stamp)
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Token store
# ---------------------------------------------------------------------------


class TokenStore:
    """Repository for RefreshToken records. Rows are revoked, never deleted."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, token: RefreshToken, now: datetime, conn: Connection | None = None) -> RefreshToken:
        token_id = token.id or _new_id()
        with _scope(self.engine, conn) as c:
            c.execute(
                _refresh_tokens.insert().values(
                    id=token_id,
                    token_hash=token.token_hash,
                    user_id=token.user_id,
                    device_id=token.device_id,
                    created_at=_iso(now),
                    expires_at=_iso(token.expires_at),
                )
            )
        return RefreshToken(
            id=token_id,
            token_hash=token.token_hash,
            user_id=token.user_id,
            device_id=token.device_id,
            created_at=now,
            expires_at=token.expires_at,
        )

    def get_by_hash(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def list_for_user(self, user_id: str) -> list[RefreshToken]:
        """Return every token row for a user, newest first (live, revoked, and expired)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def rotate(self, token_hash: str, replacement: RefreshToken, now: datetime) -> RefreshToken | None:
        """Revoke a live token and insert its replacement in one transaction.

        The revoke is conditional on the token still being live. If another
        request rotated or revoked it first, nothing is written and None is
        returned.
        """
        with self.engine.begin() as conn:
            if not self._revoke_live(conn, token_hash, now):
                return None
            return self.create(replacement, now, conn=conn)

    def revoke(self, token_hash: str, now: datetime) -> bool:
        """Revoke one token if it is not already revoked. Returns True if a row changed."""
        stamp = _iso(now)
        with _scope(self.engine, None) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=stamp)
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: str, now: datetime, conn: Connection | None = None) -> int:
        """Revoke every live token the user holds. Returns the number revoked."""
        stamp = _iso(now)
        with _scope(self.engine, conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked_at.is_(None))
                    & (_refresh_tokens.c.expires_at > stamp)
                )
                .values(revoked_at=stamp)
            )
        return result.rowcount

    def has_live_session(self, user_id: str, device_id: str, now: datetime) -> bool:
        """True if the user holds at least one live refresh token for this device."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_refresh_tokens.c.id)
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.device_id == device_id)
                    & (_refresh_tokens.c.revoked_at.is_(None))
                    & (_refresh_tokens.c.expires_at > _iso(now))
                )
                .limit(1)
            ).fetchone()
        return row is not None

    @staticmethod
    def _revoke_live(conn: Connection, token_hash: str, now: datetime) -> bool:
        stamp = _iso(now)
        result = conn.execute(
            _refresh_tokens.update()
            .where(
                (_refresh_tokens.c.token_hash == token_hash)
                & (_refresh_tokens.c.revoked_at.is_(None))
                & (_refresh_tokens.c.expires_at > stamp)
            )
            .values(revoked_at=stamp)
        )
        return result.rowcount == 1


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class AuthDatabase:
    """Engine owner for the auth schema.

    Usage:
        db = AuthDatabase("sqlite:///./plantcare_auth.db")
        user = db.users.get_by_email("alice@example.com")
        with db.transaction() as conn:
            db.users.set_password(user.id, new_hash, now, conn=conn)
            db.tokens.revoke_all_for_user(user.id, now, conn=conn)
        db.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Busy timeout: a locked database fails the call instead of hanging.
            connect_args["timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)
        self.users = UserStore(self.engine)
        self.tokens = TokenStore(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open one transaction for several store calls; commits on success, rolls back on error."""
        with self.engine.begin() as conn:
            yield conn

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
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
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        is_email_verified=bool(row.is_email_verified),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
        last_login_at=_parse(row.last_login_at),
        password_changed_at=_parse(row.password_changed_at),
        deleted_at=_parse(row.deleted_at),
    )


def _row_to_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        device_id=row.device_id,
        created_at=_parse(row.created_at),
        expires_at=_parse(row.expires_at),
        revoked_at=_parse(row.revoked_at),
    )
