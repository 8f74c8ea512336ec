"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore and RefreshTokenStore are the repositories; _row_to_user /
_row_to_refresh_token are the mappers. Service and route code never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  refresh_tokens.token is UNIQUE, so two rows can never share a value.

  Rotation (RefreshTokenStore.rotate) runs the mark-used UPDATE and the
  replacement INSERT inside one transaction. The UPDATE is conditional
  (WHERE is_used = 0), so when two requests race on the same refresh value
  exactly one of them matches a row; the other sees rowcount 0 and inserts
  nothing [R1].

Concurrency:
  Both stores are synchronous. AuthService calls them through
  asyncio.to_thread(), so engines are created with check_same_thread=False
  and a busy timeout -- concurrent SQLite writers wait for the lock instead of
  failing immediately.

Timestamps are stored as ISO 8601 UTC strings.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, UniqueConstraint, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import RefreshToken, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessiongate_auth.db'}"

# Seconds a SQLite connection waits on a locked database before raising.
_SQLITE_BUSY_TIMEOUT = 30

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for directory-only accounts
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(36), nullable=False, index=True),
    Column("role", String(100), nullable=False),
    UniqueConstraint("user_id", "role"),
)

_user_claims = Table(
    "user_claims",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("claim_type", String(255), nullable=False),
    Column("claim_value", Text, nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("jwt_id", String(64), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str = _DEFAULT_DB_URL) -> Engine:
    """Create an engine with the schema in place. Shared by both stores."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities, their roles and their claims.

    Implements the UserDirectory protocol consumed by AuthService.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="alice", email="a@x.io", hashed_password=hash_password("s3cret!!")))
        user = store.find_by_email("a@x.io")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, engine: Engine | None = None) -> None:
        self.engine: Engine = engine if engine is not None else create_store_engine(db_url)

    def create_user(self, user: User) -> str:
        """Insert a new user and return its generated id.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers (e.g. AuthService.register) translate that into a
        RegistrationError.
        """
        user_id = user.id or str(uuid.uuid4())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    is_active=1 if user.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return user_id

    def find_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.email) == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_username(self, username: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_active(self, user_id: str, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    # ------------------------------------------------------------------
    # Roles and claims (read-only inputs to token issuance)
    # ------------------------------------------------------------------

    def add_role(self, user_id: str, role: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_user_roles.insert().values(user_id=user_id, role=role))
            conn.commit()

    def get_roles(self, user: User) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_roles.select().where(_user_roles.c.user_id == user.id).order_by(_user_roles.c.role)
            ).fetchall()
        return [r.role for r in rows]

    def add_claim(self, user_id: str, claim_type: str, claim_value: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_user_claims.insert().values(user_id=user_id, claim_type=claim_type, claim_value=claim_value))
            conn.commit()

    def get_claims(self, user: User) -> list[tuple[str, str]]:
        """Return (type, value) pairs in insertion order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_claims.select().where(_user_claims.c.user_id == user.id).order_by(_user_claims.c.id)
            ).fetchall()
        return [(r.claim_type, r.claim_value) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for RefreshToken rows and their one-way lifecycle flags."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL, engine: Engine | None = None) -> None:
        self.engine: Engine = engine if engine is not None else create_store_engine(db_url)

    def save(self, record: RefreshToken) -> int:
        """Append a new row and return its id.

        Raises sqlalchemy.exc.IntegrityError if the token value already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(record)))
        record.id = result.inserted_primary_key[0]
        return record.id

    def find_by_value(self, token: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def mark_used(self, record: RefreshToken) -> bool:
        """Flip is_used false -> true. Returns False if it was already used."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == record.token) & (_refresh_tokens.c.is_used == 0))
                .values(is_used=1)
            )
        if result.rowcount == 1:
            record.is_used = True
            return True
        return False

    def rotate(self, old_token: str, replacement: RefreshToken) -> bool:
        """Mark `old_token` used and insert `replacement` atomically [R1].

        Returns False -- and writes nothing -- when `old_token` is no longer
        exchangeable (already used by a concurrent request, or revoked in the
        meantime). Any database error rolls the whole transaction back.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token == old_token)
                    & (_refresh_tokens.c.is_used == 0)
                    & (_refresh_tokens.c.is_revoked == 0)
                )
                .values(is_used=1)
            )
            if result.rowcount != 1:
                return False
            inserted = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(replacement)))
        replacement.id = inserted.inserted_primary_key[0]
        return True

    def revoke(self, token: str, user_id: str) -> bool:
        """Revoke one token. user_id is checked so users cannot revoke others' tokens."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token == token) & (_refresh_tokens.c.user_id == user_id))
                .values(is_revoked=1)
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: str) -> int:
        """Revoke every still-exchangeable token of a user. Returns the count."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_used == 0)
                    & (_refresh_tokens.c.is_revoked == 0)
                )
                .values(is_revoked=1)
            )
        return result.rowcount

    def list_active(self, user_id: str, now: datetime | None = None) -> list[RefreshToken]:
        """Tokens of a user that could still be exchanged, newest first."""
        now_iso = _iso(now) if now is not None else _now_iso()
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_used == 0)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at >= now_iso)
                )
                .order_by(_refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete rows whose expires_at has passed. Returns the number deleted."""
        now_iso = _iso(now) if now is not None else _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < now_iso))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _refresh_token_values(record: RefreshToken) -> dict:
    return {
        "user_id": record.user_id,
        "token": record.token,
        "jwt_id": record.jwt_id,
        "is_used": 1 if record.is_used else 0,
        "is_revoked": 1 if record.is_revoked else 0,
        "created_at": _iso(record.created_at) if record.created_at else _now_iso(),
        "expires_at": _iso(record.expires_at),
    }


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        jwt_id=row.jwt_id,
        is_used=bool(row.is_used),
        is_revoked=bool(row.is_revoked),
        created_at=datetime.fromisoformat(row.created_at),
        expires_at=datetime.fromisoformat(row.expires_at),
    )
