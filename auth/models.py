"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
service do the work; these types only carry shape between them.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Union


@dataclass
class User:
    """An account that can log in and own refresh tokens.

    id is a UUID string assigned by UserStore.create_user().
    hashed_password is None for directory-only accounts: they authenticate
    against the directory service and never have a local password.
    """

    username: str
    email: str
    id: str | None = None
    hashed_password: str | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class RefreshToken:
    """A persisted, single-use refresh credential.

    token is the opaque value handed to the client (UNIQUE in the table).
    jwt_id is the jti of the access token minted alongside it; a refresh is
    only honoured when the presented access token carries the same jti.

    is_used and is_revoked only ever move from False to True.
    """

    user_id: str
    token: str
    jwt_id: str
    expires_at: datetime
    id: int | None = None
    is_used: bool = False
    is_revoked: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True)
class IssuedToken:
    """A freshly signed access token and the metadata needed to correlate it."""

    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    jwt_id: str


@dataclass(frozen=True)
class LoginResult:
    user: User
    tokens: TokenPair


# ---------------------------------------------------------------------------
# Refresh outcome -- tagged variant instead of exception control flow
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RefreshSucceeded:
    user: User
    tokens: TokenPair
    success: bool = True


@dataclass(frozen=True)
class RefreshFailed:
    errors: list[str] = field(default_factory=list)
    success: bool = False


RefreshResult = Union[RefreshSucceeded, RefreshFailed]
