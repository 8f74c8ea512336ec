"""
API request and response models for SessionGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (refreshToken, not refresh_token). Every model uses
an alias generator; populate_by_name lets Python code build them with
snake_case keyword arguments. Serialize with model_dump(by_alias=True).

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# bcrypt ignores everything past 72 bytes; cap well below that.
PASSWORD_MAX_LENGTH = 64

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)
_CAMEL_FROZEN = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Body for POST /api/v1/auth/login."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class TokenRequest(BaseModel):
    """Body for POST /api/v1/auth/refresh-token.

    token is the (usually expired) access token; refresh_token is the opaque
    single-use value issued with it.
    """

    model_config = _CAMEL

    token: str = Field(min_length=1, max_length=8192)
    refresh_token: str = Field(min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    """Body for POST /api/v1/auth/register."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.@-]+$")
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8, max_length=PASSWORD_MAX_LENGTH)


class RevokeRequest(BaseModel):
    """Body for POST /api/v1/auth/revoke."""

    model_config = _CAMEL

    refresh_token: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for a successful login or registration."""

    model_config = _CAMEL_FROZEN

    id: str
    token: str
    email: str
    username: str
    refresh_token: str
    success: bool = True


class RefreshResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh-token.

    Routine rejections are returned with HTTP 200, success=False and a
    human-readable reason in errors; token and refresh_token are then null.
    """

    model_config = _CAMEL_FROZEN

    token: Optional[str] = None
    refresh_token: Optional[str] = None
    success: bool
    errors: list[str] = Field(default_factory=list)


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = _CAMEL_FROZEN

    id: str
    username: str
    email: str
    roles: list[str] = Field(default_factory=list)


class LogoutResponse(BaseModel):
    model_config = _CAMEL_FROZEN

    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
