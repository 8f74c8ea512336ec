"""
auth/claims.py -- Unverified claim reads and the typed claim view.

ClaimsExtractor decodes a JWT payload WITHOUT checking its signature. That is
only acceptable for contextual look-ups on a request the RequestAuthenticator
has already verified (e.g. "who am I" answering with the email claim). It must
never be the sole basis of an authorization decision -- use TokenSigner.verify()
for that.

TokenClaims pulls the well-known claims out as named fields and keeps
everything else (roles, custom claims) in `extra`, passed through untouched.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Union

from jose import JWTError, jwt

from auth.errors import ClaimMissingError, MalformedTokenError

# Claim names shared by the signer, the extractor and the service.
UID = "uid"
SUB = "sub"
EMAIL = "email"
JTI = "jti"
EXP = "exp"
IAT = "iat"
ROLE = "role"

WELL_KNOWN_CLAIMS = frozenset({UID, SUB, EMAIL, JTI, EXP, IAT})

ClaimValue = Union[str, list[str]]


def _to_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _to_claim_value(value: Any) -> ClaimValue:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return str(value)


@dataclass(frozen=True)
class TokenClaims:
    """Typed view over a decoded JWT payload."""

    uid: str | None = None
    sub: str | None = None
    email: str | None = None
    jti: str | None = None
    exp: datetime | None = None
    iat: datetime | None = None
    extra: dict[str, ClaimValue] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> TokenClaims:
        return cls(
            uid=_optional_str(payload.get(UID)),
            sub=_optional_str(payload.get(SUB)),
            email=_optional_str(payload.get(EMAIL)),
            jti=_optional_str(payload.get(JTI)),
            exp=_to_datetime(payload.get(EXP)),
            iat=_to_datetime(payload.get(IAT)),
            extra={k: _to_claim_value(v) for k, v in payload.items() if k not in WELL_KNOWN_CLAIMS},
        )

    @property
    def roles(self) -> list[str]:
        value = self.extra.get(ROLE)
        if value is None:
            return []
        return [value] if isinstance(value, str) else list(value)


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def strip_scheme(token: str) -> str:
    """Remove a leading 'Bearer ' so raw Authorization header values work too."""
    token = token.strip()
    if token[:7].lower() == "bearer ":
        return token[7:].strip()
    return token


class ClaimsExtractor:
    """Stateless reader for claims of an (already authenticated) token."""

    def read_payload(self, token: str) -> dict[str, Any]:
        if not token:
            raise MalformedTokenError("empty token")
        try:
            return jwt.get_unverified_claims(strip_scheme(token))
        except JWTError as exc:
            raise MalformedTokenError(str(exc)) from exc

    def read_claims(self, token: str) -> TokenClaims:
        return TokenClaims.from_payload(self.read_payload(token))

    def read_claim(self, token: str, claim: str) -> Any:
        """Return one claim's raw value. Raises ClaimMissingError when absent."""
        payload = self.read_payload(token)
        value = payload.get(claim)
        if value is None or value == "":
            raise ClaimMissingError(claim)
        return value
