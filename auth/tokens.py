"""
auth/tokens.py -- JWT signing/verification, password hashing, refresh values.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       uid, sub (user name), email, jti and expiry. TokenSigner is built from
       an injected Settings instance -- there is no module-level key.

       Verification inspects the unverified header BEFORE handing the token to
       jose and rejects any algorithm other than HS256. That closes the
       "alg: none" / algorithm-confusion class of attacks even on the
       verify_ignoring_expiry() path used by refresh-token exchange [A1].

       Failures raise a TokenError subclass (auth/errors.py). Callers collapse
       them all to "not authenticated"; the subclass only feeds the logs.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in AuthService.login() so response time
       does not reveal whether an email is registered [C1].

  Refresh values: 35 characters from [A-Z0-9] drawn with `secrets`, followed
       by a uuid4 -- long, opaque and unguessable. They are random strings,
       not JWTs, so a stolen value says nothing about its owner.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Mapping

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError
from jose.utils import base64url_decode, base64url_encode

from auth.claims import EMAIL, EXP, IAT, JTI, SUB, UID, WELL_KNOWN_CLAIMS, ClaimsExtractor, TokenClaims
from auth.errors import (
    AlgorithmMismatchError,
    BadSignatureError,
    ClaimMissingError,
    InvalidClaimsError,
    MalformedTokenError,
    TokenExpiredError,
)

from auth.models import IssuedToken

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

logger = logging.getLogger("sessiongate.auth")

ALGORITHM = "HS256"

_REFRESH_ALPHABET = string.ascii_uppercase + string.digits
_REFRESH_RANDOM_LENGTH = 35


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_canonical_segment(segment: str) -> bool:
    """True when `segment` is the exact base64url encoding of the bytes it decodes to.

    base64url ignores the spare low bits of a segment's last character, so
    several spellings can decode to the same bytes. Only the canonical one
    is accepted.
    """
    try:
        raw = segment.encode("ascii")
        return base64url_encode(base64url_decode(raw)) == raw
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt (this is
    a known bcrypt limitation). The API layer caps password length well below
    that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed or non-bcrypt hash in the DB.
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessiongate_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Burn one bcrypt check so unknown accounts cost as much as known ones."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Refresh token values
# ---------------------------------------------------------------------------


def generate_refresh_value() -> str:
    random_part = "".join(secrets.choice(_REFRESH_ALPHABET) for _ in range(_REFRESH_RANDOM_LENGTH))
    return f"{random_part}{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class TokenSigner:
    """Creates and verifies HS256 access tokens with a shared secret.

    Stateless after construction and safe to share between concurrent
    requests. Issuer/audience are emitted and validated only when configured;
    leeway defaults to zero (strict expiry).

    Usage:
        signer = TokenSigner.from_settings(get_settings())
        issued = signer.issue(user, ttl=timedelta(minutes=15))
        user_id = signer.verify(issued.token)
    """

    def __init__(
        self,
        secret_key: str,
        *,
        access_ttl: timedelta = timedelta(hours=1),
        issuer: str = "",
        audience: str = "",
        leeway_seconds: int = 0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("secret_key is required")
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock
        self._extractor = ClaimsExtractor()

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> TokenSigner:
        kwargs: dict[str, Any] = {
            "access_ttl": timedelta(seconds=settings.access_token_expire_seconds),
            "issuer": settings.token_issuer,
            "audience": settings.token_audience,
            "leeway_seconds": settings.token_leeway_seconds,
        }
        kwargs.update(overrides)
        return cls(settings.secret_key, **kwargs)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        user: User,
        extra_claims: Mapping[str, Any] | None = None,
        ttl: timedelta | None = None,
    ) -> IssuedToken:
        """Sign a new access token for `user`.

        extra_claims are unioned into the payload as-is (roles, custom claims).
        They cannot override uid/sub/email/jti/exp/iat.
        """
        lifetime = ttl if ttl is not None else self.access_ttl
        if lifetime <= timedelta(0):
            raise ValueError("token ttl must be positive")
        if not user.id:
            raise ValueError("cannot issue a token for a user without an id")

        issued_at = self._clock()
        expires_at = issued_at + lifetime
        jti = str(uuid.uuid4())

        payload: dict[str, Any] = {}
        for key, value in (extra_claims or {}).items():
            if key not in WELL_KNOWN_CLAIMS:
                payload[key] = value
        payload.update(
            {
                UID: user.id,
                SUB: user.username,
                EMAIL: user.email,
                JTI: jti,
                IAT: issued_at,
                EXP: expires_at,
            }
        )
        if self.issuer:
            payload["iss"] = self.issuer
        if self.audience:
            payload["aud"] = self.audience

        token = jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)
        return IssuedToken(token=token, jti=jti, issued_at=issued_at, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str) -> str:
        """Fully verify a token and return its uid claim.

        Raises TokenExpiredError, BadSignatureError (AlgorithmMismatchError),
        MalformedTokenError, InvalidClaimsError or ClaimMissingError.
        """
        payload = self._decode(token, verify_exp=True)
        uid = payload.get(UID)
        if not uid:
            raise ClaimMissingError(UID)
        return str(uid)

    def verify_ignoring_expiry(self, token: str) -> TokenClaims:
        """Verify signature, algorithm and issuer/audience but not lifetime.

        Only the refresh-token exchange uses this: the access token presented
        there is expected to be stale. The algorithm check still applies [A1].
        """
        payload = self._decode(token, verify_exp=False)
        if not payload.get(JTI):
            raise ClaimMissingError(JTI)
        return TokenClaims.from_payload(payload)

    def read_claim(self, token: str, claim: str) -> Any:
        """Unverified single-claim read. See auth/claims.py for the caveats."""
        return self._extractor.read_claim(token, claim)

    def _decode(self, token: str, *, verify_exp: bool) -> dict[str, Any]:
        if not token or not token.strip():
            raise MalformedTokenError("empty token")

        # Structural pre-check: a token we cannot even parse is "malformed",
        # which keeps the taxonomy distinct from a parseable-but-forged one.
        try:
            header = jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise MalformedTokenError(str(exc)) from exc

        segments = token.split(".")
        if len(segments) != 3 or not all(_is_canonical_segment(s) for s in segments):
            raise MalformedTokenError("token segment is not canonical base64url")

        alg = str(header.get("alg") or "")
        if alg.upper() != ALGORITHM:
            raise AlgorithmMismatchError(f"unexpected signing algorithm {alg!r}")

        options = {
            "verify_exp": verify_exp,
            "verify_aud": bool(self.audience),
            "verify_iss": bool(self.issuer),
            "leeway": self.leeway_seconds,
        }
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                audience=self.audience or None,
                issuer=self.issuer or None,
                options=options,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError(str(exc)) from exc
        except JWTClaimsError as exc:
            raise InvalidClaimsError(str(exc)) from exc
        except JWTError as exc:
            raise BadSignatureError(str(exc)) from exc
        if EXP not in payload:
            raise ClaimMissingError(EXP)
        return payload
