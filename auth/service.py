"""
auth/service.py -- Login, registration and refresh-token rotation.

AuthService is the only component that creates or mutates RefreshToken rows.

Two error channels [E1]:
  Hard faults -- login/registration problems (unknown account, bad password,
      directory failure, duplicate sign-up) raise AuthenticationError or
      RegistrationError. They usually mean misconfiguration or an attack and
      are logged at WARNING/ERROR.
  Soft failures -- every routine refresh rejection (expired, replayed,
      revoked, mismatched) is returned as RefreshFailed and logged at INFO.

Refresh exchange, in order; the first failing step short-circuits:
  1. access token signature/algorithm (expiry ignored)
  2. advisory expiry of the access token against the service clock
  3. refresh value exists
  4. not already used
  5. not revoked
  6. access token jti == stored jwt_id
  7. refresh record not expired
  8. rotate: mark used + insert replacement in ONE transaction [R1]

Blocking work (bcrypt, SQL, directory HTTP) runs in worker threads through
asyncio.to_thread() so the event loop never stalls. A cancelled caller cannot
leave a half-written rotation behind: the thread finishes or rolls back its
single transaction.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

from auth.claims import ROLE, WELL_KNOWN_CLAIMS
from auth.credentials import CredentialVerifier, CredentialVerifierProtocol, UserRegistry
from auth.errors import (
    AccountNotFoundError,
    AlgorithmMismatchError,
    CredentialVerificationError,
    InvalidCredentialsError,
    RegistrationError,
    TokenError,
)
from auth.models import LoginResult, RefreshFailed, RefreshResult, RefreshSucceeded, RefreshToken, TokenPair, User
from auth.store import RefreshTokenStore
from auth.tokens import TokenSigner, equalize_timing, generate_refresh_value, hash_password

logger = logging.getLogger("sessiongate.auth")

# Soft-failure messages returned to API clients.
MSG_ENCRYPTION_ERRORS = "The token has encryption errors"
MSG_TOKEN_ERRORS = "The token has errors, you have to log in again"
MSG_TOKEN_EXPIRED = "The token has expired"
MSG_NOT_FOUND = "The token does not exist"
MSG_ALREADY_USED = "The token has already been used"
MSG_REVOKED = "The token has been revoked"
MSG_MISMATCH = "The token does not match initial value"
MSG_REFRESH_EXPIRED = "The refresh token has expired"
MSG_ACCOUNT_DISABLED = "The account is disabled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class AuthService:
    """Orchestrates the credential check, token issuance and rotation.

    Usage:
        service = AuthService.from_settings(settings, users=UserStore(), tokens=RefreshTokenStore())
        result = await service.login("alice@example.com", "s3cret!!")
        outcome = await service.refresh(result.tokens.access_token, result.tokens.refresh_token)
    """

    def __init__(
        self,
        users: UserRegistry,
        tokens: RefreshTokenStore,
        signer: TokenSigner,
        verifier: Optional[CredentialVerifierProtocol] = None,
        *,
        refresh_lifetime_months: int = 6,
        expiry_grace: timedelta = timedelta(0),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._users = users
        self._tokens = tokens
        self._signer = signer
        self._verifier = verifier if verifier is not None else CredentialVerifier()
        self.refresh_lifetime_months = refresh_lifetime_months
        self.expiry_grace = expiry_grace
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, *, users, tokens, verifier=None, signer=None, clock=_utcnow) -> AuthService:
        return cls(
            users,
            tokens,
            signer if signer is not None else TokenSigner.from_settings(settings),
            verifier,
            refresh_lifetime_months=settings.refresh_token_lifetime_months,
            expiry_grace=timedelta(seconds=settings.refresh_expiry_grace_seconds),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        """Authenticate by email + password and issue a fresh token pair.

        Exactly one credential path runs per attempt: the directory when it
        knows the email, the local bcrypt hash otherwise. Raises
        AccountNotFoundError, InvalidCredentialsError or
        CredentialVerificationError; on any of them no refresh row is written.
        """
        email = email.strip()
        user = await asyncio.to_thread(self._users.find_by_email, email)
        if user is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            await asyncio.to_thread(equalize_timing, password)
            logger.warning("Login rejected: no account for %s", email)
            raise AccountNotFoundError(f"no account registered for {email}")

        try:
            if await asyncio.to_thread(self._verifier.directory_account_exists, email):
                path = "directory"
                valid = await asyncio.to_thread(self._verifier.directory_authenticate, email, password)
            else:
                path = "local"
                valid = await asyncio.to_thread(self._verifier.verify_password, user, password)
        except Exception as exc:
            logger.exception("Credential verification failed for %s", email)
            raise CredentialVerificationError(f"credential verification failed for {email}") from exc

        if not valid:
            logger.warning("Login rejected: bad %s credentials for %s", path, email)
            raise InvalidCredentialsError(f"{path} authentication failed for {email}")
        if not user.is_active:
            logger.warning("Login rejected: account %s is disabled", user.id)
            raise InvalidCredentialsError(f"account {user.id} is disabled")

        tokens = await self.issue_token_pair(user)
        await asyncio.to_thread(self._users.update_last_login, user.id)
        logger.info("Login succeeded for user %s via %s path", user.id, path)
        return LoginResult(user=user, tokens=tokens)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, username: str, email: str, password: str) -> LoginResult:
        """Create a local account and log it in. Raises RegistrationError on duplicates."""
        username = username.strip()
        email = email.strip().lower()
        if await asyncio.to_thread(self._users.find_by_username, username) is not None:
            raise RegistrationError(f"username '{username}' is already registered")
        if await asyncio.to_thread(self._users.find_by_email, email) is not None:
            raise RegistrationError(f"email '{email}' is already registered")

        hashed = await asyncio.to_thread(hash_password, password)
        new_user = User(username=username, email=email, hashed_password=hashed)
        try:
            new_user.id = await asyncio.to_thread(self._users.create_user, new_user)
        except IntegrityError as exc:
            # A concurrent sign-up won the race between the checks and the insert.
            raise RegistrationError(f"username or email already registered: {username} / {email}") from exc

        tokens = await self.issue_token_pair(new_user)
        logger.info("Registered user %s", new_user.id)
        return LoginResult(user=new_user, tokens=tokens)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, access_token: str, refresh_token: str) -> RefreshResult:
        """Exchange a (possibly expired) access token + refresh value for a new pair."""
        # 1. Structural validation -- signature and algorithm, expiry ignored.
        try:
            claims = self._signer.verify_ignoring_expiry(access_token)
        except AlgorithmMismatchError as exc:
            return self._reject(MSG_ENCRYPTION_ERRORS, exc)
        except TokenError as exc:
            return self._reject(MSG_TOKEN_ERRORS, exc)

        now = self._clock()

        # 2. Advisory expiry check, kept alongside the cryptographic one.
        if claims.exp is not None and now - self.expiry_grace > claims.exp:
            return self._reject(MSG_TOKEN_EXPIRED)

        # 3. Existence
        stored = await asyncio.to_thread(self._tokens.find_by_value, refresh_token)
        if stored is None:
            return self._reject(MSG_NOT_FOUND)

        # 4. Single use
        if stored.is_used:
            return self._reject(MSG_ALREADY_USED, detail=f"record {stored.id}")

        # 5. Revocation
        if stored.is_revoked:
            return self._reject(MSG_REVOKED, detail=f"record {stored.id}")

        # 6. Correlation with the access token that spawned it
        if stored.jwt_id != claims.jti:
            return self._reject(MSG_MISMATCH, detail=f"record {stored.id}")

        # 7. Refresh record expiry
        if now > _as_utc(stored.expires_at):
            return self._reject(MSG_REFRESH_EXPIRED, detail=f"record {stored.id}")

        # 8. Rotation
        user = await asyncio.to_thread(self._users.find_by_id, stored.user_id)
        if user is None:
            return self._reject(MSG_NOT_FOUND, detail=f"owner {stored.user_id} is gone")
        if not user.is_active:
            return self._reject(MSG_ACCOUNT_DISABLED, detail=f"owner {stored.user_id}")

        tokens, replacement = await self._mint(user)
        rotated = await asyncio.to_thread(self._tokens.rotate, stored.token, replacement)
        if not rotated:
            # Lost the race against a concurrent exchange of the same value.
            return self._reject(MSG_ALREADY_USED, detail=f"record {stored.id} rotated concurrently")

        logger.info("Rotated refresh token %s -> %s for user %s", stored.id, replacement.id, user.id)
        return RefreshSucceeded(user=user, tokens=tokens)

    @staticmethod
    def _reject(message: str, exc: Optional[Exception] = None, detail: str = "") -> RefreshFailed:
        cause = f"{type(exc).__name__}: {exc}" if exc is not None else detail
        logger.info("Refresh rejected: %s%s", message, f" ({cause})" if cause else "")
        return RefreshFailed(errors=[message])

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def revoke(self, user_id: str, refresh_token: str) -> bool:
        revoked = await asyncio.to_thread(self._tokens.revoke, refresh_token, user_id)
        if revoked:
            logger.info("User %s revoked a refresh token", user_id)
        return revoked

    async def revoke_all(self, user_id: str) -> int:
        count = await asyncio.to_thread(self._tokens.revoke_all_for_user, user_id)
        logger.info("Revoked %d refresh token(s) for user %s", count, user_id)
        return count

    # ------------------------------------------------------------------
    # Token-pair issuance
    # ------------------------------------------------------------------

    async def issue_token_pair(self, user: User) -> TokenPair:
        """Mint an access token + refresh record and persist the record."""
        tokens, record = await self._mint(user)
        await asyncio.to_thread(self._tokens.save, record)
        return tokens

    async def _mint(self, user: User) -> tuple[TokenPair, RefreshToken]:
        extra = await asyncio.to_thread(self._collect_claims, user)
        issued = self._signer.issue(user, extra)
        now = self._clock()
        record = RefreshToken(
            user_id=user.id,
            token=generate_refresh_value(),
            jwt_id=issued.jti,
            is_used=False,
            is_revoked=False,
            created_at=now,
            expires_at=add_months(now, self.refresh_lifetime_months),
        )
        return TokenPair(access_token=issued.token, refresh_token=record.token, jwt_id=issued.jti), record

    def _collect_claims(self, user: User) -> dict[str, Any]:
        """Union of the user's stored claims and roles, passed through unvalidated."""
        extra: dict[str, Any] = {}
        for claim_type, value in self._users.get_claims(user):
            if claim_type in WELL_KNOWN_CLAIMS:
                continue
            if claim_type in extra:
                current = extra[claim_type]
                extra[claim_type] = (current if isinstance(current, list) else [current]) + [value]
            else:
                extra[claim_type] = value
        roles = self._users.get_roles(user)
        if roles:
            extra[ROLE] = roles
        return extra
