"""
auth/errors.py -- Exception taxonomy for the auth package.

Two families:

  TokenError -- a presented JWT failed verification. The subclasses exist so
      the request middleware can log *why* a token was rejected; callers treat
      every TokenError the same way ("not authenticated").

  AuthenticationError / RegistrationError -- hard faults raised by
      AuthService.login() and AuthService.register(). The API layer maps them
      to 401 / 409 with a generic message; the exception text is for logs only.

Routine refresh-token rejections (expired, used, revoked, mismatched) are NOT
exceptions -- AuthService.refresh() returns a RefreshFailed value for those.

Layer rule: stdlib only.
"""

from __future__ import annotations


class TokenError(Exception):
    """Base class for access-token verification failures."""

    reason = "invalid"


class MalformedTokenError(TokenError):
    """The token is not a decodable three-part JWS."""

    reason = "malformed"


class BadSignatureError(TokenError):
    """The signature does not match the header + payload under our secret."""

    reason = "bad_signature"


class AlgorithmMismatchError(BadSignatureError):
    """The header names an algorithm other than the one we sign with.

    Subclass of BadSignatureError: a token signed with "none" or a foreign
    algorithm is, for every caller, a token whose signature cannot be trusted.
    """

    reason = "algorithm_mismatch"


class TokenExpiredError(TokenError):
    reason = "expired"


class ClaimMissingError(TokenError):
    """A required claim (uid, jti, ...) is absent or empty."""

    reason = "claim_missing"

    def __init__(self, claim: str) -> None:
        super().__init__(f"claim '{claim}' is missing")
        self.claim = claim


class InvalidClaimsError(TokenError):
    """Issuer or audience did not match the configured values."""

    reason = "invalid_claims"


# ---------------------------------------------------------------------------
# Hard faults
# ---------------------------------------------------------------------------


class AuthenticationError(Exception):
    """Login failed. Subclasses carry the internal reason for the logs."""


class AccountNotFoundError(AuthenticationError):
    pass


class InvalidCredentialsError(AuthenticationError):
    pass


class CredentialVerificationError(AuthenticationError):
    """The credential backend itself failed (directory down, bad hash, ...)."""


class DirectoryUnavailableError(Exception):
    """The directory service could not be reached or answered unexpectedly."""


class RegistrationError(Exception):
    """Self-registration rejected (duplicate username or email)."""
