"""
tests/test_auth_service.py -- Behaviour tests for auth/service.py.

Coroutines are driven with asyncio.run(); the service offloads every store
call to a worker thread, so the tests exercise the real threading path.

Covers:
  - Login: local path happy case, wrong password, unknown email, disabled
    account, directory path selection, verifier failures. No refresh row is
    written on any failure.
  - Issued pair: claims carry roles and custom claims, record correlated by jti
  - Refresh state machine, one test per rejection step, in order
  - Single use: sequential and concurrent exchanges of one refresh value;
    a cancelled exchange never leaves a used value without its successor
  - Rotation chain token1 -> token2 -> token3
  - Revocation (single and all) and registration
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from jose import jwt

from auth.errors import (
    AccountNotFoundError,
    CredentialVerificationError,
    DirectoryUnavailableError,
    InvalidCredentialsError,
    RegistrationError,
)
from auth.models import RefreshFailed, RefreshSucceeded, RefreshToken, User
from auth.service import (
    MSG_ACCOUNT_DISABLED,
    MSG_ALREADY_USED,
    MSG_ENCRYPTION_ERRORS,
    MSG_MISMATCH,
    MSG_NOT_FOUND,
    MSG_REFRESH_EXPIRED,
    MSG_REVOKED,
    MSG_TOKEN_ERRORS,
    MSG_TOKEN_EXPIRED,
    AuthService,
    add_months,
)
from auth.tokens import TokenSigner, generate_refresh_value
from conftest import ALICE_PASSWORD, TEST_SECRET


def _login(service: AuthService, email: str = "alice@example.com", password: str = ALICE_PASSWORD):
    return asyncio.run(service.login(email, password))


def _refresh(service: AuthService, access: str, refresh: str):
    return asyncio.run(service.refresh(access, refresh))


def _failed_with(outcome, message: str) -> bool:
    return isinstance(outcome, RefreshFailed) and outcome.success is False and outcome.errors == [message]


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_local_login_issues_and_persists_pair(self, service, stores, alice) -> None:
        """Login with correct credentials for a non-directory user."""
        _, tokens = stores
        result = _login(service)
        assert result.user.id == alice.id
        assert result.tokens.access_token and result.tokens.refresh_token
        row = tokens.find_by_value(result.tokens.refresh_token)
        assert row is not None
        assert row.is_used is False and row.is_revoked is False
        assert row.jwt_id == result.tokens.jwt_id

    def test_login_stamps_last_login(self, service, stores, alice) -> None:
        users, _ = stores
        _login(service)
        assert users.find_by_id(alice.id).last_login is not None

    def test_email_lookup_is_case_insensitive(self, service, alice) -> None:
        assert _login(service, email="  ALICE@example.com ").user.id == alice.id

    def test_wrong_password_creates_no_row(self, service, stores, alice) -> None:
        _, tokens = stores
        with pytest.raises(InvalidCredentialsError):
            _login(service, password="not-the-password")
        assert tokens.list_active(alice.id) == []

    def test_unknown_email(self, service, stores, alice) -> None:
        with pytest.raises(AccountNotFoundError):
            _login(service, email="nobody@example.com")

    def test_disabled_account_rejected(self, service, stores, alice) -> None:
        users, tokens = stores
        users.set_active(alice.id, False)
        with pytest.raises(InvalidCredentialsError):
            _login(service)
        assert tokens.list_active(alice.id) == []

    def test_access_token_carries_roles_and_claims(self, service, alice) -> None:
        result = _login(service)
        payload = jwt.get_unverified_claims(result.tokens.access_token)
        assert payload["uid"] == alice.id
        assert payload["sub"] == "alice"
        assert payload["email"] == "alice@example.com"
        assert payload["jti"] == result.tokens.jwt_id
        assert payload["role"] == ["admin"]
        assert payload["department"] == "engineering"

    def test_refresh_record_lives_six_months(self, service, stores, alice) -> None:
        _, tokens = stores
        before = datetime.now(timezone.utc)
        row = tokens.find_by_value(_login(service).tokens.refresh_token)
        assert add_months(before, 6) - timedelta(seconds=5) <= row.expires_at <= add_months(before, 6) + timedelta(
            seconds=5
        )


class TestDirectoryPath:
    def _service(self, stores, signer, verifier) -> AuthService:
        users, tokens = stores
        return AuthService(users, tokens, signer, verifier)

    def test_directory_account_uses_directory_only(self, stores, signer, alice) -> None:
        verifier = MagicMock()
        verifier.directory_account_exists.return_value = True
        verifier.directory_authenticate.return_value = True
        result = _login(self._service(stores, signer, verifier), password="directory-secret")
        assert result.user.id == alice.id
        verifier.directory_authenticate.assert_called_once_with("alice@example.com", "directory-secret")
        verifier.verify_password.assert_not_called()

    def test_directory_rejection_is_invalid_credentials(self, stores, signer, alice) -> None:
        _, tokens = stores
        verifier = MagicMock()
        verifier.directory_account_exists.return_value = True
        verifier.directory_authenticate.return_value = False
        with pytest.raises(InvalidCredentialsError):
            _login(self._service(stores, signer, verifier))
        verifier.verify_password.assert_not_called()
        assert tokens.list_active(alice.id) == []

    def test_local_account_never_asks_directory_to_authenticate(self, stores, signer, alice) -> None:
        verifier = MagicMock()
        verifier.directory_account_exists.return_value = False
        verifier.verify_password.return_value = True
        _login(self._service(stores, signer, verifier))
        verifier.directory_authenticate.assert_not_called()

    def test_verifier_failure_is_credential_verification_error(self, stores, signer, alice) -> None:
        _, tokens = stores
        verifier = MagicMock()
        verifier.directory_account_exists.return_value = True
        verifier.directory_authenticate.side_effect = DirectoryUnavailableError("down")
        with pytest.raises(CredentialVerificationError):
            _login(self._service(stores, signer, verifier))
        assert tokens.list_active(alice.id) == []


# ---------------------------------------------------------------------------
# Refresh -- happy path, single use, rotation chain
# ---------------------------------------------------------------------------


class TestRefreshRotation:
    def test_refresh_returns_new_pair_and_marks_old_used(self, service, stores, alice) -> None:
        _, tokens = stores
        first = _login(service).tokens
        outcome = _refresh(service, first.access_token, first.refresh_token)
        assert isinstance(outcome, RefreshSucceeded) and outcome.success is True
        assert outcome.tokens.refresh_token != first.refresh_token
        assert outcome.tokens.jwt_id != first.jwt_id
        assert tokens.find_by_value(first.refresh_token).is_used is True
        new_row = tokens.find_by_value(outcome.tokens.refresh_token)
        assert new_row.is_used is False
        assert new_row.jwt_id == outcome.tokens.jwt_id

    def test_second_exchange_is_already_used(self, service, alice) -> None:
        first = _login(service).tokens
        assert isinstance(_refresh(service, first.access_token, first.refresh_token), RefreshSucceeded)
        assert _failed_with(_refresh(service, first.access_token, first.refresh_token), MSG_ALREADY_USED)

    def test_rotation_chain(self, service, stores, alice) -> None:
        """token1 -> token2 -> token3, each prior value left used."""
        _, tokens = stores
        pair1 = _login(service).tokens
        pair2 = _refresh(service, pair1.access_token, pair1.refresh_token).tokens
        pair3 = _refresh(service, pair2.access_token, pair2.refresh_token).tokens
        assert tokens.find_by_value(pair1.refresh_token).is_used is True
        assert tokens.find_by_value(pair2.refresh_token).is_used is True
        assert tokens.find_by_value(pair3.refresh_token).is_used is False
        assert [r.token for r in tokens.list_active(alice.id)] == [pair3.refresh_token]

    def test_concurrent_exchanges_succeed_exactly_once(self, service, stores, alice) -> None:
        _, tokens = stores
        pair = _login(service).tokens

        async def race():
            return await asyncio.gather(*(service.refresh(pair.access_token, pair.refresh_token) for _ in range(6)))

        outcomes = asyncio.run(race())
        winners = [o for o in outcomes if isinstance(o, RefreshSucceeded)]
        assert len(winners) == 1
        assert all(_failed_with(o, MSG_ALREADY_USED) for o in outcomes if not isinstance(o, RefreshSucceeded))
        assert len(tokens.list_active(alice.id)) == 1

    def test_cancelled_refresh_never_half_rotates(self, service, stores, alice) -> None:
        """Cancelling at any await leaves the old value live or a complete successor."""
        _, tokens = stores

        async def cancel_after(pair, ticks: int) -> None:
            task = asyncio.create_task(service.refresh(pair.access_token, pair.refresh_token))
            for _ in range(ticks):
                await asyncio.sleep(0)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for ticks in range(10):
            tokens.revoke_all_for_user(alice.id)
            pair = _login(service).tokens
            # asyncio.run() joins the worker threads before returning.
            asyncio.run(cancel_after(pair, ticks))
            active = [r.token for r in tokens.list_active(alice.id)]
            if tokens.find_by_value(pair.refresh_token).is_used:
                assert len(active) == 1 and active[0] != pair.refresh_token
            else:
                assert active == [pair.refresh_token]

    def test_refreshed_token_reflects_current_roles(self, service, stores, alice) -> None:
        users, _ = stores
        pair = _login(service).tokens
        users.add_role(alice.id, "auditor")
        outcome = _refresh(service, pair.access_token, pair.refresh_token)
        assert jwt.get_unverified_claims(outcome.tokens.access_token)["role"] == ["admin", "auditor"]


# ---------------------------------------------------------------------------
# Refresh -- each rejection step
# ---------------------------------------------------------------------------


class TestRefreshRejections:
    def test_foreign_algorithm_is_encryption_error(self, service, alice) -> None:
        pair = _login(service).tokens
        payload = jwt.get_unverified_claims(pair.access_token)
        forged = jwt.encode(payload, TEST_SECRET, algorithm="HS384")
        assert _failed_with(_refresh(service, forged, pair.refresh_token), MSG_ENCRYPTION_ERRORS)

    def test_bad_signature_is_token_error(self, service, alice) -> None:
        pair = _login(service).tokens
        foreign = TokenSigner("a-completely-different-secret-of-enough-length").issue(alice).token
        assert _failed_with(_refresh(service, foreign, pair.refresh_token), MSG_TOKEN_ERRORS)

    def test_garbage_access_token_is_token_error(self, service, alice) -> None:
        pair = _login(service).tokens
        assert _failed_with(_refresh(service, "garbage", pair.refresh_token), MSG_TOKEN_ERRORS)

    def test_expired_access_token_fails_advisory_check(self, stores, alice) -> None:
        users, tokens = stores
        stale_signer = TokenSigner(TEST_SECRET, clock=lambda: datetime.now(timezone.utc) - timedelta(hours=2))
        service = AuthService(users, tokens, stale_signer)
        pair = _login(service).tokens
        assert _failed_with(_refresh(service, pair.access_token, pair.refresh_token), MSG_TOKEN_EXPIRED)
        assert tokens.find_by_value(pair.refresh_token).is_used is False

    def test_grace_admits_recently_expired_access_token(self, stores, alice) -> None:
        users, tokens = stores
        stale_signer = TokenSigner(TEST_SECRET, clock=lambda: datetime.now(timezone.utc) - timedelta(hours=2))
        service = AuthService(users, tokens, stale_signer, expiry_grace=timedelta(hours=2))
        pair = _login(service).tokens
        assert isinstance(_refresh(service, pair.access_token, pair.refresh_token), RefreshSucceeded)

    def test_unknown_refresh_value(self, service, alice) -> None:
        pair = _login(service).tokens
        assert _failed_with(_refresh(service, pair.access_token, generate_refresh_value()), MSG_NOT_FOUND)

    def test_revoked_value_never_exchanges(self, service, stores, alice) -> None:
        _, tokens = stores
        pair = _login(service).tokens
        tokens.revoke(pair.refresh_token, alice.id)
        assert _failed_with(_refresh(service, pair.access_token, pair.refresh_token), MSG_REVOKED)

    def test_used_check_precedes_revoked_check(self, service, stores, alice) -> None:
        _, tokens = stores
        pair = _login(service).tokens
        record = tokens.find_by_value(pair.refresh_token)
        tokens.mark_used(record)
        tokens.revoke(pair.refresh_token, alice.id)
        assert _failed_with(_refresh(service, pair.access_token, pair.refresh_token), MSG_ALREADY_USED)

    def test_mismatched_pair_fails_correlation(self, service, alice) -> None:
        """Two valid, unexpired sessions; access token of one with refresh value of the other."""
        session_a = _login(service).tokens
        session_b = _login(service).tokens
        assert _failed_with(_refresh(service, session_a.access_token, session_b.refresh_token), MSG_MISMATCH)

    def test_expired_refresh_record(self, service, signer, stores, alice) -> None:
        """A refresh record whose expiry was yesterday."""
        _, tokens = stores
        issued = signer.issue(alice)
        now = datetime.now(timezone.utc)
        record = RefreshToken(
            user_id=alice.id,
            token=generate_refresh_value(),
            jwt_id=issued.jti,
            created_at=now - timedelta(days=200),
            expires_at=now - timedelta(days=1),
        )
        tokens.save(record)
        assert _failed_with(_refresh(service, issued.token, record.token), MSG_REFRESH_EXPIRED)
        assert tokens.find_by_value(record.token).is_used is False

    def test_disabled_owner_cannot_rotate(self, service, stores, alice) -> None:
        users, tokens = stores
        pair = _login(service).tokens
        users.set_active(alice.id, False)
        assert _failed_with(_refresh(service, pair.access_token, pair.refresh_token), MSG_ACCOUNT_DISABLED)
        assert tokens.find_by_value(pair.refresh_token).is_used is False


# ---------------------------------------------------------------------------
# Revocation and registration
# ---------------------------------------------------------------------------


class TestRevocation:
    def test_revoke_own_token(self, service, alice) -> None:
        pair = _login(service).tokens
        assert asyncio.run(service.revoke(alice.id, pair.refresh_token)) is True
        assert _failed_with(_refresh(service, pair.access_token, pair.refresh_token), MSG_REVOKED)

    def test_cannot_revoke_someone_elses_token(self, service, alice) -> None:
        pair = _login(service).tokens
        assert asyncio.run(service.revoke("intruder-id", pair.refresh_token)) is False

    def test_revoke_all(self, service, stores, alice) -> None:
        _, tokens = stores
        _login(service)
        _login(service)
        assert asyncio.run(service.revoke_all(alice.id)) == 2
        assert tokens.list_active(alice.id) == []


class TestRegistration:
    def test_register_creates_user_and_pair(self, service, stores) -> None:
        users, tokens = stores
        result = asyncio.run(service.register("frank", "Frank@Example.com", "long-enough-pw"))
        assert result.user.id
        assert users.find_by_email("frank@example.com").username == "frank"
        assert tokens.find_by_value(result.tokens.refresh_token) is not None
        assert _login(service, email="frank@example.com", password="long-enough-pw").user.id == result.user.id

    def test_duplicate_email_rejected(self, service, alice) -> None:
        with pytest.raises(RegistrationError):
            asyncio.run(service.register("alice2", "alice@example.com", "long-enough-pw"))

    def test_duplicate_username_rejected(self, service, alice) -> None:
        with pytest.raises(RegistrationError):
            asyncio.run(service.register("alice", "other@example.com", "long-enough-pw"))


def test_add_months_clamps_day() -> None:
    assert add_months(datetime(2024, 8, 31, tzinfo=timezone.utc), 6) == datetime(2025, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2024, 1, 15), 6) == datetime(2024, 7, 15)
    assert add_months(datetime(2023, 9, 30), 5) == datetime(2024, 2, 29)


def test_from_settings(tmp_path, stores) -> None:
    from conftest import make_test_settings

    users, tokens = stores
    settings = make_test_settings(tmp_path / "x.db", refresh_token_lifetime_months=3, refresh_expiry_grace_seconds=30)
    service = AuthService.from_settings(settings, users=users, tokens=tokens)
    assert service.refresh_lifetime_months == 3
    assert service.expiry_grace == timedelta(seconds=30)
