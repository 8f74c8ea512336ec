"""
auth/credentials.py -- Collaborator contracts consumed by AuthService.

AuthService depends on two narrow protocols rather than on concrete stores:

  UserDirectory       -- who the user is (lookup, roles, claims).
  UserRegistry        -- UserDirectory plus account creation and last-login.
  CredentialVerifier  -- whether the presented secret is right, and which
                         backend (directory or local hash) gets to decide.

UserStore (auth/store.py) satisfies UserRegistry. CredentialVerifier below is
the default verifier: bcrypt for local accounts plus an optional
DirectoryClient. All methods are synchronous; the service offloads them to a
worker thread.
"""

from __future__ import annotations

from typing import Optional, Protocol

from auth.directory import DirectoryClient
from auth.models import User
from auth.tokens import verify_password


class UserDirectory(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def get_claims(self, user: User) -> list[tuple[str, str]]: ...

    def get_roles(self, user: User) -> list[str]: ...


class UserRegistry(UserDirectory, Protocol):
    """UserDirectory plus the writes needed by login bookkeeping and sign-up."""

    def find_by_username(self, username: str) -> Optional[User]: ...

    def create_user(self, user: User) -> str: ...

    def update_last_login(self, user_id: str) -> None: ...


class CredentialVerifierProtocol(Protocol):
    def verify_password(self, user: User, password: str) -> bool: ...

    def directory_account_exists(self, email: str) -> bool: ...

    def directory_authenticate(self, email: str, password: str) -> bool: ...


class CredentialVerifier:
    """Local bcrypt verification with an optional directory backend."""

    def __init__(self, directory: Optional[DirectoryClient] = None) -> None:
        self.directory = directory

    def verify_password(self, user: User, password: str) -> bool:
        if not user.hashed_password:
            return False
        return verify_password(password, user.hashed_password)

    def directory_account_exists(self, email: str) -> bool:
        if self.directory is None:
            return False
        return self.directory.account_exists(email)

    def directory_authenticate(self, email: str, password: str) -> bool:
        if self.directory is None:
            return False
        return self.directory.authenticate(email, password)
