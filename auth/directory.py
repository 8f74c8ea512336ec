"""
auth/directory.py -- HTTP client for an external account directory.

Some accounts are managed by a corporate directory rather than by a local
password. AuthService asks the directory whether it knows an email first; if
it does, the password is checked by the directory and never against the local
hash.

Endpoints (relative to DIRECTORY_BASE_URL):
  GET  /accounts?email=<email>   200 -> known, 404 -> unknown
  POST /authenticate             {"email", "password"} -> 200 {"authenticated": bool}

Error policy:
  account_exists() logs transport failures and answers False -- an unreachable
  directory sends the user down the local-password path, which fails closed
  for directory-only accounts (they have no local hash).
  authenticate() raises DirectoryUnavailableError on transport failures so the
  login surfaces as a hard fault instead of a silent "wrong password".
"""

from __future__ import annotations

import logging

import requests

from auth.errors import DirectoryUnavailableError

logger = logging.getLogger("sessiongate.directory")


class DirectoryClient:
    """Thin requests-based client. One pooled Session per instance."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session if session is not None else requests.Session()
        # Known internal service -- 3 hops is generous and limits redirect-based SSRF.
        self._session.max_redirects = 3
        if api_key:
            self._session.headers["X-API-Key"] = api_key

    def account_exists(self, email: str) -> bool:
        try:
            resp = self._session.get(f"{self.base_url}/accounts", params={"email": email}, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Directory lookup failed for %s: %s", email, e)
            return False
        if resp.status_code == 404:
            return False
        if resp.status_code != 200:
            logger.warning("Directory lookup for %s returned HTTP %d", email, resp.status_code)
            return False
        return True

    def authenticate(self, email: str, password: str) -> bool:
        try:
            resp = self._session.post(
                f"{self.base_url}/authenticate",
                json={"email": email, "password": password},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise DirectoryUnavailableError(f"directory authenticate failed: {e}") from e
        if resp.status_code in (401, 403):
            return False
        if resp.status_code != 200:
            raise DirectoryUnavailableError(f"directory authenticate returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise DirectoryUnavailableError("directory returned a non-JSON body") from e
        return bool(body.get("authenticated")) if isinstance(body, dict) else False

    def close(self) -> None:
        self._session.close()
