"""
auth/middleware.py -- RequestAuthenticator: attach the caller's identity.

For every request carrying an Authorization header, the last space-separated
part of the header is verified with TokenSigner.verify(). On success the user
id and the raw token are stored on request.state; on failure nothing is
attached and the specific TokenError subclass is logged.

The middleware never answers 401 itself. Whether an anonymous request may
proceed is decided per route by the dependencies in auth/dependencies.py.

The signer is looked up on request.app.state.token_signer at request time, so
tests and the lifespan can swap it without rebuilding the middleware stack.

Layer rule: imports from starlette and auth/ only.
"""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from auth.errors import TokenError
from auth.tokens import TokenSigner

logger = logging.getLogger("sessiongate.auth")


def bearer_value(header: str) -> str:
    """Return the credential part of an Authorization header ("Bearer x" -> "x")."""
    parts = header.strip().split(" ")
    return parts[-1] if parts else ""


class RequestAuthenticator(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.user_id = None
        request.state.access_token = None

        header = request.headers.get("Authorization", "")
        token = bearer_value(header) if header else ""
        if token:
            signer: TokenSigner | None = getattr(request.app.state, "token_signer", None)
            if signer is None:
                logger.error("No token signer configured -- request treated as anonymous")
            else:
                try:
                    request.state.user_id = signer.verify(token)
                    request.state.access_token = token
                except TokenError as exc:
                    logger.warning(
                        "Rejected access token on %s %s: %s (%s)",
                        request.method,
                        request.url.path,
                        exc.reason,
                        exc,
                    )

        return await call_next(request)
