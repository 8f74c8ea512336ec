"""
auth/dependencies.py -- FastAPI Depends() helpers for the authorization decision.

RequestAuthenticator (auth/middleware.py) has already verified the bearer
token and left the result on request.state. These helpers only read it:

  try_get_user_id()     -- soft variant, returns None for anonymous requests.
  get_current_user_id() -- raises HTTP 401 when no verified identity exists.
  get_current_user()    -- additionally loads the User and raises 401 when the
                           account no longer exists or has been disabled.

Routes without one of these dependencies are anonymous by construction.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import asyncio

from fastapi import HTTPException, Request

from auth.models import User


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "unauthorized", "message": "Authentication required."},
    )


def try_get_user_id(request: Request) -> str | None:
    """Return the verified user id for this request, or None. Never raises."""
    return getattr(request.state, "user_id", None)


def get_current_user_id(request: Request) -> str:
    """Require a verified identity. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.post("/auth/revoke")
        async def route(user_id: str = Depends(get_current_user_id)): ...
    """
    user_id = try_get_user_id(request)
    if user_id is None:
        raise _unauthorized()
    return user_id


async def get_current_user(request: Request) -> User:
    """Require a verified identity that maps to an active account."""
    user_id = get_current_user_id(request)
    user_store = request.app.state.user_store
    user = await asyncio.to_thread(user_store.find_by_id, user_id)
    if user is None or not user.is_active:
        raise _unauthorized()
    return user
