"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and permissions.

Session sources, checked in priority order:
  1. JWT cookie ("access_token") -- set by the login flow.
  2. Authorization: Bearer <token> header -- API clients and other services.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_permission(domain, action) wraps get_current_user() and raises HTTP 403
unless the PermissionChecker grants that single action.

Layer rule: no imports from api/ or moderation/.
  auth/dependencies.py may import from fastapi because it is part of the
  FastAPI dependency injection system.
"""

from __future__ import annotations

from typing import Callable

from fastapi import HTTPException, Request

from auth.models import User
from auth.permissions import PermissionChecker
from auth.tokens import SESSION_COOKIE, decode_access_token
from core.errors import VORTEX_ERROR_CODES


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer token.

    Returns the active User on success, None on any failure. Never raises.
    """
    user_store = request.app.state.user_store

    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if token:
        payload = decode_access_token(token)
        if payload:
            user = user_store.get_by_id(payload["user_id"])
            if user and user.is_active:
                return user

    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated."""
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": VORTEX_ERROR_CODES["UNAUTHORIZED"]},
        )
    return user


def require_permission(domain: str, action: str) -> Callable:
    """Build a dependency that requires one permission.

    Use as a FastAPI dependency:
        @router.post("/vortex/create-violation")
        async def route(user: User = Depends(require_permission("violation", "create"))): ...
    """

    async def dependency(request: Request) -> User:
        user = get_current_user(request)
        checker: PermissionChecker = request.app.state.checker
        if not await checker.check_permissions({domain: [action]}, session_user=user):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": VORTEX_ERROR_CODES["FORBIDDEN"]},
            )
        return user

    dependency.__name__ = f"require_{domain}_{action}"
    return dependency
