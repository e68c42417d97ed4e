"""
api/routes/v1/auth.py -- Session and sign-up endpoints.

Routes:
  POST /api/v1/auth/login            -- password login; sets JWT cookie
  POST /api/v1/auth/register         -- invite-only sign-up; claims the code
  POST /api/v1/auth/logout           -- clears cookie; 200
  GET  /api/v1/auth/me               -- current user info (requires auth)
  GET  /api/v1/auth/me/permissions   -- effective permissions (requires auth)

Login and register share LOGIN_RATE_LIMIT (default 10/minute per IP). Both
answer with Cache-Control: no-store. Credential checks go through
authenticate_user() so unknown usernames cost the same bcrypt round as wrong
passwords.

Registration needs an unused invitation code. The new account gets the
"user" role and the invitation records who claimed it; the insert and the
claim share one transaction.

/me/permissions is for UI display only. Endpoints authorize through
require_permission(), never through this aggregate.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.errors import api_error, error_boundary
from api.limiter import limiter
from api.models import (
    EffectivePermissionsResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    RegisterRequest,
    RegisterResponse,
)
from auth.dependencies import get_current_user
from auth.models import User
from auth.permissions import PermissionChecker
from auth.store import InvitationUnavailableError, UserStore
from auth.tokens import SESSION_COOKIE, authenticate_user, create_access_token, hash_password, set_auth_cookie
from core.config import get_settings
from core.errors import INVITATION_ERROR_CODES

logger = logging.getLogger("cosmos.auth")

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/register:         public -- gated by the invitation code instead
# - POST /api/v1/auth/logout:           public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:               requires auth (get_current_user)
# - GET  /api/v1/auth/me/permissions:   requires auth (get_current_user)
router = APIRouter()


@limiter.limit(get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set JWT cookie.

    Wrong username and wrong password get the same "bad_credentials" error so
    the response does not reveal whether the account exists.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    user_store.update_last_login(user.id)
    expire_seconds = get_settings().token_expire_seconds
    token = create_access_token(user.id, user.username, user.role)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=expire_seconds,
            username=user.username,
            role=user.role,
        ).model_dump(by_alias=True),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(get_settings().login_rate_limit)
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a "user" account by claiming an unused invitation code.

    400 for a missing, unknown or already-claimed code; 409 when the code is
    claimed by a concurrent sign-up or the username/email is taken.
    """
    user_store: UserStore = request.app.state.user_store
    with error_boundary(INVITATION_ERROR_CODES["PROCESS_FAILED"], endpoint="register"):
        code = body.invite or ""
        if not code:
            raise api_error("BAD_REQUEST", INVITATION_ERROR_CODES["INVITE_CODE_REQUIRED"])
        invitation = user_store.get_invitation_by_code(code)
        if invitation is None or invitation.user_id:
            logger.info("Sign-up for %s refused: invalid or used invite code", body.username)
            raise api_error("BAD_REQUEST", INVITATION_ERROR_CODES["INVALID_INVITE_CODE"])

        user = User(
            username=body.username,
            email=body.email or None,
            hashed_password=hash_password(body.password),
            role="user",
        )
        try:
            user_id = user_store.create_user_with_invitation(user, code)
        except InvitationUnavailableError as exc:
            raise api_error("CONFLICT", INVITATION_ERROR_CODES["INVITATION_ALREADY_USED"]) from exc
        except IntegrityError as exc:
            raise api_error("CONFLICT", INVITATION_ERROR_CODES["ACCOUNT_EXISTS"]) from exc

    logger.info("User %s registered with invitation %s", body.username, invitation.id)
    resp = JSONResponse(
        status_code=201,
        content=RegisterResponse(
            user_id=user_id,
            username=user.username,
            role=user.role,
            invitation_id=invitation.id,
        ).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    """Clear the JWT cookie and end the session."""
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        username=current_user.username,
        role=current_user.role,
        roles=current_user.roles,
    )


@router.get("/auth/me/permissions", response_model=EffectivePermissionsResponse)
async def my_permissions(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> EffectivePermissionsResponse:
    checker: PermissionChecker = request.app.state.checker
    permissions = await checker.get_user_effective_permissions(session_user=current_user)
    return EffectivePermissionsResponse(user_id=current_user.id, permissions=permissions)
