"""
auth/tokens.py -- Session tokens, password hashes and the login check.

A session is an HS256 JWT signed with SECRET_KEY and carried either in the
httpOnly "access_token" cookie or an Authorization: Bearer header. Claims:

    sub      username at issue time
    user_id  the users.id the dependencies resolve on every request
    role     role string at issue time (display only, never authorizes)
    exp      expiry, TOKEN_EXPIRE_SECONDS unless the caller overrides it

Settings are read per call, so a test that swaps the environment and clears
get_settings() signs and verifies with the same key.

Layer rule: no imports from api/, moderation/, or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("cosmos.auth")

JWT_ALGORITHM = "HS256"
SESSION_COOKIE = "access_token"


def _lifetime(expire_seconds: int) -> int:
    return expire_seconds if expire_seconds > 0 else get_settings().token_expire_seconds


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """bcrypt comparison; a malformed stored hash counts as a mismatch."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Unknown usernames are checked against this hash so they cost one bcrypt
# round, same as a wrong password for a real account.
_UNKNOWN_USER_HASH: str = hash_password("cosmos-unknown-user")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Return the active user matching username/password, or None."""
    user = store.get_by_username(username)
    if user is None or not user.hashed_password:
        verify_password(password, _UNKNOWN_USER_HASH)
        return None
    if not verify_password(password, user.hashed_password) or not user.is_active:
        logger.debug("Rejected login for %s", username)
        return None
    return user


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, username: str, role: str, expire_seconds: int = 0) -> str:
    expires = datetime.now(timezone.utc) + timedelta(seconds=_lifetime(expire_seconds))
    claims = {"sub": username, "user_id": user_id, "role": role, "exp": expires}
    return jwt.encode(claims, get_settings().secret_key, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Verified claims, or None for a bad signature, expiry or missing user_id."""
    try:
        claims = jwt.decode(token, get_settings().secret_key, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    return claims if "user_id" in claims else None


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
        max_age=_lifetime(expire_seconds),
    )
