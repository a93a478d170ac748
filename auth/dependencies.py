"""
auth/dependencies.py -- FastAPI Depends() helpers for services that trust authcore tokens.

The content-serving service mounts these on its routes. Tokens are read in
priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. "access_token" cookie -- browser sessions.

Both converge on SessionManager.validate_token(), which checks the blacklist,
verifies the JWT and re-reads the user. The SessionManager instance is taken
from request.app.state.session_manager, set once by the hosting app's
lifespan -- never from a module-level global.

Error mapping: every AuthCoreError carries its own status_code (401 for bad or
revoked tokens, 403 for inactive accounts, 503 for store / cache outages), so
an outage is never reported as "unauthorized".

try_get_current_user() is the soft variant (returns None on auth failure).
get_current_user() raises HTTPException. require_admin() adds a 403 role check.

Layer rule: may import fastapi (this module is part of the FastAPI dependency
injection system). No imports from cache/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import AuthCoreError, AuthenticationError
from auth.models import ROLE_ADMIN, User
from auth.session import SessionManager


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def extract_token(request: Request) -> str | None:
    """Return the raw access token from the request, or None."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get("access_token") or None


def to_http_exception(error: AuthCoreError) -> HTTPException:
    """Translate a core error into the HTTPException the transport layer raises."""
    headers = {"WWW-Authenticate": "Bearer"} if error.status_code == 401 else None
    return HTTPException(
        status_code=error.status_code,
        detail={"code": error.code, "message": error.message},
        headers=headers,
    )


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request. Returns None when it carries no valid token.

    Infrastructure failures are NOT folded into None: they raise 503 so a
    cache or database outage cannot turn into an anonymous request.
    """
    token = extract_token(request)
    if token is None:
        return None
    try:
        return get_session_manager(request).validate_token(token)
    except AuthenticationError:
        return None
    except AuthCoreError as exc:
        raise to_http_exception(exc) from exc


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 (or 403 / 503) otherwise.

    Use as a FastAPI dependency:
        @router.get("/posts/mine")
        async def route(user: User = Depends(get_current_user)): ...
    """
    token = extract_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return get_session_manager(request).validate_token(token)
    except AuthCoreError as exc:
        raise to_http_exception(exc) from exc


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if user.role != ROLE_ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
