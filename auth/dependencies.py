"""
auth/dependencies.py -- FastAPI Depends() helpers for the session gate.

Two token transports are checked in priority order:
  1. Session cookie ("session_token") -- set by the login route.
  2. Authorization: Bearer <token> header -- non-browser clients.

Both converge on the same SessionStore lookup. After a hit the user record is
re-read from the credential store: if it is gone the session is destroyed
and the request is treated as unauthenticated; otherwise the entry's
username and role are refreshed from the record.

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_session() and raises HTTP 403 if not admin,
so clients can tell "please log in" from "you lack permission".

Layer rule: no imports from api/ or core/. This module may import from
fastapi (for HTTPException/Request) because it is part of the FastAPI
dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import SessionEntry
from auth.policy import is_admin, is_authenticated
from auth.service import AuthService
from auth.sessions import SessionStore

SESSION_COOKIE = "session_token"


def get_request_token(request: Request) -> str | None:
    """Return the raw session token from the cookie or Bearer header, if any."""
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_session(request: Request) -> SessionEntry | None:
    """Resolve the request's session. Never raises.

    Returns None when there is no token, the token is unknown or idle-expired,
    or the session's user no longer exists (the session is destroyed then).
    """
    token = get_request_token(request)
    if not token:
        return None

    sessions: SessionStore = request.app.state.sessions
    service: AuthService = request.app.state.auth_service

    entry = sessions.get(token)
    if entry is None:
        return None

    user = service.get_user(entry.user_id)
    if user is None:
        sessions.destroy(token)
        return None

    if user.username != entry.username or user.role != entry.role:
        sessions.refresh_identity(user.id, user.username, user.role)
        entry.username = user.username
        entry.role = user.role
    return entry


def get_current_session(request: Request) -> SessionEntry:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: SessionEntry = Depends(get_current_session)): ...
    """
    entry = try_get_current_session(request)
    if not is_authenticated(entry):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return entry


def require_admin(request: Request) -> SessionEntry:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(session: SessionEntry = Depends(require_admin)): ...
    """
    entry = get_current_session(request)
    if not is_admin(entry):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return entry
