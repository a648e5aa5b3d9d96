"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST  /api/v1/auth/login                -- password login; sets session cookie
  POST  /api/v1/auth/logout               -- destroys session, clears cookie; idempotent
  GET   /api/v1/auth/me                   -- current identity (never 401)
  POST  /api/v1/auth/change-credentials   -- rotate username/password (re-proof required)
  POST  /api/v1/auth/users                -- create user (admin only)
  GET   /api/v1/auth/users                -- list users (admin only)
  PATCH /api/v1/auth/users/{id}           -- change role (admin only)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] AuthService.validate_login() provides timing equalization -- use it, never inline.
  [M4] PATCH /users/{id} refuses to demote the last admin (enforced in AuthService).
  [M5] Cache-Control: no-store on login responses.

Routes that derive a password hash or write the credential file are plain
`def` so FastAPI runs them in its thread pool instead of blocking the event
loop on PBKDF2 and fsync.

Domain errors raised by AuthService (ValidationError, DuplicateUsernameError,
InternalAuthError) are turned into the standard error envelope by the
exception handlers in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangeCredentialsRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.dependencies import (
    SESSION_COOKIE,
    get_current_session,
    get_request_token,
    require_admin,
    try_get_current_session,
)
from auth.errors import AuthFailure
from auth.models import SessionEntry, UserRecord
from auth.service import AuthService
from auth.sessions import SessionStore
from core.config import get_settings

# Auth policy:
# - POST  /auth/login:               public -- login endpoint must be unauthenticated
# - POST  /auth/logout:              public -- ending a session needs no prior auth
# - GET   /auth/me:                  public -- reports is_authenticated=false instead of 401
# - POST  /auth/change-credentials:  admin only by default (CREDENTIAL_CHANGE_ADMIN_ONLY)
# - POST  /auth/users:               requires admin (require_admin)
# - GET   /auth/users:               requires admin (require_admin)
# - PATCH /auth/users/{id}:          requires admin (require_admin)
router = APIRouter()


def credential_change_gate(request: Request) -> SessionEntry:
    """Gate for change-credentials. Admin-only under the default deployment policy."""
    if get_settings().credential_change_admin_only:
        return require_admin(request)
    return get_current_session(request)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; open a session.

    Returns the same generic error for wrong username and wrong password
    ("bad_credentials") to avoid leaking username existence information.
    """
    service: AuthService = request.app.state.auth_service
    sessions: SessionStore = request.app.state.sessions
    try:
        user = service.validate_login(body.username, body.password)
    except AuthFailure as exc:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": str(exc)}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    # Drop any session the client already holds so a login never stacks sessions.
    sessions.destroy(get_request_token(request) or "")
    token = sessions.create(user)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            id=user.id,
            username=user.username,
            role=user.role.value,
            token=token,
            expires_in=int(sessions.idle.total_seconds()),
        ).model_dump(),
    )
    resp.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request) -> JSONResponse:
    """Destroy the caller's session and clear the cookie. Safe to call repeatedly."""
    sessions: SessionStore = request.app.state.sessions
    sessions.destroy(get_request_token(request) or "")
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request) -> MeResponse:
    """Return the caller's identity, or is_authenticated=false.

    A session whose user no longer exists is destroyed by the session gate
    and reported as unauthenticated rather than returning a stale identity.
    """
    entry = try_get_current_session(request)
    if entry is None:
        return MeResponse(is_authenticated=False)
    return MeResponse(
        is_authenticated=True,
        id=entry.user_id,
        username=entry.username,
        role=entry.role.value,
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/change-credentials", response_model=UserResponse)
def change_credentials(
    request: Request,
    body: ChangeCredentialsRequest,
    session: SessionEntry = Depends(credential_change_gate),
) -> UserResponse:
    """Rotate the caller's own username and/or password.

    The current password must be supplied even though the caller already has
    a session, so a stolen session alone cannot take over the account.
    """
    service: AuthService = request.app.state.auth_service
    sessions: SessionStore = request.app.state.sessions
    try:
        updated = service.change_credentials(
            session.user_id,
            body.current_password,
            new_username=body.new_username,
            new_password=body.new_password,
        )
    except AuthFailure as exc:
        raise HTTPException(
            status_code=401,
            detail={"code": "bad_credentials", "message": str(exc)},
        ) from exc
    sessions.refresh_identity(updated.id, updated.username, updated.role)
    return _user_to_response(updated)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    session: SessionEntry = Depends(require_admin),
) -> UserResponse:
    """Create a new user account. Admin only. 409 if the username is taken."""
    service: AuthService = request.app.state.auth_service
    created = service.create_user(body.username, body.password, body.role.value)
    return _user_to_response(created)


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    session: SessionEntry = Depends(require_admin),
) -> list[UserResponse]:
    """List all user accounts without secret fields. Admin only."""
    service: AuthService = request.app.state.auth_service
    return [_user_to_response(u) for u in service.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    session: SessionEntry = Depends(require_admin),
) -> UserResponse:
    """Change a user's role. Admin only.

    [M4] Demoting the last admin is refused (no recovery path without
    hand-editing the encrypted file).
    """
    service: AuthService = request.app.state.auth_service
    sessions: SessionStore = request.app.state.sessions
    updated = service.set_role(user_id, body.role.value)
    if updated is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    sessions.refresh_identity(updated.id, updated.username, updated.role)
    return _user_to_response(updated)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_to_response(user: UserRecord) -> UserResponse:
    return UserResponse(**user.public_fields())
