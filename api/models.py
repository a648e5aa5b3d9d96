"""
API request and response models for credvault REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Length limits here mirror the checks in auth/service.py so malformed input is
rejected before it reaches the credential store. Response models carry
non-secret fields only: no model in this module has a hash or salt field.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    user = "user"


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Only presence and an upper bound are checked: a too-short username must
    get the same 401 as a wrong password, not a 422 that reveals the rule.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class ChangeCredentialsRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-credentials."""

    current_password: str = Field(min_length=1, max_length=255)
    new_username: Optional[str] = Field(default=None, min_length=3, max_length=64)
    new_password: Optional[str] = Field(default=None, min_length=6, max_length=255)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin only)."""

    username: str = Field(min_length=3, max_length=64)
    password: str = Field(min_length=6, max_length=255)
    role: RoleEnum = RoleEnum.user


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id} (admin only)."""

    role: RoleEnum


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for a successful POST /api/v1/auth/login.

    token is the same opaque value set in the session cookie, returned for
    clients that send it as a Bearer header instead.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    token: str
    expires_in: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me. Identity fields are None when logged out."""

    model_config = ConfigDict(frozen=True)

    is_authenticated: bool
    id: Optional[int] = None
    username: Optional[str] = None
    role: Optional[str] = None


class UserResponse(BaseModel):
    """Public view of a user account."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    created_at: str
    updated_at: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
