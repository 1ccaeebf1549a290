"""
API request and response models for MemberAuth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    remember: bool = False
    back_url: Optional[str] = Field(default=None, max_length=2048)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=255)
    confirm_password: str = Field(min_length=1, max_length=255)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)
    confirm_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RedirectInfo(BaseModel):
    """Symbolic redirect the client should follow."""

    model_config = ConfigDict(frozen=True)

    kind: str
    target: str


class LoginResponse(BaseModel):
    """Successful login. The session token is also set as an httpOnly cookie."""

    model_config = ConfigDict(frozen=True)

    outcome: str
    redirect: RedirectInfo
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    email: str
    first_name: str
    must_change_password: bool = False


class LoginFormResponse(BaseModel):
    """Values a login form needs to repopulate itself."""

    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    remember: bool = False
    back_url: Optional[str] = None
    message: Optional[str] = None
    message_type: Optional[str] = None
    autologin_enabled: bool = True
    logged_in_as: Optional[str] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: str
    surname: str
    password_expired: bool
    last_login: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    redirect: Optional[str] = None


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

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
