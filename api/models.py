"""
API request and response models for AuthKeep REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field limits here are transport-level sanity caps only. The real rules (email
format, password policy) live in auth/ and raise InvalidInput, so the CLI and
the API enforce exactly the same policy.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import LoginSession, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254)
    # Not stripped: whitespace is a legitimate password character.
    password: str = Field(min_length=1, max_length=255, json_schema_extra={"format": "password"})
    display_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=255)
    device_info: Optional[str] = Field(default=None, max_length=200)


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh. Browser clients may omit it and rely on the refresh cookie."""

    refresh_token: Optional[str] = Field(default=None, max_length=512)


class LogoutRequest(BaseModel):
    """Optional body for POST /auth/logout naming the session to end by its refresh token."""

    refresh_token: Optional[str] = Field(default=None, max_length=512)


class EmailRequest(BaseModel):
    """Request body for POST /auth/password-reset and the unauthenticated verification resend."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=254)


class ResendVerificationRequest(BaseModel):
    """Request body for POST /auth/verification. email is ignored when the caller is logged in."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=254)


class TokenConfirmRequest(BaseModel):
    """Request body for POST /auth/verification/confirm."""

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=512)


class PasswordResetConfirmRequest(BaseModel):
    """Request body for POST /auth/password-reset/confirm."""

    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=1, max_length=255)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /auth/password (authenticated)."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user record. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    display_name: Optional[str]
    state: str
    created_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            state=user.state.value,
            created_at=user.created_at.isoformat() if user.created_at else None,
        )


class LoginResponse(BaseModel):
    """Token pair returned by login and refresh. refresh_token rotates on every refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    email: str
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: Optional[int]
    email: str
    session_id: Optional[str] = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    created_at: str
    last_active_at: str
    expires_at: str
    device_info: Optional[str]
    ip_address: Optional[str]
    current: bool = False

    @classmethod
    def from_session(cls, session: LoginSession, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=session.created_at.isoformat(),
            last_active_at=session.last_active_at.isoformat(),
            expires_at=session.expires_at.isoformat(),
            device_info=session.device_info,
            ip_address=session.ip_address,
            current=session.id == current_id,
        )


class SessionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sessions: list[SessionResponse]
    total: int


class MessageResponse(BaseModel):
    """Generic acknowledgement. Used wherever the answer must not depend on account existence."""

    model_config = ConfigDict(frozen=True)

    message: str


class ResendVerificationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    delivery: Optional[str] = None


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
    components: dict[str, str]
