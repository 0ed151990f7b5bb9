"""
api/routes/v1/auth.py -- Registration, login, session, verification, and password endpoints.

Routes:
  POST   /api/v1/auth/register                -- create an unverified account; sends verification mail
  POST   /api/v1/auth/login                   -- password login; returns + sets access and refresh cookies
  POST   /api/v1/auth/refresh                 -- rotate the refresh token; returns a new token pair
  POST   /api/v1/auth/logout                  -- revokes the session, clears cookies; 200
  GET    /api/v1/auth/me                      -- identity from the access token (requires auth)
  GET    /api/v1/auth/sessions                -- the caller's active sessions (requires auth)
  DELETE /api/v1/auth/sessions/{session_id}   -- revoke one of the caller's sessions (requires auth)
  DELETE /api/v1/auth/sessions                -- revoke all of the caller's sessions (requires auth)
  POST   /api/v1/auth/verification            -- resend verification mail (auth, or by email)
  POST   /api/v1/auth/verification/confirm    -- consume a verification token
  POST   /api/v1/auth/password-reset          -- request a reset link; always 202
  POST   /api/v1/auth/password-reset/confirm  -- consume a reset token and set a new password
  POST   /api/v1/auth/password                -- change password (requires auth)

Domain failures are raised as auth.errors.AuthError subclasses and rendered
by the exception handler in api/main.py; handlers here only deal with the
happy path and with the responses that must not vary.

Security:
  [H2] login, refresh, register, and the two request endpoints are rate-limited per IP.
  [C1] AuthGate.login() equalizes timing -- never inline the password check.
  [M5] Cache-Control: no-store on every response that carries a token.
  The refresh cookie is scoped to /api/v1/auth so it is not sent to any other route.
  Enumeration: the password-reset request and the unauthenticated verification
  resend answer with the same body whether or not the email is registered.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    EmailRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirmRequest,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResendVerificationResponse,
    SessionListResponse,
    SessionResponse,
    TokenConfirmRequest,
    UserResponse,
)
from auth.accounts import AccountService
from auth.actions import ActionTokenService
from auth.dependencies import get_current_identity, try_get_identity
from auth.errors import InvalidInput, Unauthenticated
from auth.gate import AuthGate
from auth.models import AccessTokenGrant, Identity
from auth.sessions import SessionService
from core.config import get_settings

_settings = get_settings()

_RESET_REQUESTED = "If the email is registered, a password reset link has been sent."
_VERIFICATION_REQUESTED = "If the email is registered and awaiting verification, a new link has been sent."

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
_REFRESH_COOKIE_PATH = "/api/v1/auth"

# Auth policy:
# - POST /auth/register, /auth/login, /auth/logout:            public
# - POST /auth/refresh:                                       public (the refresh token is the credential)
# - POST /auth/verification/confirm, /auth/password-reset*:    public (the token is the credential)
# - POST /auth/verification:                                  public or authenticated
# - GET  /auth/me, /auth/sessions, DELETE /auth/sessions*,
#   POST /auth/password:                                      requires auth (get_current_identity)
router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _require_user_id(identity: Identity) -> int:
    if identity.user_id is None:
        raise Unauthenticated()
    return identity.user_id


# ---------------------------------------------------------------------------
# Registration, login, and sessions
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account in the unverified state and mail the first verification link.

    409 if the email is already registered. Failing to issue or mail the link
    does not fail the registration; the user can ask for another link.
    """
    accounts: AccountService = request.app.state.accounts
    user, _ = accounts.register(body.email, body.password, display_name=body.display_name)
    return UserResponse.from_user(user)


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] brute-force mitigation
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return the token pair and set both as cookies.

    401 invalid_credentials for unknown email, wrong password, or locked
    account (one error for all three). 403 account_unverified only after the
    password matched.
    """
    gate: AuthGate = request.app.state.gate
    grant = gate.login(
        body.email,
        body.password,
        device_info=body.device_info or request.headers.get("User-Agent"),
        ip_address=request.client.host if request.client else None,
    )
    return _token_response(grant)


@limiter.limit(AUTH_RATE_LIMIT)  # [H2]
@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Trade a refresh token (body or cookie) for a new access and refresh token.

    The old refresh token stops working. 401 unauthenticated for a missing,
    reused, expired, or revoked refresh token.
    """
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise Unauthenticated()
    gate: AuthGate = request.app.state.gate
    return _token_response(gate.refresh(token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[LogoutRequest] = None) -> JSONResponse:
    """Revoke the caller's session and clear both cookies.

    The session is found from the refresh token (body or cookie) or, failing
    that, from the sid claim of the access token. The access token itself stays
    valid until it expires -- access tokens are stateless.
    """
    sessions: SessionService = request.app.state.sessions
    refresh_token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    identity = try_get_identity(request)
    sessions.end(refresh_secret=refresh_token, session_id=identity.session_id if identity else None)
    resp = JSONResponse(content={"message": "Logged out."})
    _clear_auth_cookies(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(identity: Identity = Depends(get_current_identity)) -> MeResponse:
    """Return the identity carried by the caller's access token. No store lookup."""
    return MeResponse(user_id=identity.user_id, email=identity.email, session_id=identity.session_id)


@router.get("/auth/sessions", response_model=SessionListResponse)
def list_sessions(request: Request, identity: Identity = Depends(get_current_identity)) -> SessionListResponse:
    """List the caller's unrevoked, unexpired sessions. The one behind this request is marked current."""
    sessions: SessionService = request.app.state.sessions
    active = sessions.list_active(_require_user_id(identity))
    items = [SessionResponse.from_session(s, identity.session_id) for s in active]
    return SessionListResponse(sessions=items, total=len(items))


@router.delete("/auth/sessions/{session_id}", response_model=MessageResponse)
def revoke_session(
    request: Request,
    session_id: str,
    identity: Identity = Depends(get_current_identity),
) -> MessageResponse:
    """Revoke one of the caller's sessions. 404 if it is not theirs or already ended."""
    sessions: SessionService = request.app.state.sessions
    sessions.revoke(_require_user_id(identity), session_id)
    return MessageResponse(message="Session revoked.")


@router.delete("/auth/sessions", response_model=MessageResponse)
def revoke_all_sessions(request: Request, identity: Identity = Depends(get_current_identity)) -> JSONResponse:
    """Revoke every session of the caller, this one included, and clear the cookies."""
    sessions: SessionService = request.app.state.sessions
    count = sessions.revoke_all(_require_user_id(identity))
    resp = JSONResponse(content={"message": f"Revoked {count} session(s)."})
    _clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] mail-bombing mitigation
@router.post("/auth/verification", response_model=ResendVerificationResponse, status_code=202)
def resend_verification(request: Request, body: ResendVerificationRequest) -> ResendVerificationResponse:
    """Send a fresh verification link, invalidating the previous one.

    Logged-in callers get the delivery outcome for their own account.
    Anonymous callers must supply an email and always get the same answer.
    """
    actions: ActionTokenService = request.app.state.actions
    identity = try_get_identity(request)
    if identity is not None and identity.user_id is not None:
        result = actions.request_verification(identity.user_id)
        return ResendVerificationResponse(message=_VERIFICATION_REQUESTED, delivery=result.outcome.value)
    if not body.email:
        raise InvalidInput("Provide an email address or log in.")
    actions.request_verification_by_email(body.email)
    return ResendVerificationResponse(message=_VERIFICATION_REQUESTED)


@router.post("/auth/verification/confirm", response_model=MessageResponse)
def confirm_verification(request: Request, body: TokenConfirmRequest) -> MessageResponse:
    """Consume a verification token. A second use of the same link answers 410."""
    actions: ActionTokenService = request.app.state.actions
    actions.confirm_verification(body.token)
    return MessageResponse(message="Email verified successfully.")


# ---------------------------------------------------------------------------
# Password reset and change
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] mail-bombing mitigation
@router.post("/auth/password-reset", response_model=MessageResponse, status_code=202)
def request_password_reset(request: Request, body: EmailRequest) -> MessageResponse:
    """Mail a reset link if the email is registered. The response never says which."""
    actions: ActionTokenService = request.app.state.actions
    actions.request_password_reset(body.email)
    return MessageResponse(message=_RESET_REQUESTED)


@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirmRequest) -> JSONResponse:
    """Set a new password using a reset token. Every session of the account is revoked."""
    actions: ActionTokenService = request.app.state.actions
    actions.confirm_password_reset(body.token, body.new_password)
    resp = JSONResponse(content={"message": "Password reset successfully. Please log in with your new password."})
    _clear_auth_cookies(resp)
    return _no_store(resp)


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Change the caller's password after re-checking the current one. Every session is revoked."""
    accounts: AccountService = request.app.state.accounts
    accounts.change_password(_require_user_id(identity), body.current_password, body.new_password)
    resp = JSONResponse(content={"message": "Password changed successfully. Please log in again."})
    _clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _token_response(grant: AccessTokenGrant) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=grant.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=grant.expires_in,
            email=grant.identity.email,
            refresh_token=grant.refresh_token,
            refresh_expires_in=grant.refresh_expires_in,
        ).model_dump(),
    )
    set_auth_cookie(resp, grant.access_token, grant.expires_in)
    if grant.refresh_token:
        set_refresh_cookie(resp, grant.refresh_token, grant.refresh_expires_in or grant.expires_in)
    return _no_store(resp)


def set_auth_cookie(response, token: str, expire_seconds: int) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=expire_seconds,
    )


def set_refresh_cookie(response, token: str, expire_seconds: int) -> None:
    """Same flags as the access cookie, but samesite="strict" and path-scoped to the auth routes."""
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=expire_seconds,
        path=_REFRESH_COOKIE_PATH,
    )


def _clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
