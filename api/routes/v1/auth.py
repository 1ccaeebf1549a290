"""
api/routes/v1/auth.py -- Member login and password recovery REST endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; sets session cookie
  POST /api/v1/auth/logout             -- clears cookie and session state
  GET  /api/v1/auth/me                 -- current member (requires auth)
  GET  /api/v1/auth/login-form         -- remembered form values + one-shot message
  POST /api/v1/auth/forgot-password    -- issue reset token; uniform 202
  POST /api/v1/auth/reset-password     -- redeem reset token, set new password
  POST /api/v1/auth/change-password    -- change password (requires auth)

Security:
  POST /login and POST /forgot-password are rate-limited per IP (slowapi).
  Wrong email and wrong password produce the same 401 body.
  POST /forgot-password answers identically whether or not the account exists.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginFormResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RedirectInfo,
    ResetPasswordRequest,
)
from auth.dependencies import (
    build_request_context,
    get_current_principal,
    get_session_handle,
    try_get_current_principal,
)
from auth.errors import PasswordPolicyError
from auth.login import LoginOrchestrator
from auth.models import LoginAttempt, LoginResult, LoginState, Principal, RecoveryFailure
from auth.password import PasswordChanger
from auth.recovery import RecoveryOrchestrator
from auth.tokens import SESSION_COOKIE, set_auth_cookie
from core.config import get_settings

_settings = get_settings()

RESET_ACKNOWLEDGEMENT = "If that address belongs to an account, a password reset link is on its way."

# Auth policy:
# - POST /api/v1/auth/login, /logout, /forgot-password, /reset-password: public
# - GET  /api/v1/auth/login-form:        public (reads this browser's session state)
# - GET  /api/v1/auth/me:                requires auth (get_current_principal)
# - POST /api/v1/auth/change-password:   requires auth (get_current_principal)
router = APIRouter()


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Raises StoreUnavailable (-> 503 via the app exception handler) if the
    identity store is down.
    """
    orchestrator: LoginOrchestrator = request.app.state.login_orchestrator
    session = get_session_handle(request)
    context = build_request_context(request, back_url=body.back_url)
    outcome = orchestrator.attempt(
        LoginAttempt(identifier=body.email, secret=body.password, remember_me=body.remember),
        session,
        context,
    )

    redirect = RedirectInfo(kind=outcome.redirect.kind.value, target=outcome.redirect.target)
    if outcome.state is LoginState.FAILED:
        resp = JSONResponse(
            status_code=401,
            content={
                "error": {"code": "bad_credentials", "message": "Invalid email or password.", "detail": None},
                "redirect": redirect.model_dump(),
            },
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    principal = outcome.principal
    auth_session = outcome.session
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            outcome=outcome.result.value,
            redirect=redirect,
            access_token=auth_session.token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=auth_session.expire_seconds,
            email=principal.identifier,
            first_name=principal.first_name,
            must_change_password=outcome.result is LoginResult.SUCCEEDED_MUST_CHANGE_PASSWORD,
        ).model_dump(),
    )
    set_auth_cookie(resp, auth_session.token, auth_session.expire_seconds)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Clear the session cookie and drop this browser's workflow state."""
    get_session_handle(request).clear_all()
    request.session.clear()
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@router.get("/auth/login-form", response_model=LoginFormResponse)
def login_form(request: Request) -> LoginFormResponse:
    """Return what the login form should show. Consumes the pending one-shot message."""
    orchestrator: LoginOrchestrator = request.app.state.login_orchestrator
    state = orchestrator.form_state(
        get_session_handle(request),
        build_request_context(request),
        current=try_get_current_principal(request),
    )
    return LoginFormResponse(
        email=state.email,
        remember=state.remember,
        back_url=state.back_url,
        message=state.message,
        message_type=state.message_type,
        autologin_enabled=state.autologin_enabled,
        logged_in_as=state.logged_in_as,
    )


@router.get("/auth/me", response_model=MeResponse)
def me(current: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the logged-in member."""
    return MeResponse(
        id=current.id,
        email=current.identifier,
        first_name=current.first_name,
        surname=current.surname,
        password_expired=current.password_expired,
        last_login=current.last_login,
    )


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


@limiter.limit(_settings.reset_rate_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse, status_code=202)
def forgot_password(request: Request, body: ForgotPasswordRequest, background_tasks: BackgroundTasks) -> JSONResponse:
    """Start a password reset. The response never reveals whether the account exists."""
    recovery: RecoveryOrchestrator = request.app.state.recovery
    recovery.request_reset(body.email, build_request_context(request), dispatch=background_tasks.add_task)
    resp = JSONResponse(status_code=202, content=MessageResponse(message=RESET_ACKNOWLEDGEMENT).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(_settings.reset_rate_limit)
@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Redeem a reset token and set a new password.

    The password is validated before the token is redeemed so a rejected
    password does not burn the link.
    """
    recovery: RecoveryOrchestrator = request.app.state.recovery
    changer: PasswordChanger = request.app.state.password_changer
    try:
        changer.validate(body.new_password, body.confirm_password)
    except PasswordPolicyError as exc:
        raise HTTPException(status_code=400, detail={"code": "password_rejected", "message": str(exc)}) from exc

    redeemed = recovery.redeem_token(body.token)
    if isinstance(redeemed, RecoveryFailure):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_token", "message": "This password reset link is invalid or has expired."},
        )
    back_url = changer.change(redeemed, body.new_password, body.confirm_password, get_session_handle(request))
    return MessageResponse(message="Your password has been changed.", redirect=back_url)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Change the logged-in member's password; returns the parked BackURL if any."""
    changer: PasswordChanger = request.app.state.password_changer
    try:
        back_url = changer.change(
            current,
            body.new_password,
            body.confirm_password,
            get_session_handle(request),
            current_password=body.current_password,
        )
    except PasswordPolicyError as exc:
        raise HTTPException(status_code=400, detail={"code": "password_rejected", "message": str(exc)}) from exc
    return MessageResponse(message="Your password has been changed.", redirect=back_url)
