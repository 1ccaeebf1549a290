"""
web/routes.py -- Browser form handlers for the login workflow.

These routes take form posts and answer with 302 redirects. They are the
router half of the login workflow: the orchestrators decide *where* to go
(a RedirectDecision), this module performs the redirect and sets cookies.
Page markup is out of scope; GET routes return the form state as JSON and
/api/v1/auth/login-form serves the login form's state.

Routes:
  POST /login           -- handle password login
  POST /logout          -- clear cookie and session state, redirect /login
  POST /lostpassword    -- start password reset, redirect /passwordsent (uniform)
  GET  /changepassword  -- ?h=<token>: redeem reset link, log in, redirect
                           without the token; no h: change-password form state
  POST /changepassword  -- set new password, redirect to parked BackURL or /
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Form, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from auth import session as keys
from auth.dependencies import build_request_context, get_session_handle, try_get_current_principal
from auth.errors import PasswordPolicyError, StoreUnavailable
from auth.login import LoginOrchestrator
from auth.models import LoginAttempt, LoginOutcome, RecoveryFailure, RedirectDecision
from auth.password import PasswordChanger
from auth.recovery import RecoveryOrchestrator
from auth.session import SessionHandle
from auth.tokens import SESSION_COOKIE, set_auth_cookie
from core.config import get_settings

logger = logging.getLogger("memberauth.web")

_settings = get_settings()

STORE_UNAVAILABLE_MESSAGE = "We could not check your details just now. Please try again."
INVALID_RESET_LINK_MESSAGE = "The password reset link is invalid or has expired."

router = APIRouter()


# ---------------------------------------------------------------------------
# Redirect helpers
# ---------------------------------------------------------------------------


def redirect_for(decision: RedirectDecision) -> RedirectResponse:
    """Turn a symbolic redirect decision into an HTTP 302."""
    return RedirectResponse(decision.target, status_code=302)


def _login_response(outcome: LoginOutcome) -> RedirectResponse:
    resp = redirect_for(outcome.redirect)
    if outcome.session is not None:
        set_auth_cookie(resp, outcome.session.token, outcome.session.expire_seconds)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _redirect_with_error(
    session: SessionHandle, message_key: str, type_key: str, message: str, target: str
) -> RedirectResponse:
    session.set_one_shot(message_key, message)
    session.set_one_shot(type_key, "bad")
    return RedirectResponse(target, status_code=302)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)
@router.post("/login")
def login_post(
    request: Request,
    Email: str = Form(""),
    Password: str = Form(""),
    Remember: bool = Form(False),
    BackURL: str = Form(""),
) -> RedirectResponse:
    """Handle the login form. Field names follow the form's HTML names."""
    orchestrator: LoginOrchestrator = request.app.state.login_orchestrator
    session = get_session_handle(request)
    context = build_request_context(request, back_url=BackURL or None)
    try:
        outcome = orchestrator.attempt(LoginAttempt(Email, Password, Remember), session, context)
    except StoreUnavailable:
        return _redirect_with_error(
            session,
            keys.LOGIN_FORM_MESSAGE,
            keys.LOGIN_FORM_MESSAGE_TYPE,
            STORE_UNAVAILABLE_MESSAGE,
            _settings.login_url,
        )
    return _login_response(outcome)


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """Clear the session cookie and state, then show the login page."""
    get_session_handle(request).clear_all()
    request.session.clear()
    resp = RedirectResponse(_settings.login_url, status_code=302)
    resp.delete_cookie(SESSION_COOKIE)
    return resp


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


@limiter.limit(_settings.reset_rate_limit)
@router.post("/lostpassword")
def lost_password_post(request: Request, background_tasks: BackgroundTasks, Email: str = Form("")) -> RedirectResponse:
    """Start a reset. Known and unknown addresses get the same redirect."""
    recovery: RecoveryOrchestrator = request.app.state.recovery
    try:
        recovery.request_reset(Email, build_request_context(request), dispatch=background_tasks.add_task)
    except StoreUnavailable:
        return _redirect_with_error(
            get_session_handle(request),
            keys.SECURITY_MESSAGE,
            keys.SECURITY_MESSAGE_TYPE,
            STORE_UNAVAILABLE_MESSAGE,
            "/lostpassword",
        )
    return RedirectResponse("/passwordsent", status_code=302)


@router.get("/changepassword", response_model=None)
def change_password_get(request: Request, h: str = "") -> RedirectResponse | JSONResponse:
    """Redeem a reset link, or report the change-password form state.

    With ?h=: the token is redeemed, the member is logged in, and the
    redeemed account is parked in session state so the form does not ask for
    the old password. The redirect drops the token from the address bar.
    """
    session = get_session_handle(request)
    if h:
        recovery: RecoveryOrchestrator = request.app.state.recovery
        redeemed = recovery.redeem_token(h)
        if isinstance(redeemed, RecoveryFailure):
            return _redirect_with_error(
                session,
                keys.SECURITY_MESSAGE,
                keys.SECURITY_MESSAGE_TYPE,
                INVALID_RESET_LINK_MESSAGE,
                "/lostpassword",
            )
        session.set(keys.RESET_PRINCIPAL_ID, redeemed.id)
        auth_session = session.create_session(redeemed, remember=False)
        resp = RedirectResponse(_settings.change_password_url, status_code=302)
        set_auth_cookie(resp, auth_session.token, auth_session.expire_seconds)
        resp.headers["Cache-Control"] = "no-store"
        return resp

    principal = try_get_current_principal(request)
    if principal is None:
        return RedirectResponse(f"{_settings.login_url}?BackURL={_settings.change_password_url}", status_code=302)
    return JSONResponse(
        content={
            "message": session.get_one_shot(keys.CHANGE_PASSWORD_MESSAGE),
            "message_type": session.get_one_shot(keys.CHANGE_PASSWORD_MESSAGE_TYPE),
            "requires_old_password": session.get(keys.RESET_PRINCIPAL_ID) != principal.id,
        },
        headers={"Cache-Control": "no-store"},
    )


@router.post("/changepassword")
def change_password_post(
    request: Request,
    OldPassword: str = Form(""),
    NewPassword1: str = Form(""),
    NewPassword2: str = Form(""),
) -> RedirectResponse:
    """Set a new password, then continue to the parked BackURL (or /).

    A member who arrived through a reset link skips the old-password check.
    """
    changer: PasswordChanger = request.app.state.password_changer
    session = get_session_handle(request)

    principal = try_get_current_principal(request)
    if principal is None:
        return RedirectResponse(f"{_settings.login_url}?BackURL={_settings.change_password_url}", status_code=302)

    via_reset = session.get(keys.RESET_PRINCIPAL_ID) == principal.id
    try:
        back_url = changer.change(
            principal,
            NewPassword1,
            NewPassword2,
            session,
            current_password=None if via_reset else OldPassword,
        )
    except PasswordPolicyError as exc:
        return _redirect_with_error(
            session,
            keys.CHANGE_PASSWORD_MESSAGE,
            keys.CHANGE_PASSWORD_MESSAGE_TYPE,
            str(exc),
            _settings.change_password_url,
        )

    session.clear(keys.RESET_PRINCIPAL_ID)
    return RedirectResponse(back_url or "/", status_code=302)
