"""
auth/login.py -- The login attempt state machine.

  IDLE -> ATTEMPTING -> SUCCEEDED | FAILED

LoginOrchestrator.attempt() runs one submitted form through the verifier,
applies post-login policy (password expiry, BackURL), writes workflow state
into the caller's SessionHandle and returns a LoginOutcome whose
RedirectDecision the router turns into an HTTP redirect.

Nothing here reads request or session globals. Everything arrives through
the LoginAttempt, SessionHandle and RequestContext arguments.

Failure observers replace the old "authenticationFailed" extension hook.
They receive the identifier and the failure reason, never the secret.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import html
import logging
from typing import Protocol
from urllib.parse import urlsplit

from auth import session as keys
from auth.models import (
    AuthFailure,
    LoginAttempt,
    LoginFormState,
    LoginOutcome,
    LoginResult,
    LoginState,
    Principal,
    RedirectDecision,
    RedirectKind,
    RequestContext,
)
from auth.session import SessionHandle
from auth.verifier import CredentialVerifier
from core.config import Settings, get_settings

logger = logging.getLogger("memberauth.auth")

WELCOME_MESSAGE = "Welcome Back, {name}"
LOGGED_IN_AS_MESSAGE = "You're logged in as {name}."
PASSWORD_EXPIRED_MESSAGE = "Your password has expired. Please choose a new one."
BAD_LOGIN_MESSAGE = "That doesn't seem to be the right e-mail address or password. Please try again."


def safe_redirect_target(url: str | None) -> str | None:
    """Return url if it is a server-local path, else None.

    Rejects absolute URLs, protocol-relative "//host" and "/\\host" forms so
    a crafted BackURL cannot send the member off-site after login.
    """
    if not url or not url.startswith("/"):
        return None
    if url.startswith("//") or url.startswith("/\\"):
        return None
    return url


class FailureObserver(Protocol):
    def authentication_failed(self, identifier: str, reason: AuthFailure, context: RequestContext) -> None: ...


class LoggingFailureObserver:
    """Writes one INFO line per failed login."""

    def authentication_failed(self, identifier: str, reason: AuthFailure, context: RequestContext) -> None:
        logger.info("Failed login for %r from %s (%s)", identifier, context.client_ip or "unknown", reason.value)


class LoginOrchestrator:
    """Drives a login attempt end to end.

    Usage:
        orchestrator = LoginOrchestrator(CredentialVerifier(identity_store))
        outcome = orchestrator.attempt(LoginAttempt("a@x.com", "pw"), session, RequestContext())
        outcome.redirect.target   # where to send the browser
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        observers: list[FailureObserver] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.verifier = verifier
        self.observers: list[FailureObserver] = list(observers or [])
        self.settings = settings or get_settings()

    def add_observer(self, observer: FailureObserver) -> None:
        self.observers.append(observer)

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    def attempt(self, login: LoginAttempt, session: SessionHandle, context: RequestContext) -> LoginOutcome:
        """Run one login attempt and return its terminal outcome.

        Raises StoreUnavailable if the identity store cannot be reached; the
        attempt then has no outcome and session state is left untouched.
        """
        back_url = self._pending_back_url(session, context)

        logger.debug("Login %s for %r", LoginState.ATTEMPTING.value, login.identifier)
        result = self.verifier.authenticate(login.identifier, login.secret)

        if isinstance(result, AuthFailure):
            return self._failed(login, result, back_url, session, context)
        return self._succeeded(login, result, back_url, session, context)

    def _succeeded(
        self,
        login: LoginAttempt,
        principal: Principal,
        back_url: str | None,
        session: SessionHandle,
        context: RequestContext,
    ) -> LoginOutcome:
        session.clear(keys.FORM_EMAIL)
        session.clear(keys.FORM_REMEMBER)

        session.set_one_shot(keys.SECURITY_MESSAGE, WELCOME_MESSAGE.format(name=html.escape(principal.first_name)))
        session.set_one_shot(keys.SECURITY_MESSAGE_TYPE, "good")
        remember = login.remember_me and self.settings.autologin_enabled
        auth_session = session.create_session(principal, remember)

        if principal.password_expired:
            if back_url:
                session.set(keys.BACK_URL, back_url)
            session.set_one_shot(keys.CHANGE_PASSWORD_MESSAGE, PASSWORD_EXPIRED_MESSAGE)
            session.set_one_shot(keys.CHANGE_PASSWORD_MESSAGE_TYPE, "good")
            result = LoginResult.SUCCEEDED_MUST_CHANGE_PASSWORD
            decision = RedirectDecision(RedirectKind.PASSWORD_CHANGE, self.settings.change_password_url)
        elif back_url:
            session.clear(keys.BACK_URL)
            result = LoginResult.SUCCEEDED_REDIRECTED
            decision = RedirectDecision(RedirectKind.BACK_URL, back_url)
        else:
            result = LoginResult.SUCCEEDED_DEFAULT_REDIRECT
            decision = RedirectDecision(RedirectKind.DEFAULT_PAGE, self._previous_page(context))

        logger.info("Member %s logged in (%s)", principal.id, result.value)
        return LoginOutcome(
            state=LoginState.SUCCEEDED,
            result=result,
            redirect=decision,
            principal=principal,
            session=auth_session,
        )

    def _failed(
        self,
        login: LoginAttempt,
        reason: AuthFailure,
        back_url: str | None,
        session: SessionHandle,
        context: RequestContext,
    ) -> LoginOutcome:
        identifier = login.identifier.strip()
        for observer in self.observers:
            observer.authentication_failed(identifier, reason, context)

        # Repopulate the form on the next render; the secret is never kept.
        session.set(keys.FORM_EMAIL, identifier)
        session.set(keys.FORM_REMEMBER, bool(login.remember_me))
        if back_url:
            session.set(keys.BACK_URL, back_url)

        session.set_one_shot(keys.LOGIN_FORM_MESSAGE, BAD_LOGIN_MESSAGE)
        session.set_one_shot(keys.LOGIN_FORM_MESSAGE_TYPE, "bad")

        target = (
            session.get(keys.BAD_LOGIN_URL)
            or self.settings.bad_login_url
            or f"{self.settings.login_url}#{context.form_name}_tab"
        )
        return LoginOutcome(
            state=LoginState.FAILED,
            result=LoginResult.FAILED_REDIRECTED,
            redirect=RedirectDecision(RedirectKind.BAD_LOGIN_PAGE, target),
        )

    # ------------------------------------------------------------------
    # Form state
    # ------------------------------------------------------------------

    def form_state(
        self,
        session: SessionHandle,
        context: RequestContext,
        current: Principal | None = None,
    ) -> LoginFormState:
        """Collect what the login form shows on its next render.

        Reading consumes the pending one-shot message. When a member is
        already logged in and no message is pending, the message says who.
        """
        message = session.get_one_shot(keys.LOGIN_FORM_MESSAGE)
        message_type = session.get_one_shot(keys.LOGIN_FORM_MESSAGE_TYPE)
        if message is None and current is not None:
            message = LOGGED_IN_AS_MESSAGE.format(name=html.escape(current.first_name))
            message_type = "good"

        autologin = self.settings.autologin_enabled
        return LoginFormState(
            email=session.get(keys.FORM_EMAIL),
            remember=bool(session.get(keys.FORM_REMEMBER)) if autologin else False,
            back_url=self._pending_back_url(session, context),
            message=message,
            message_type=message_type,
            autologin_enabled=autologin,
            logged_in_as=current.first_name if current is not None else None,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pending_back_url(self, session: SessionHandle, context: RequestContext) -> str | None:
        requested = safe_redirect_target(context.back_url)
        if requested:
            return requested
        return safe_redirect_target(session.get(keys.BACK_URL))

    def _previous_page(self, context: RequestContext) -> str:
        """Server-local form of the referer, or "/" if it points elsewhere."""
        if not context.referer:
            return "/"
        parts = urlsplit(context.referer)
        if parts.netloc and parts.netloc != urlsplit(self.settings.base_url).netloc:
            return "/"
        target = parts.path or "/"
        if parts.query:
            target = f"{target}?{parts.query}"
        return safe_redirect_target(target) or "/"
