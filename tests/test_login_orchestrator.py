"""Unit tests for auth/login.py -- the login attempt state machine.

Scenarios:
- valid login, no BackURL -> SUCCEEDED_DEFAULT_REDIRECT, welcome message set
- valid login with BackURL -> SUCCEEDED_REDIRECTED, BackURL cleared
- expired password -> SUCCEEDED_MUST_CHANGE_PASSWORD, BackURL preserved
- wrong secret -> FAILED_REDIRECTED, identifier remembered, secret never stored
- unknown identifier and wrong secret are indistinguishable in the outcome
- failure observers are notified with the identifier and reason only
- bad-login target precedence: session BadLoginURL > setting > login page anchor
- open-redirect guard on BackURL and referer
- form_state() repopulates the form and consumes the one-shot message
"""

from datetime import date, timedelta

import pytest
from sqlalchemy import select

from auth import session as keys
from auth.login import (
    BAD_LOGIN_MESSAGE,
    PASSWORD_EXPIRED_MESSAGE,
    LoginOrchestrator,
    safe_redirect_target,
)
from auth.models import (
    AuthFailure,
    LoginAttempt,
    LoginResult,
    LoginState,
    RedirectKind,
    RequestContext,
)
from auth.session import _session_state, new_session_id
from auth.verifier import CredentialVerifier
from conftest import MEMBER_EMAIL, MEMBER_PASSWORD, seed_member
from core.config import get_settings


class RecordingObserver:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def authentication_failed(self, identifier, reason, context) -> None:
        self.calls.append((identifier, reason, context))


@pytest.fixture
def orchestrator(identity_store) -> LoginOrchestrator:
    return LoginOrchestrator(CredentialVerifier(identity_store))


def _stored_values(session) -> list:
    """Every value currently held for the session (sticky and one-shot)."""
    with session.store.engine.connect() as conn:
        rows = conn.execute(
            select(_session_state.c.value).where(_session_state.c.session_id == session.session_id)
        ).fetchall()
    return [row.value for row in rows]


# ---------------------------------------------------------------------------
# Success paths
# ---------------------------------------------------------------------------


class TestSucceeded:
    def test_default_redirect(self, orchestrator, member, session):
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, RequestContext())
        assert outcome.state is LoginState.SUCCEEDED
        assert outcome.result is LoginResult.SUCCEEDED_DEFAULT_REDIRECT
        assert outcome.redirect.kind is RedirectKind.DEFAULT_PAGE
        assert outcome.redirect.target == "/"
        assert outcome.principal.id == member.id
        assert session.get_one_shot(keys.SECURITY_MESSAGE) == "Welcome Back, Alice"
        assert session.get_one_shot(keys.SECURITY_MESSAGE_TYPE) == "good"

    def test_default_redirect_goes_to_local_referer(self, orchestrator, member, session):
        context = RequestContext(referer="http://localhost:8000/news?page=2")
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, context)
        assert outcome.redirect.target == "/news?page=2"

    def test_foreign_referer_falls_back_to_root(self, orchestrator, member, session):
        context = RequestContext(referer="https://evil.example/phish")
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, context)
        assert outcome.redirect.target == "/"

    def test_welcome_message_is_escaped(self, identity_store, session):
        seed_member(identity_store, first_name="<b>Al</b>")
        orchestrator = LoginOrchestrator(CredentialVerifier(identity_store))
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, RequestContext())
        assert session.get_one_shot(keys.SECURITY_MESSAGE) == "Welcome Back, &lt;b&gt;Al&lt;/b&gt;"

    def test_back_url_from_request(self, orchestrator, member, session):
        session.set(keys.BACK_URL, "/stale")
        context = RequestContext(back_url="/members/area")
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, context)
        assert outcome.result is LoginResult.SUCCEEDED_REDIRECTED
        assert outcome.redirect.kind is RedirectKind.BACK_URL
        assert outcome.redirect.target == "/members/area"
        assert session.get(keys.BACK_URL) is None

    def test_back_url_from_session(self, orchestrator, member, session):
        session.set(keys.BACK_URL, "/members/area")
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, RequestContext())
        assert outcome.result is LoginResult.SUCCEEDED_REDIRECTED
        assert outcome.redirect.target == "/members/area"
        assert session.get(keys.BACK_URL) is None

    def test_offsite_back_url_is_ignored(self, orchestrator, member, session):
        context = RequestContext(back_url="https://evil.example/")
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, context)
        assert outcome.result is LoginResult.SUCCEEDED_DEFAULT_REDIRECT

    def test_remembered_form_values_are_cleared(self, orchestrator, member, session):
        session.set(keys.FORM_EMAIL, MEMBER_EMAIL)
        session.set(keys.FORM_REMEMBER, True)
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, RequestContext())
        assert session.get(keys.FORM_EMAIL) is None
        assert session.get(keys.FORM_REMEMBER) is None

    def test_session_established_with_remember(self, orchestrator, member, session):
        outcome = orchestrator.attempt(
            LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD, remember_me=True), session, RequestContext()
        )
        assert outcome.session.remember is True
        assert outcome.session.expire_seconds == get_settings().remember_me_expire_seconds

    def test_remember_ignored_when_autologin_disabled(self, identity_store, member, session):
        settings = get_settings().model_copy(update={"autologin_enabled": False})
        orchestrator = LoginOrchestrator(CredentialVerifier(identity_store), settings=settings)
        outcome = orchestrator.attempt(
            LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD, remember_me=True), session, RequestContext()
        )
        assert outcome.session.remember is False


class TestPasswordExpired:
    @pytest.fixture
    def expired_member(self, identity_store):
        yesterday = (date.today() - timedelta(days=2)).isoformat()
        return seed_member(identity_store, password_expires_at=yesterday)

    def test_must_change_password(self, orchestrator, expired_member, session):
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, RequestContext())
        assert outcome.state is LoginState.SUCCEEDED
        assert outcome.result is LoginResult.SUCCEEDED_MUST_CHANGE_PASSWORD
        assert outcome.redirect.kind is RedirectKind.PASSWORD_CHANGE
        assert outcome.redirect.target == get_settings().change_password_url
        assert session.get_one_shot(keys.CHANGE_PASSWORD_MESSAGE) == PASSWORD_EXPIRED_MESSAGE

    def test_back_url_preserved_for_after_change(self, orchestrator, expired_member, session):
        context = RequestContext(back_url="/members/area")
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, context)
        assert session.get(keys.BACK_URL) == "/members/area"

    def test_future_expiry_is_not_expired(self, identity_store, orchestrator, session):
        tomorrow = (date.today() + timedelta(days=30)).isoformat()
        seed_member(identity_store, password_expires_at=tomorrow)
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, RequestContext())
        assert outcome.result is LoginResult.SUCCEEDED_DEFAULT_REDIRECT


# ---------------------------------------------------------------------------
# Failure paths
# ---------------------------------------------------------------------------


class TestFailed:
    def test_wrong_secret(self, orchestrator, member, session):
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "wrong-secret"), session, RequestContext())
        assert outcome.state is LoginState.FAILED
        assert outcome.result is LoginResult.FAILED_REDIRECTED
        assert outcome.redirect.kind is RedirectKind.BAD_LOGIN_PAGE
        assert outcome.principal is None
        assert outcome.session is None
        assert session.get(keys.FORM_EMAIL) == MEMBER_EMAIL
        assert session.get(keys.FORM_REMEMBER) is False

    def test_secret_is_never_stored(self, orchestrator, member, session):
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "wrong-secret", remember_me=True), session, RequestContext())
        assert all("wrong-secret" not in value for value in _stored_values(session))

    def test_generic_failure_message(self, orchestrator, member, session):
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "wrong-secret"), session, RequestContext())
        assert session.get_one_shot(keys.LOGIN_FORM_MESSAGE) == BAD_LOGIN_MESSAGE
        assert session.get_one_shot(keys.LOGIN_FORM_MESSAGE_TYPE) == "bad"

    def test_unknown_and_wrong_secret_are_indistinguishable(self, orchestrator, member, session_store):
        s1 = session_store.handle(new_session_id())
        s2 = session_store.handle(new_session_id())
        wrong = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "nope"), s1, RequestContext())
        unknown = orchestrator.attempt(LoginAttempt("ghost@x.com", "nope"), s2, RequestContext())
        assert wrong.result == unknown.result
        assert wrong.redirect == unknown.redirect
        assert s1.get_one_shot(keys.LOGIN_FORM_MESSAGE) == s2.get_one_shot(keys.LOGIN_FORM_MESSAGE)

    def test_default_target_is_login_page_anchor(self, orchestrator, member, session):
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "nope"), session, RequestContext())
        assert outcome.redirect.target == "/login#MemberLoginForm_LoginForm_tab"

    def test_configured_bad_login_url(self, identity_store, member, session):
        settings = get_settings().model_copy(update={"bad_login_url": "/try-again"})
        orchestrator = LoginOrchestrator(CredentialVerifier(identity_store), settings=settings)
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "nope"), session, RequestContext())
        assert outcome.redirect.target == "/try-again"

    def test_session_bad_login_url_wins(self, identity_store, member, session):
        settings = get_settings().model_copy(update={"bad_login_url": "/try-again"})
        orchestrator = LoginOrchestrator(CredentialVerifier(identity_store), settings=settings)
        session.set(keys.BAD_LOGIN_URL, "/shop/login-failed")
        outcome = orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "nope"), session, RequestContext())
        assert outcome.redirect.target == "/shop/login-failed"

    def test_back_url_persisted_on_failure(self, orchestrator, member, session):
        context = RequestContext(back_url="/members/area")
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "nope"), session, context)
        assert session.get(keys.BACK_URL) == "/members/area"

    def test_observers_notified_without_secret(self, identity_store, member, session):
        observer = RecordingObserver()
        orchestrator = LoginOrchestrator(CredentialVerifier(identity_store), observers=[observer])
        context = RequestContext(client_ip="10.0.0.1")
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "nope"), session, context)
        orchestrator.attempt(LoginAttempt("ghost@x.com", "nope"), session, context)
        assert observer.calls == [
            (MEMBER_EMAIL, AuthFailure.BAD_SECRET, context),
            ("ghost@x.com", AuthFailure.NOT_FOUND, context),
        ]

    def test_observers_not_notified_on_success(self, identity_store, member, session):
        observer = RecordingObserver()
        orchestrator = LoginOrchestrator(CredentialVerifier(identity_store))
        orchestrator.add_observer(observer)
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, MEMBER_PASSWORD), session, RequestContext())
        assert observer.calls == []


# ---------------------------------------------------------------------------
# Form state
# ---------------------------------------------------------------------------


class TestFormState:
    def test_repopulates_after_failure(self, orchestrator, member, session):
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "nope", remember_me=True), session, RequestContext())
        state = orchestrator.form_state(session, RequestContext())
        assert state.email == MEMBER_EMAIL
        assert state.remember is True
        assert state.message == BAD_LOGIN_MESSAGE
        assert state.message_type == "bad"

    def test_repopulated_email_is_trimmed(self, identity_store, member, session):
        observer = RecordingObserver()
        orchestrator = LoginOrchestrator(CredentialVerifier(identity_store), observers=[observer])
        orchestrator.attempt(LoginAttempt(f"  {MEMBER_EMAIL} ", "nope"), session, RequestContext())
        assert session.get(keys.FORM_EMAIL) == MEMBER_EMAIL
        assert observer.calls[0][0] == MEMBER_EMAIL

    def test_message_shown_once(self, orchestrator, member, session):
        orchestrator.attempt(LoginAttempt(MEMBER_EMAIL, "nope"), session, RequestContext())
        orchestrator.form_state(session, RequestContext())
        assert orchestrator.form_state(session, RequestContext()).message is None

    def test_logged_in_member_is_named(self, orchestrator, member, session):
        state = orchestrator.form_state(session, RequestContext(), current=member)
        assert state.logged_in_as == "Alice"
        assert state.message == "You're logged in as Alice."

    def test_back_url_request_beats_session(self, orchestrator, session):
        session.set(keys.BACK_URL, "/from-session")
        assert orchestrator.form_state(session, RequestContext()).back_url == "/from-session"
        assert orchestrator.form_state(session, RequestContext(back_url="/from-request")).back_url == "/from-request"


@pytest.mark.parametrize(
    "url,expected",
    [
        ("/members", "/members"),
        ("/a?b=c#d", "/a?b=c#d"),
        ("//evil.example", None),
        ("/\\evil.example", None),
        ("https://evil.example/", None),
        ("javascript:alert(1)", None),
        ("", None),
        (None, None),
    ],
)
def test_safe_redirect_target(url, expected):
    assert safe_redirect_target(url) == expected
