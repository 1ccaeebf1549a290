"""
auth/models.py -- Domain dataclasses and enums for the login workflow.

Pattern: Data class (pure data containers, near-zero logic). Stores and
orchestrators do the work; these types only carry shape between them.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass
class Principal:
    """An account that can log in.

    identifier is the member's email address. autologin_hash holds the
    HMAC digest of the outstanding reset token, never the token itself; it is
    None when no reset is pending.

    password_expires_at is an ISO date (YYYY-MM-DD). The password counts as
    expired from that day on.
    """

    identifier: str
    first_name: str = ""
    surname: str = ""
    id: int | None = None
    hashed_password: str | None = None
    password_expires_at: str | None = None
    autologin_hash: str | None = None
    autologin_expires_at: str | None = None
    last_login: str | None = None
    created_at: str | None = None
    is_active: bool = True

    @property
    def password_expired(self) -> bool:
        if not self.password_expires_at:
            return False
        expiry = date.fromisoformat(self.password_expires_at[:10])
        return expiry <= datetime.now(timezone.utc).date()


@dataclass
class ResetToken:
    """A freshly issued password reset token.

    token is the raw random value that goes into the reset link. Only its
    digest is persisted, so this object exists just long enough to build the
    notification.
    """

    principal_id: int
    token: str
    issued_at: str
    expires_at: str


@dataclass
class LoginAttempt:
    """One submitted login form. Lives for a single request."""

    identifier: str
    secret: str = field(repr=False)
    remember_me: bool = False


@dataclass
class RequestContext:
    """Request data the orchestrators need, passed explicitly per call.

    back_url is the BackURL request parameter (unvalidated). referer is the
    page the form was submitted from, used for the default redirect.
    """

    back_url: str | None = None
    referer: str | None = None
    client_ip: str | None = None
    form_name: str = "MemberLoginForm_LoginForm"


@dataclass
class AuthSession:
    """An established authenticated session: the signed token and its lifetime."""

    token: str
    expire_seconds: int
    remember: bool = False


# ---------------------------------------------------------------------------
# Failure taxonomy
# ---------------------------------------------------------------------------


class AuthFailure(str, Enum):
    NOT_FOUND = "not_found"
    BAD_SECRET = "bad_secret"


class RecoveryFailure(str, Enum):
    INVALID_OR_EXPIRED = "invalid_or_expired"


# ---------------------------------------------------------------------------
# Login state machine
# ---------------------------------------------------------------------------


class LoginState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LoginResult(str, Enum):
    """Terminal outcome of a login attempt."""

    SUCCEEDED_MUST_CHANGE_PASSWORD = "succeeded/must_change_password"
    SUCCEEDED_REDIRECTED = "succeeded/redirected"
    SUCCEEDED_DEFAULT_REDIRECT = "succeeded/default_redirect"
    FAILED_REDIRECTED = "failed/redirected"


class RedirectKind(str, Enum):
    BACK_URL = "back_url"
    PASSWORD_CHANGE = "password_change"
    DEFAULT_PAGE = "default_page"
    BAD_LOGIN_PAGE = "bad_login_page"


@dataclass
class RedirectDecision:
    """Symbolic redirect handed to the router. target is always a URL the
    router can use as-is."""

    kind: RedirectKind
    target: str


@dataclass
class LoginOutcome:
    state: LoginState
    result: LoginResult
    redirect: RedirectDecision
    principal: Principal | None = None
    session: AuthSession | None = None


@dataclass
class LoginFormState:
    """Values a login form needs to repopulate itself."""

    email: str | None = None
    remember: bool = False
    back_url: str | None = None
    message: str | None = None
    message_type: str | None = None
    autologin_enabled: bool = True
    logged_in_as: str | None = None


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class RecoveryState(str, Enum):
    DISPATCHED = "dispatched"
    IGNORED = "ignored"
