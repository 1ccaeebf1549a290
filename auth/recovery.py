"""
auth/recovery.py -- Forgot-password handshake: token issuance and redemption.

request_reset() gives the caller nothing that depends on whether the account
exists. It returns a RecoveryState for logging and tests, and the HTTP layers
discard it and send one uniform acknowledgement. Notification delivery is
handed to the caller's dispatch callable (FastAPI BackgroundTasks in the
routes), so the notifier round trip never runs on the request path.

redeem_token() is single-use. The final step is the store's compare-and-clear
UPDATE, so a token that two requests race to redeem succeeds only once.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from auth.models import Principal, RecoveryFailure, RecoveryState, RequestContext, ResetToken
from auth.notifier import NotificationError, Notifier
from auth.store import IdentityStore
from auth.tokens import generate_reset_token, hash_reset_token, reset_link
from core.config import Settings, get_settings

logger = logging.getLogger("memberauth.auth")

# Same shape as BackgroundTasks.add_task: dispatch(func, *args).
Dispatch = Callable[..., Any]


class RecoveryOrchestrator:
    """Issues and redeems password reset tokens.

    Usage:
        recovery = RecoveryOrchestrator(identity_store, LogNotifier())
        recovery.request_reset("a@x.com", RequestContext(), dispatch=background_tasks.add_task)
        principal = recovery.redeem_token(token_from_link)
    """

    def __init__(self, identity_store: IdentityStore, notifier: Notifier, settings: Settings | None = None) -> None:
        self.identity_store = identity_store
        self.notifier = notifier
        self.settings = settings or get_settings()

    def request_reset(
        self,
        identifier: str,
        context: RequestContext | None = None,
        dispatch: Dispatch | None = None,
    ) -> RecoveryState:
        """Issue a reset token for identifier if the account exists.

        The notification is queued through dispatch when given, otherwise it
        is sent before returning. Raises StoreUnavailable if the identity
        store cannot be reached. Notification failures are logged; the stored
        token stays valid.
        """
        identifier = (identifier or "").strip()
        principal = self.identity_store.find_by_identifier(identifier) if identifier else None
        if principal is None or not principal.is_active:
            logger.info("Password reset ignored (client %s)", context.client_ip if context else "unknown")
            return RecoveryState.IGNORED

        reset_token = self._new_token(principal)
        self.identity_store.store_reset_token(principal, reset_token)
        if dispatch is None:
            self.deliver(principal, reset_token)
        else:
            dispatch(self.deliver, principal, reset_token)
        logger.info("Password reset token issued for member %s", principal.id)
        return RecoveryState.DISPATCHED

    def deliver(self, principal: Principal, reset_token: ResetToken) -> None:
        """Send the forgot_password notification for an issued token."""
        try:
            self.notifier.send(
                "forgot_password",
                principal,
                {
                    "password_reset_link": reset_link(reset_token.token),
                    "expires_at": reset_token.expires_at,
                },
            )
        except NotificationError:
            logger.exception("Password reset notification for member %s failed", principal.id)

    def redeem_token(self, token: str) -> Principal | RecoveryFailure:
        """Exchange a reset token for its Principal, invalidating the token."""
        if not token:
            return RecoveryFailure.INVALID_OR_EXPIRED
        digest = hash_reset_token(token)
        principal = self.identity_store.find_by_reset_token_hash(digest)
        if principal is None or not principal.is_active:
            return RecoveryFailure.INVALID_OR_EXPIRED

        if self._expired(principal):
            # Drop it so the link cannot be retried.
            self.identity_store.consume_reset_token(principal, digest)
            logger.info("Expired reset token presented for member %s", principal.id)
            return RecoveryFailure.INVALID_OR_EXPIRED

        if not self.identity_store.consume_reset_token(principal, digest):
            return RecoveryFailure.INVALID_OR_EXPIRED
        logger.info("Reset token redeemed for member %s", principal.id)
        return principal

    def _new_token(self, principal: Principal) -> ResetToken:
        now = datetime.now(timezone.utc)
        return ResetToken(
            principal_id=principal.id,
            token=generate_reset_token(),
            issued_at=now.isoformat(),
            expires_at=(now + timedelta(seconds=self.settings.reset_token_ttl_seconds)).isoformat(),
        )

    @staticmethod
    def _expired(principal: Principal) -> bool:
        if not principal.autologin_expires_at:
            return True
        return datetime.fromisoformat(principal.autologin_expires_at) <= datetime.now(timezone.utc)
