"""
auth/password.py -- Completing a password change.

Used by both ends of the workflow: a member whose password expired at login,
and a member who redeemed a reset token. After the change the member goes to
the BackURL that was parked in session state, if any.
"""

from __future__ import annotations

import logging

from auth import session as keys
from auth.errors import PasswordPolicyError
from auth.login import safe_redirect_target
from auth.models import Principal
from auth.session import SessionHandle
from auth.store import IdentityStore
from auth.tokens import hash_password
from core.config import Settings, get_settings

logger = logging.getLogger("memberauth.auth")

PASSWORD_CHANGED_MESSAGE = "Your password has been changed."


class PasswordChanger:
    def __init__(self, identity_store: IdentityStore, settings: Settings | None = None) -> None:
        self.identity_store = identity_store
        self.settings = settings or get_settings()

    def validate(self, new_password: str, confirm_password: str) -> None:
        """Raise PasswordPolicyError unless the new password is acceptable."""
        if new_password != confirm_password:
            raise PasswordPolicyError("Your passwords do not match.")
        if len(new_password) < self.settings.min_password_length:
            raise PasswordPolicyError(
                f"Your password must be at least {self.settings.min_password_length} characters long."
            )

    def change(
        self,
        principal: Principal,
        new_password: str,
        confirm_password: str,
        session: SessionHandle,
        current_password: str | None = None,
    ) -> str | None:
        """Set a new password and return the pending BackURL (or None).

        current_password is checked when given. The reset-token path passes
        None because redeeming the token already proved control of the account.

        Raises PasswordPolicyError when the new password is rejected.
        """
        if current_password is not None and not self.identity_store.verify_secret(principal, current_password):
            raise PasswordPolicyError("Your current password does not match.")
        self.validate(new_password, confirm_password)

        self.identity_store.update_password(principal.id, hash_password(new_password))
        principal.password_expires_at = None
        logger.info("Member %s changed password", principal.id)

        session.set_one_shot(keys.SECURITY_MESSAGE, PASSWORD_CHANGED_MESSAGE)
        session.set_one_shot(keys.SECURITY_MESSAGE_TYPE, "good")

        back_url = safe_redirect_target(session.get(keys.BACK_URL))
        if back_url:
            session.clear(keys.BACK_URL)
        return back_url
