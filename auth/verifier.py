"""
auth/verifier.py -- Credential verification against the identity store.

authenticate() always performs exactly one bcrypt check, whether or not the
identifier exists, so the two failure reasons take the same time. The reasons
stay distinct inside the process (observers and logs can tell them apart);
every HTTP boundary collapses them into one generic message.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging

from auth.models import AuthFailure, Principal
from auth.store import IdentityStore
from auth.tokens import DUMMY_HASH, verify_password

logger = logging.getLogger("memberauth.auth")


class CredentialVerifier:
    def __init__(self, identity_store: IdentityStore) -> None:
        self.identity_store = identity_store

    def authenticate(self, identifier: str, secret: str) -> Principal | AuthFailure:
        """Return the matching Principal, or the reason authentication failed.

        Inactive accounts fail as NOT_FOUND. On success the last-login stamp is
        updated once; no session is created here.

        Raises StoreUnavailable if the identity store cannot be reached.
        """
        principal = self.identity_store.find_by_identifier(identifier.strip())
        if principal is None or not principal.is_active:
            # Equalize timing -- do NOT return before running bcrypt
            verify_password(secret, DUMMY_HASH)
            return AuthFailure.NOT_FOUND
        if not self.identity_store.verify_secret(principal, secret):
            return AuthFailure.BAD_SECRET
        self.identity_store.update_last_login(principal)
        return principal
