"""
auth/session.py -- Per-browser-session workflow state and session establishment.

SessionStateStore keeps small JSON values keyed by (session_id, key) in the
same SQLAlchemy-backed database as the identity store. Values are either
sticky (kept until cleared) or one-shot (deleted by the first read).

SessionHandle binds the store to one session id. Orchestrators only ever see
a handle, which is how request/session state reaches them without globals.

Concurrency:
  Every operation for one session id runs under a lock drawn from a fixed
  pool, chosen by hashing the session id, so the pool never grows. Across
  processes the lock does not help: a one-shot read returns its value only
  if its own DELETE removed the row, so at most one reader wins. Last write
  wins; there is no merging.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from typing import Any

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from auth.models import AuthSession, Principal
from auth.store import create_store_engine, guarded_connection
from auth.tokens import create_access_token
from core.config import get_settings

logger = logging.getLogger("memberauth.auth")

# Size of the per-session lock pool.
LOCK_STRIPES = 64

# Key under which the opaque session id is kept in the signed cookie session.
SESSION_ID_KEY = "sid"

# Sticky keys
RESET_PRINCIPAL_ID = "AutoLoginPrincipalID"
BACK_URL = "BackURL"
BAD_LOGIN_URL = "BadLoginURL"
FORM_EMAIL = "SessionForms.MemberLoginForm.Email"
FORM_REMEMBER = "SessionForms.MemberLoginForm.Remember"

# One-shot keys
SECURITY_MESSAGE = "Security.Message.message"
SECURITY_MESSAGE_TYPE = "Security.Message.type"
LOGIN_FORM_MESSAGE = "FormInfo.MemberLoginForm_LoginForm.formError.message"
LOGIN_FORM_MESSAGE_TYPE = "FormInfo.MemberLoginForm_LoginForm.formError.type"
CHANGE_PASSWORD_MESSAGE = "FormInfo.ChangePasswordForm_ChangePasswordForm.formError.message"
CHANGE_PASSWORD_MESSAGE_TYPE = "FormInfo.ChangePasswordForm_ChangePasswordForm.formError.type"

_metadata = MetaData()

_session_state = Table(
    "session_state",
    _metadata,
    Column("session_id", String(64), primary_key=True),
    Column("key", String(200), primary_key=True),
    Column("value", Text, nullable=False),  # JSON
    Column("one_shot", Integer, nullable=False, server_default="0"),
    Column("updated_at", Float, nullable=False),
)


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionStateStore:
    """Key-value store for transient login-workflow state.

    Usage:
        store = SessionStateStore("sqlite:///:memory:")
        session = store.handle(new_session_id())
        session.set_one_shot("msg", "hello")
        session.get_one_shot("msg")   # "hello"
        session.get_one_shot("msg")   # None
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = create_store_engine(db_url or get_settings().database_url)
        with self._connect() as conn:
            _metadata.create_all(conn)
            conn.commit()
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def handle(self, session_id: str) -> SessionHandle:
        return SessionHandle(self, session_id)

    def _lock(self, session_id: str) -> threading.Lock:
        return self._locks[hash(session_id) % len(self._locks)]

    def _connect(self):
        return guarded_connection(self.engine, "session")

    def _where(self, session_id: str, key: str):
        return (_session_state.c.session_id == session_id) & (_session_state.c.key == key)

    def _take(self, conn, session_id: str, key: str, row) -> Any | None:
        # Only the reader whose DELETE removes this exact row gets the value.
        result = conn.execute(
            _session_state.delete().where(
                self._where(session_id, key)
                & (_session_state.c.value == row.value)
                & (_session_state.c.updated_at == row.updated_at)
            )
        )
        conn.commit()
        if result.rowcount != 1:
            return None
        return json.loads(row.value)

    # ------------------------------------------------------------------
    # Key-value operations
    # ------------------------------------------------------------------

    def get(self, session_id: str, key: str) -> Any | None:
        """Return the value for key, or None.

        A one-shot value is deleted by this read, same as get_one_shot().
        """
        with self._lock(session_id), self._connect() as conn:
            row = conn.execute(_session_state.select().where(self._where(session_id, key))).first()
            if row is None:
                return None
            if row.one_shot:
                return self._take(conn, session_id, key, row)
        return json.loads(row.value)

    def get_one_shot(self, session_id: str, key: str) -> Any | None:
        """Read and delete key. Of two concurrent readers, at most one sees the value."""
        with self._lock(session_id), self._connect() as conn:
            row = conn.execute(_session_state.select().where(self._where(session_id, key))).first()
            if row is None:
                return None
            return self._take(conn, session_id, key, row)

    def set(self, session_id: str, key: str, value: Any, one_shot: bool = False) -> None:
        """Store value under key, replacing whatever was there."""
        payload = json.dumps(value)
        with self._lock(session_id), self._connect() as conn:
            conn.execute(_session_state.delete().where(self._where(session_id, key)))
            conn.execute(
                _session_state.insert().values(
                    session_id=session_id,
                    key=key,
                    value=payload,
                    one_shot=1 if one_shot else 0,
                    updated_at=time.time(),
                )
            )
            conn.commit()

    def clear(self, session_id: str, key: str) -> None:
        with self._lock(session_id), self._connect() as conn:
            conn.execute(_session_state.delete().where(self._where(session_id, key)))
            conn.commit()

    def clear_session(self, session_id: str) -> None:
        """Drop every key for session_id (logout)."""
        with self._lock(session_id), self._connect() as conn:
            conn.execute(_session_state.delete().where(_session_state.c.session_id == session_id))
            conn.commit()

    def purge_stale(self, max_age_seconds: int) -> int:
        """Delete entries not written for max_age_seconds. Returns rows removed."""
        cutoff = time.time() - max_age_seconds
        with self._connect() as conn:
            result = conn.execute(_session_state.delete().where(_session_state.c.updated_at < cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


class SessionHandle:
    """SessionStateStore operations bound to one session id."""

    def __init__(self, store: SessionStateStore, session_id: str) -> None:
        self.store = store
        self.session_id = session_id

    def get(self, key: str) -> Any | None:
        return self.store.get(self.session_id, key)

    def set(self, key: str, value: Any) -> None:
        self.store.set(self.session_id, key, value)

    def set_one_shot(self, key: str, value: Any) -> None:
        self.store.set(self.session_id, key, value, one_shot=True)

    def get_one_shot(self, key: str) -> Any | None:
        return self.store.get_one_shot(self.session_id, key)

    def clear(self, key: str) -> None:
        self.store.clear(self.session_id, key)

    def clear_all(self) -> None:
        self.store.clear_session(self.session_id)

    def create_session(self, principal: Principal, remember: bool) -> AuthSession:
        """Establish the authenticated session for principal.

        remember selects the long-lived lifetime. The returned token is what
        the HTTP layer writes into the session cookie.
        """
        settings = get_settings()
        expire = settings.remember_me_expire_seconds if remember else settings.token_expire_seconds
        token = create_access_token(principal.id, principal.identifier, expire_seconds=expire, remember=remember)
        logger.debug("Session established for principal %s (remember=%s)", principal.id, remember)
        return AuthSession(token=token, expire_seconds=expire, remember=remember)
