"""
auth/store.py -- SQLAlchemy Core persistence layer for member accounts.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_principal is the mapper. Orchestrators and routes never touch SQL.

Security:
  All queries use bound parameters. No f-strings in SQL. Identifier lookups
  are SQLAlchemy expressions, never interpolated text.

  Reset tokens are stored as HMAC digests (see auth/tokens.py). Consumption
  is a single UPDATE ... WHERE autologin_hash = :digest, so two concurrent
  redemptions of the same token cannot both succeed.

Failure mode:
  sqlalchemy OperationalError (database unreachable, locked, missing file)
  is re-raised as StoreUnavailable. IntegrityError propagates unchanged.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from auth.errors import StoreUnavailable
from auth.models import Principal, ResetToken
from auth.tokens import DUMMY_HASH, hash_reset_token, verify_password
from core.config import get_settings

logger = logging.getLogger("memberauth.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_members = Table(
    "members",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("surname", String(100), nullable=False, server_default=""),
    Column("hashed_password", Text),
    Column("password_expires_at", String(32)),  # ISO date; NULL = never expires
    Column("autologin_hash", String(64), unique=True),  # HMAC-SHA256 hex of reset token
    Column("autologin_expires_at", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Build an engine configured the same way for every store."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


@contextmanager
def guarded_connection(engine: Engine, store_name: str) -> Iterator[Connection]:
    """Yield a connection; translate an unreachable database into StoreUnavailable."""
    try:
        with engine.connect() as conn:
            yield conn
    except OperationalError as exc:
        logger.error("%s store unavailable: %s", store_name, exc.orig)
        raise StoreUnavailable(f"{store_name} store unavailable") from exc


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for member accounts.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        store.create_member(Principal(identifier="a@x.com", hashed_password=hash_password("s3cret")))
        principal = store.find_by_identifier("A@x.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None, case_sensitive: bool | None = None) -> None:
        settings = get_settings()
        self.engine: Engine = create_store_engine(db_url or settings.database_url)
        self.case_sensitive = settings.identifier_case_sensitive if case_sensitive is None else case_sensitive
        with self._connect() as conn:
            _metadata.create_all(conn)
            conn.commit()

    def _connect(self):
        return guarded_connection(self.engine, "identity")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def has_members(self) -> bool:
        with self._connect() as conn:
            result = conn.execute(select(func.count()).select_from(_members)).scalar()
        return (result or 0) > 0

    def find_by_identifier(self, identifier: str) -> Principal | None:
        """Look up a member by email. Case-insensitive unless configured otherwise."""
        if self.case_sensitive:
            clause = _members.c.email == identifier
        else:
            clause = func.lower(_members.c.email) == identifier.lower()
        with self._connect() as conn:
            row = conn.execute(_members.select().where(clause)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_id(self, principal_id: int) -> Principal | None:
        with self._connect() as conn:
            row = conn.execute(_members.select().where(_members.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def verify_secret(self, principal: Principal, secret: str) -> bool:
        """Check secret against the principal's bcrypt hash.

        Members without a local password still pay for one bcrypt round so
        the call costs the same either way.
        """
        if principal.hashed_password is None:
            verify_password(secret, DUMMY_HASH)
            return False
        return verify_password(secret, principal.hashed_password)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_member(self, principal: Principal) -> int:
        """Insert a member and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self._connect() as conn:
            result = conn.execute(
                _members.insert().values(
                    email=principal.identifier,
                    first_name=principal.first_name,
                    surname=principal.surname,
                    hashed_password=principal.hashed_password,
                    password_expires_at=principal.password_expires_at,
                    created_at=_now_iso(),
                    is_active=1 if principal.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_last_login(self, principal: Principal) -> None:
        """Stamp the current UTC time as last_login, on the row and on the object."""
        stamp = _now_iso()
        with self._connect() as conn:
            conn.execute(_members.update().where(_members.c.id == principal.id).values(last_login=stamp))
            conn.commit()
        principal.last_login = stamp

    def update_password(self, principal_id: int, hashed_password: str, password_expires_at: str | None = None) -> bool:
        """Replace the password hash and reset the expiry date."""
        with self._connect() as conn:
            result = conn.execute(
                _members.update()
                .where(_members.c.id == principal_id)
                .values(hashed_password=hashed_password, password_expires_at=password_expires_at)
            )
            conn.commit()
        return result.rowcount > 0

    def expire_password(self, principal_id: int, on: str | None = None) -> bool:
        """Mark the password as expiring on the given ISO date (default today)."""
        expires = on or datetime.now(timezone.utc).date().isoformat()
        with self._connect() as conn:
            result = conn.execute(
                _members.update().where(_members.c.id == principal_id).values(password_expires_at=expires)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reset tokens
    # ------------------------------------------------------------------

    def store_reset_token(self, principal: Principal, reset_token: ResetToken) -> None:
        """Persist the digest of reset_token, replacing any outstanding token."""
        digest = hash_reset_token(reset_token.token)
        with self._connect() as conn:
            conn.execute(
                _members.update()
                .where(_members.c.id == principal.id)
                .values(autologin_hash=digest, autologin_expires_at=reset_token.expires_at)
            )
            conn.commit()
        principal.autologin_hash = digest
        principal.autologin_expires_at = reset_token.expires_at

    def find_by_reset_token_hash(self, digest: str) -> Principal | None:
        with self._connect() as conn:
            row = conn.execute(_members.select().where(_members.c.autologin_hash == digest)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def consume_reset_token(self, principal: Principal, digest: str) -> bool:
        """Clear the reset token if it is still the one given.

        Returns True for exactly one caller per token; later or concurrent
        callers see rowcount 0.
        """
        with self._connect() as conn:
            result = conn.execute(
                _members.update()
                .where((_members.c.id == principal.id) & (_members.c.autologin_hash == digest))
                .values(autologin_hash=None, autologin_expires_at=None)
            )
            conn.commit()
        if result.rowcount > 0:
            principal.autologin_hash = None
            principal.autologin_expires_at = None
            return True
        return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        identifier=row.email,
        first_name=row.first_name,
        surname=row.surname,
        hashed_password=row.hashed_password,
        password_expires_at=row.password_expires_at,
        autologin_hash=row.autologin_hash,
        autologin_expires_at=row.autologin_expires_at,
        last_login=row.last_login,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
