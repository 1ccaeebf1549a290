"""
auth/tokens.py -- Session JWTs, password hashing, and reset-token utilities.

Security design decisions:
  JWT: python-jose with HS256. Session tokens are signed with SECRET_KEY and
       carry principal_id, identifier, a remember flag and expiry.
       Verification returns None on any failure -- route layer turns that
       into a 401.

  Passwords: bcrypt directly. bcrypt.checkpw compares digests in constant
       time, and DUMMY_HASH lets the verifier run the same work when the
       account does not exist, so response time does not reveal whether an
       identifier is registered.

  Reset tokens: secrets.token_hex(32) gives 256 bits of entropy and a fixed
       64-char length. The link carries the raw token; the store keeps
       HMAC-SHA256(SECRET_KEY, token) so a leaked database row cannot be
       replayed as a link, and lookup stays O(1).

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("memberauth.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "access_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    fields at 255 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


# Computed once at module load so the first failed login is not measurably
# slower than later ones.
DUMMY_HASH: str = hash_password("memberauth_timing_dummy")


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(principal_id: int, identifier: str, expire_seconds: int = 0, remember: bool = False) -> str:
    """Encode a signed session JWT.

    Args:
        principal_id:   Numeric member ID.
        identifier:     Member email, stored as the subject claim.
        expire_seconds: Session duration. 0 uses Settings.token_expire_seconds.
        remember:       Marks a long-lived "remember me" session.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": identifier,
        "principal_id": principal_id,
        "remember": remember,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a session JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "principal_id" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Reset tokens
# ---------------------------------------------------------------------------


def generate_reset_token() -> str:
    """Return a new reset token: 64 hex chars from 32 random bytes."""
    return secrets.token_hex(32)


def hash_reset_token(token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, token) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        token.encode(),
        hashlib.sha256,
    ).hexdigest()


def reset_link(token: str) -> str:
    """Absolute URL of the change-password page that redeems token."""
    return f"{_settings.base_url.rstrip('/')}{_settings.change_password_url}?h={token}"


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    max_age matches the JWT expiry so both expire together. A remember-me
    session therefore survives browser restarts while a normal one expires
    with the token.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )
