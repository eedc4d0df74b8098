"""
auth/tokens.py -- Bearer tokens (JWT), password hashing, and opaque-token digests.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub (identity id), email, iat and
       exp. Role is NOT a claim: every authorization check re-reads the role
       from IdentityStore, so demoting an account takes effect immediately
       even for tokens issued before the demotion.

  Passwords: bcrypt used directly. The cost factor comes from
       Settings.bcrypt_rounds (default 12). Inputs are truncated to bcrypt's
       72-byte limit identically on hash and verify, because bcrypt 4.1+
       rejects longer inputs instead of silently truncating them.

  Opaque tokens: verification tokens and 2FA backup codes are random values
       handed to the user once. We persist HMAC-SHA256(SECRET_KEY, raw) so a
       leaked database cannot be replayed and lookup stays O(1).

Layer rule: no imports from api/. TokenService takes its secret and lifetime
through the constructor; nothing here reads configuration at import time.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpired, TokenMalformed
from auth.models import Identity, TokenClaims

logger = logging.getLogger("staffgate.auth")

_ALGORITHM = "HS256"
_BCRYPT_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _password_bytes(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_password_bytes(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    bcrypt.checkpw compares in constant time. A corrupt stored hash raises
    ValueError inside bcrypt; that is a mismatch, not a server error.
    """
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """256 bits of entropy as 64 hex chars. Used for email verification links."""
    return secrets.token_hex(32)


def digest_opaque_token(raw: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as a hex string."""
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


class TokenService:
    """Issues and verifies signed bearer tokens. Stateless; no storage.

    Usage:
        tokens = TokenService(settings.secret_key, settings.token_expire_seconds)
        token = tokens.issue(identity)
        claims = tokens.verify(token)   # raises TokenExpired / TokenMalformed
    """

    def __init__(self, secret_key: str, expire_seconds: int = 24 * 3600) -> None:
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds

    def issue(self, identity: Identity, expire_seconds: int = 0) -> str:
        """Encode a signed JWT for the identity.

        Args:
            identity:       Persisted identity (id must be set).
            expire_seconds: Override for the configured lifetime; 0 uses the default.
        """
        if identity.id is None:
            raise ValueError("Cannot issue a token for an unsaved identity")
        duration = expire_seconds if expire_seconds > 0 else self.expire_seconds
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(identity.id),
            "email": identity.email,
            "iat": now,
            "exp": now + timedelta(seconds=duration),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> TokenClaims:
        """Decode and verify a JWT.

        Raises:
            TokenExpired:   signature valid but exp is in the past.
            TokenMalformed: bad signature, bad structure, or missing claims.
        """
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenMalformed() from exc

        sub = payload.get("sub")
        email = payload.get("email")
        if not sub or not email:
            raise TokenMalformed()
        try:
            identity_id = int(sub)
        except (TypeError, ValueError) as exc:
            raise TokenMalformed() from exc
        return TokenClaims(
            identity_id=identity_id,
            email=email,
            issued_at=payload.get("iat"),
            expires_at=payload.get("exp"),
        )
