"""
auth/tokens.py -- Session token codec, password hashing, and auditor token helpers.

Security design decisions:
  Session tokens: python-jose with HS256. TokenCodec is constructed once by the
       app factory with the configured secret and TTL, so nothing here reads
       global config. Tokens carry id, email, names, role names and role ids,
       plus iat/exp. Verification raises InvalidTokenError on any failure --
       bad signature, malformed structure, missing identity claims, or
       now > exp (zero leeway).

  Passwords: bcrypt directly (no passlib). The cost factor is bcrypt's default
       and is not tunable at runtime. _DUMMY_HASH lets the login path run one
       bcrypt comparison even when the email is unknown or the account is
       inactive, so response time does not reveal which accounts exist.

  Auditor tokens: secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(AUDITOR_TOKEN_SECRET, raw) so lookup is a single indexed
       query; bcrypt's intentional slowness is unnecessary for random tokens.

Layer rule: imports from core/ only.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import JWTError, jwt

from core.errors import InvalidTokenError

logger = logging.getLogger("eqms.auth")

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("id", "email", "roles")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password fields at 128 characters, which keeps ASCII inputs below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash verifies as False rather than raising.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("eqms_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session token codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Sign and verify session tokens with a fixed secret and default TTL.

    Usage:
        codec = TokenCodec(settings.jwt_secret, settings.token_ttl_seconds)
        token = codec.sign({"id": 1, "email": "a@b.c", "roles": ["admin"]})
        claims = codec.verify(token)
    """

    def __init__(self, secret: str, ttl_seconds: int, algorithm: str = _ALGORITHM) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    def sign(self, claims: dict[str, Any], ttl_seconds: int | None = None) -> str:
        """Return a signed token for the given claims.

        iat and exp are set here; any values the caller passed for them are
        overwritten. ttl_seconds overrides the codec default and may be
        negative (useful to mint a token that is already expired).
        """
        duration = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        now = datetime.now(timezone.utc)
        payload = dict(claims)
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int((now + timedelta(seconds=duration)).timestamp())
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> dict[str, Any]:
        """Decode and verify a token. Returns the claims dict.

        Raises InvalidTokenError on signature mismatch, malformed structure,
        expiry, or missing identity claims.
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise InvalidTokenError() from exc
        if any(name not in payload for name in _REQUIRED_CLAIMS) or not isinstance(payload["roles"], list):
            raise InvalidTokenError()
        return payload


def parse_authorization(header: str) -> tuple[str, str]:
    """Split an Authorization header into (lowercased scheme, credentials).

    credentials is "" when the header carries a scheme only.
    """
    scheme, _, credentials = header.strip().partition(" ")
    return scheme.lower(), credentials.strip()


# ---------------------------------------------------------------------------
# Auditor access token generation and hashing
# ---------------------------------------------------------------------------


def generate_auditor_token() -> str:
    """Generate a new raw auditor token: 64 hex characters (256 bits)."""
    return secrets.token_hex(32)


def hash_auditor_token(raw_token: str, secret: str) -> str:
    """Return HMAC-SHA256(secret, raw_token) as a hex string.

    Deterministic, so the store can look tokens up by hash. Someone holding a
    copy of the DB cannot use the hashes without also knowing the secret.
    """
    return hmac.new(secret.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


def auditor_token_preview(raw_token: str) -> str:
    return f"{raw_token[:8]}...{raw_token[-4:]}"
