"""
auth/tokens.py -- Token codec, refresh artifacts, fingerprints, and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry sub (identity), iat, exp
       and a random jti. Signature is checked before anything else, so a token
       signed with another key or with a tampered payload is always INVALID,
       never EXPIRED. Expiry is compared against the injected Clock rather than
       jose's internal time source so the session manager and the codec agree
       on "now".

  Refresh artifacts: secrets.token_urlsafe(32) gives 256 bits of entropy and
       no embedded claims. Only the caller ever holds the raw value.

  Fingerprints: HMAC-SHA256(SECRET_KEY, value). The session store keeps the
       fingerprint of the current access token and refresh artifact, never the
       values themselves, so a dump of the cache yields nothing replayable.
       The hash is deterministic, which is what makes the refresh_owner index
       a single point lookup.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       lets auth/credentials.py equalize timing for unknown identifiers.

  SECRET_KEY: passed in via Settings. core/config.py refuses to build Settings
       with a missing, placeholder, or short key, so TokenCodec never sees one.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.models import ParsedToken, TokenStatus
from core.clock import Clock, SystemClock, to_timestamp
from core.config import Settings
from core.errors import ConfigurationError

logger = logging.getLogger("sessionwarden.auth")

ALGORITHM = "HS256"

# bcrypt only reads the first 72 bytes of a password.
MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords longer than MAX_PASSWORD_BYTES once
    UTF-8 encoded, rather than storing a hash of a silently truncated prefix.
    """
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Over-long passwords never match: no stored hash was made from one.
    """
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the directory. Treat as a mismatch.
        return False


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessionwarden_timing_dummy")


# ---------------------------------------------------------------------------
# Opaque artifacts and fingerprints
# ---------------------------------------------------------------------------


def generate_refresh_artifact() -> str:
    """Return a new opaque refresh artifact (43 URL-safe chars, 256 bits)."""
    return secrets.token_urlsafe(32)


def fingerprint(value: str, key: str) -> str:
    """Return HMAC-SHA256(key, value) as a hex string."""
    return hmac.new(key.encode(), value.encode(), hashlib.sha256).hexdigest()


def fingerprints_match(left: str | None, right: str | None) -> bool:
    """Constant-time equality for stored fingerprints. None never matches."""
    if left is None or right is None:
        return False
    return hmac.compare_digest(left, right)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class TokenCodec:
    """Mint and parse self-contained signed access tokens.

    Pure with respect to its inputs: the only state is the signing key and TTL
    taken from Settings at construction time, plus the clock.
    """

    def __init__(self, settings: Settings, clock: Clock | None = None) -> None:
        if not settings.secret_key:
            raise ConfigurationError("TokenCodec requires a signing key.")
        self._key = settings.secret_key
        self._default_ttl = settings.access_token_ttl_seconds
        self._clock = clock or SystemClock()

    def fingerprint(self, value: str) -> str:
        return fingerprint(value, self._key)

    def mint(self, identity: str, ttl_seconds: int | None = None) -> str:
        """Encode a signed JWT for identity expiring ttl_seconds from now.

        Args:
            identity:    Subject identifier (the user's primary key as a string).
            ttl_seconds: Lifetime in seconds. Defaults to the configured access TTL.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        now = self._clock.now()
        payload = {
            "sub": str(identity),
            "iat": to_timestamp(now),
            "exp": to_timestamp(now + timedelta(seconds=ttl)),
            "jti": secrets.token_hex(8),
        }
        return jwt.encode(payload, self._key, algorithm=ALGORITHM)

    def parse(self, token: str) -> ParsedToken:
        """Verify signature, then expiry. Never raises.

        INVALID covers malformed input, a wrong key, a tampered payload, a
        different algorithm, and missing or non-numeric claims. EXPIRED is
        only reported for a token whose signature verified.
        """
        if not token or not isinstance(token, str):
            return ParsedToken(TokenStatus.INVALID)
        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[ALGORITHM],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError:
            return ParsedToken(TokenStatus.INVALID)

        subject = claims.get("sub")
        exp = claims.get("exp")
        iat = claims.get("iat")
        if not isinstance(subject, str) or not subject:
            return ParsedToken(TokenStatus.INVALID)
        if not isinstance(exp, int) or isinstance(exp, bool):
            return ParsedToken(TokenStatus.INVALID)

        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        issued_at = datetime.fromtimestamp(iat, tz=timezone.utc) if isinstance(iat, int) else None
        if self._clock.now() >= expires_at:
            return ParsedToken(TokenStatus.EXPIRED, subject, issued_at, expires_at)
        return ParsedToken(TokenStatus.VALID, subject, issued_at, expires_at)
