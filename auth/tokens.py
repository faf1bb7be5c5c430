"""
auth/tokens.py -- Access token codec and opaque token utilities.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry sub (user id), email, iat,
       and exp. They are stateless: nothing is stored, so an issued access
       token cannot be revoked. Their lifetime is therefore short, and logout
       revokes the long-lived refresh tokens instead.

  Injected clock: verify() receives `now` from the caller and compares exp
       against it. python-jose's own exp check reads wall time, so it is
       disabled and done here instead -- after the signature has been
       verified, never before.

  Failure reasons: verify() raises AccessTokenError with MALFORMED (cannot be
       parsed or required claims missing), SIGNATURE_INVALID (bad signature or
       disallowed alg), or EXPIRED.

  Opaque tokens: refresh and ephemeral tokens are secrets.token_urlsafe(32),
       i.e. 256 bits of entropy; collisions are not checked for. We store
       HMAC-SHA256(SECRET_KEY, raw_token) so lookup is O(1) and a leaked
       database alone is useless without SECRET_KEY. argon2's intentional
       slowness is unnecessary for high-entropy values.

  SECRET_KEY: passed into the constructors. Nothing in this module reads
       configuration, which lets tests build codecs with their own secrets.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import AccessTokenError, TokenFailure
from auth.models import AccessClaims

_ALGORITHM = "HS256"


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class AccessTokenCodec:
    """Stateless signer/verifier for short-lived bearer tokens.

    Usage:
        codec = AccessTokenCodec(secret, timedelta(minutes=15))
        token = codec.issue(user.id, user.email, now)
        claims = codec.verify(token, now)
    """

    def __init__(self, secret_key: str, lifetime: timedelta) -> None:
        self._secret_key = secret_key
        self.lifetime = lifetime

    @property
    def expires_in(self) -> int:
        """Lifetime in whole seconds, as reported to clients."""
        return int(self.lifetime.total_seconds())

    def issue(self, subject_id: str, email: str, now: datetime) -> str:
        """Encode a signed JWT for subject_id, valid from now for self.lifetime."""
        payload = {
            "sub": subject_id,
            "email": email,
            "iat": int(now.timestamp()),
            "exp": int((now + self.lifetime).timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str, now: datetime) -> AccessClaims:
        """Verify signature, then required claims, then expiry against now."""
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise AccessTokenError(TokenFailure.MALFORMED) from exc

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTClaimsError as exc:
            raise AccessTokenError(TokenFailure.MALFORMED) from exc
        except JWTError as exc:
            raise AccessTokenError(TokenFailure.SIGNATURE_INVALID) from exc

        subject = payload.get("sub")
        email = payload.get("email")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        if (
            not isinstance(subject, str)
            or not isinstance(email, str)
            or not isinstance(issued_at, int)
            or not isinstance(expires_at, int)
        ):
            raise AccessTokenError(TokenFailure.MALFORMED)

        if expires_at <= now.timestamp():
            raise AccessTokenError(TokenFailure.EXPIRED)

        return AccessClaims(
            subject=subject,
            email=email,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )


# ---------------------------------------------------------------------------
# Opaque token generation and hashing
# ---------------------------------------------------------------------------


class TokenHasher:
    """Generates opaque tokens and derives their storage keys."""

    def __init__(self, secret_key: str) -> None:
        self._key = secret_key.encode()

    @staticmethod
    def generate() -> str:
        """Return a new URL-safe token with 256 bits of entropy."""
        return secrets.token_urlsafe(32)

    def hash(self, raw_token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
        return hmac.new(self._key, raw_token.encode(), hashlib.sha256).hexdigest()
