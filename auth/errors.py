"""
auth/errors.py -- Closed failure types for the auth package.

Two families:

  Component failures (TokenError and subclasses) are raised by the token
  codec and the two token managers. Each carries a TokenFailure member, so a
  caller can match on exc.reason exhaustively instead of parsing messages.

  Service failures (AuthServiceError and subclasses) are what AuthService
  raises to its callers. Each carries an ErrorKind from the fixed taxonomy
  plus a stable machine-readable code. The message is always safe to show a
  client; internal causes go to the log, not into the exception text.

Layer rule: no imports from api/, notify/, or third-party libraries.
"""

from __future__ import annotations

from enum import Enum


class TokenFailure(str, Enum):
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    TOKEN = "token"
    DATABASE = "database"
    INTERNAL = "internal"


# ---------------------------------------------------------------------------
# Component failures
# ---------------------------------------------------------------------------


class TokenError(Exception):
    """Base for token component failures. reason is always a TokenFailure."""

    def __init__(self, reason: TokenFailure) -> None:
        super().__init__(reason.value)
        self.reason = reason


class AccessTokenError(TokenError):
    """Raised by AccessTokenCodec.verify: MALFORMED, SIGNATURE_INVALID, or EXPIRED."""


class RefreshTokenError(TokenError):
    """Raised by RefreshTokenManager: NOT_FOUND, REVOKED, or EXPIRED."""


class EphemeralTokenError(TokenError):
    """Raised by EphemeralTokenManager: NOT_FOUND or EXPIRED."""


# ---------------------------------------------------------------------------
# Service taxonomy
# ---------------------------------------------------------------------------


class AuthServiceError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "internal_error"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(AuthServiceError):
    kind = ErrorKind.VALIDATION
    code = "validation_error"


class WeakPasswordError(ValidationError):
    """Password failed the strength policy. rules lists every unmet rule."""

    code = "weak_password"

    def __init__(self, rules: list[str]) -> None:
        super().__init__("Password does not meet the strength requirements.", detail="; ".join(rules))
        self.rules = rules


class ConflictError(ValidationError):
    code = "email_in_use"


class AlreadyVerifiedError(ValidationError):
    code = "already_verified"


class AuthenticationError(AuthServiceError):
    # Covers both "no such user" and "wrong password".
    kind = ErrorKind.AUTH
    code = "bad_credentials"


class NotFoundError(AuthServiceError):
    kind = ErrorKind.NOT_FOUND
    code = "not_found"


class TokenExpiredError(AuthServiceError):
    kind = ErrorKind.TOKEN
    code = "token_expired"


class TokenNotFoundError(AuthServiceError):
    """Unknown, superseded, or already-used ephemeral token."""

    kind = ErrorKind.TOKEN
    code = "token_not_found"


class InvalidSessionError(AuthServiceError):
    """Refresh token missing, expired, or revoked -- the sub-reason is not disclosed."""

    kind = ErrorKind.TOKEN
    code = "invalid_session"


class DatabaseError(AuthServiceError):
    kind = ErrorKind.DATABASE
    code = "database_error"


class InternalError(AuthServiceError):
    kind = ErrorKind.INTERNAL
    code = "internal_error"
