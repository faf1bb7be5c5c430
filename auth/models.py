"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
service do the work; these only own the shape of the data.

Timestamps are timezone-aware UTC datetimes. The store serializes them to
ISO 8601 strings and parses them back in its row mappers.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    """An end-user identity.

    email is stored lower-cased; uniqueness is therefore case-insensitive.
    password_hash is an argon2 encoded string (algorithm, parameters, salt,
    digest) and is the only credential material ever persisted for a user.
    """

    email: str
    password_hash: str
    id: str | None = None  # UUID4 string, assigned by the store
    email_verified: bool = False
    first_name: str | None = None
    last_name: str | None = None
    created_at: datetime | None = None

    @property
    def display_name(self) -> str | None:
        names = [n for n in (self.first_name, self.last_name) if n]
        return " ".join(names) if names else None


@dataclass
class RefreshToken:
    """A persisted refresh token record.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw token is returned
    to the client once at issue time and never stored.

    replaced_by holds the successor's hash when the token was rotated out.
    A presented token with replaced_by set is a reuse signal.
    """

    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime | None = None
    revoked_at: datetime | None = None
    replaced_by: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class EphemeralToken:
    """A single-use, purpose-tagged token (email verification or password reset).

    consumed_at is set on successful consumption and on supersession by a
    newer token of the same purpose. A consumed token never validates again.
    """

    token_hash: str
    user_id: str
    purpose: TokenPurpose
    expires_at: datetime
    created_at: datetime | None = None
    consumed_at: datetime | None = None

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    subject: str
    email: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RotatedRefreshToken:
    user_id: str
    refresh_token: str


@dataclass
class AuthResult:
    """Successful register/login/refresh outcome.

    warnings carries non-fatal problems the caller should know about, e.g. a
    verification email that could not be delivered during registration.
    """

    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    warnings: list[str] = field(default_factory=list)


@dataclass
class RegistrationInput:
    email: str
    password: str
    first_name: str | None = None
    last_name: str | None = None
