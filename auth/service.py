"""
auth/service.py -- AuthService: the register/login/logout/refresh/verify/reset flows.

AuthService composes the password hasher, the access token codec, the two
token managers, the credential store, and the email gateway. It has no HTTP
dependency: api/ translates requests into these calls and AuthServiceError
subclasses into responses.

Ordering rules every flow follows:
  1. Validate input and do CPU-heavy work (argon2) before opening a
     transaction.
  2. Persist in one store transaction.
  3. Notify only after commit. A gateway call never runs inside a
     transaction.

Failure translation:
  SQLAlchemyError -> DatabaseError (logged with traceback, safe message out).
  IntegrityError on user insert -> ConflictError.
  TokenError from the managers -> the matching service error.

Information-leak rules:
  login: unknown email and wrong password raise the same AuthenticationError
         and both cost one argon2 verification.
  forgot_password: always returns None for a well-formed email, whether or
         not an account exists. Lookup, token issue, and delivery run on the
         background executor when one is configured, so neither store work nor
         gateway latency shows in the response.
  refresh: every failure is InvalidSessionError; the reason is only logged.
  logout: never raises.

Layer rule: no imports from api/. May import core/ (build_auth_service) and
the notify/ gateway contract.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from concurrent.futures import Executor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.ephemeral import EphemeralTokenManager
from auth.errors import (
    AccessTokenError,
    AlreadyVerifiedError,
    AuthenticationError,
    AuthServiceError,
    ConflictError,
    DatabaseError,
    EphemeralTokenError,
    InternalError,
    InvalidSessionError,
    NotFoundError,
    RefreshTokenError,
    TokenExpiredError,
    TokenFailure,
    TokenNotFoundError,
    ValidationError,
)
from auth.models import AuthResult, RegistrationInput, TokenPurpose, User
from auth.passwords import PasswordHasher, PasswordPolicy
from auth.refresh import RefreshTokenManager
from auth.store import CredentialStore, normalize_email
from auth.tokens import AccessTokenCodec, TokenHasher
from core.config import Settings
from notify.email import EmailGateway, LogOnlyGateway, NotificationError, SendGridGateway

logger = logging.getLogger("authgate.auth.service")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MAX_EMAIL_LENGTH = 255


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenLifetimes:
    verification: timedelta = timedelta(hours=24)
    password_reset: timedelta = timedelta(hours=1)


class AuthService:
    """Authentication flows over injected collaborators.

    Build once at startup (see build_auth_service) and share across requests.
    Every collaborator is safe for concurrent use; AuthService itself holds no
    per-request state.
    """

    def __init__(
        self,
        store: CredentialStore,
        passwords: PasswordHasher,
        access_tokens: AccessTokenCodec,
        refresh_tokens: RefreshTokenManager,
        ephemeral_tokens: EphemeralTokenManager,
        gateway: EmailGateway,
        *,
        frontend_url: str,
        lifetimes: TokenLifetimes | None = None,
        clock: Callable[[], datetime] = utcnow,
        background: Executor | None = None,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.access_tokens = access_tokens
        self.refresh_tokens = refresh_tokens
        self.ephemeral_tokens = ephemeral_tokens
        self.gateway = gateway
        self.frontend_url = frontend_url.rstrip("/")
        self.lifetimes = lifetimes or TokenLifetimes()
        self._clock = clock
        self._background = background

    # ------------------------------------------------------------------
    # Register / login / logout
    # ------------------------------------------------------------------

    def register(self, data: RegistrationInput) -> AuthResult:
        """Create an account, send the verification email, and sign the user in.

        A failed verification email does not undo the account: the user gets
        working credentials plus a warning, and resend_verification() is the
        way to retry delivery.
        """
        email = _validate_email(data.email)
        self.passwords.validate_strength(data.password)
        password_hash = self.passwords.hash(data.password)
        now = self._clock()

        with self._store_errors("register"):
            try:
                with self.store.transaction() as conn:
                    user = self.store.create_user(
                        User(
                            email=email,
                            password_hash=password_hash,
                            first_name=_clean_name(data.first_name),
                            last_name=_clean_name(data.last_name),
                        ),
                        conn=conn,
                    )
                    verification = self.ephemeral_tokens.issue(
                        user.id, TokenPurpose.EMAIL_VERIFICATION, self.lifetimes.verification, now, conn=conn
                    )
                    refresh_token = self.refresh_tokens.issue(user.id, now=now, conn=conn)
            except IntegrityError as exc:
                raise ConflictError("An account with that email already exists.") from exc

        logger.info("Registered user %s", user.id)

        warnings: list[str] = []
        delivered = self._deliver(
            self.gateway.send_verification_email,
            user.email,
            self._link("verify-email", verification),
            user.display_name,
        )
        if not delivered:
            warnings.append("Verification email could not be sent. Request a new one to verify your address.")

        return self._auth_result(user, refresh_token, now, warnings)

    def login(self, email: str, password: str) -> AuthResult:
        """Check credentials and issue a new access + refresh token pair."""
        with self._store_errors("login"):
            user = self.store.get_user_by_email(email)

        if user is None:
            # Equalize timing -- do NOT return before running argon2.
            self.passwords.verify_dummy(password)
            logger.info("Login failed: no matching account")
            raise AuthenticationError("Invalid email or password.")
        if not self.passwords.verify(password, user.password_hash):
            logger.info("Login failed for user %s: wrong password", user.id)
            raise AuthenticationError("Invalid email or password.")

        now = self._clock()
        with self._store_errors("login"):
            if self.passwords.needs_rehash(user.password_hash):
                self.store.update_password(user.id, self.passwords.hash(password))
                logger.info("Upgraded password hash parameters for user %s", user.id)
            refresh_token = self.refresh_tokens.issue(user.id, now=now)

        logger.info("User %s logged in", user.id)
        return self._auth_result(user, refresh_token, now)

    def logout(self, access_token: str | None = None, refresh_token: str | None = None) -> None:
        """Best-effort revocation. Never raises.

        The presented refresh token is revoked, and if the access token still
        verifies, every refresh token of its subject is revoked too. Each step
        runs regardless of the other's outcome.
        """
        now = self._clock()
        if refresh_token:
            try:
                self.refresh_tokens.revoke(refresh_token, now)
            except SQLAlchemyError as exc:
                logger.warning("Logout: failed to revoke refresh token: %s", exc)

        if access_token:
            try:
                claims = self.access_tokens.verify(access_token, now)
            except AccessTokenError as exc:
                logger.info("Logout: access token not usable (%s); skipping revoke-all", exc.reason.value)
                return
            try:
                revoked = self.refresh_tokens.revoke_all(claims.subject, now)
                logger.info("Logout: revoked %d refresh token(s) for user %s", revoked, claims.subject)
            except SQLAlchemyError as exc:
                logger.warning("Logout: failed to revoke tokens for user %s: %s", claims.subject, exc)

    def refresh(self, refresh_token: str) -> AuthResult:
        """Rotate the refresh token and issue a fresh access token."""
        now = self._clock()
        try:
            with self._store_errors("refresh"):
                rotated = self.refresh_tokens.rotate(refresh_token, now=now)
        except RefreshTokenError as exc:
            logger.info("Refresh rejected: %s", exc.reason.value)
            raise InvalidSessionError("Invalid or expired refresh token.") from exc

        with self._store_errors("refresh"):
            user = self.store.get_user_by_id(rotated.user_id)
        if user is None:
            logger.warning("Refresh token belongs to missing user %s", rotated.user_id)
            raise InvalidSessionError("Invalid or expired refresh token.")

        return self._auth_result(user, rotated.refresh_token, now)

    def authenticate(self, access_token: str) -> User:
        """Resolve a bearer access token to its user, or raise AuthenticationError."""
        try:
            claims = self.access_tokens.verify(access_token, self._clock())
        except AccessTokenError as exc:
            raise AuthenticationError("Invalid or expired access token.") from exc
        with self._store_errors("authenticate"):
            user = self.store.get_user_by_id(claims.subject)
        if user is None:
            raise AuthenticationError("Invalid or expired access token.")
        return user

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> User:
        """Consume a verification token and mark the owner's email verified."""
        now = self._clock()
        try:
            with self._store_errors("verify_email"):
                with self.store.transaction() as conn:
                    user_id = self.ephemeral_tokens.consume(token, TokenPurpose.EMAIL_VERIFICATION, now, conn=conn)
                    self.store.set_email_verified(user_id, conn=conn)
                    user = self.store.get_user_by_id(user_id, conn=conn)
        except EphemeralTokenError as exc:
            raise _ephemeral_failure(exc, "Verification link") from exc

        if user is None:
            raise InternalError("Verified user could not be loaded.")
        logger.info("Email verified for user %s", user.id)
        return user

    def resend_verification(self, email: str) -> None:
        """Issue a new verification token (superseding the old one) and send it."""
        email = _validate_email(email)
        with self._store_errors("resend_verification"):
            user = self.store.get_user_by_email(email)
        if user is None:
            raise NotFoundError("User not found.")
        if user.email_verified:
            raise AlreadyVerifiedError("Email already verified.")

        with self._store_errors("resend_verification"):
            token = self.ephemeral_tokens.issue(
                user.id, TokenPurpose.EMAIL_VERIFICATION, self.lifetimes.verification, self._clock()
            )

        delivered = self._deliver(
            self.gateway.send_verification_email,
            user.email,
            self._link("verify-email", token),
            user.display_name,
        )
        if not delivered:
            raise InternalError("Failed to send verification email.")

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Start a password reset. Returns None whether or not the account exists.

        Only the email shape is checked on the caller's thread. The account
        lookup, token issue, and delivery run on the background executor when
        one is configured, so known and unknown addresses cost the request the
        same work.
        """
        email = _validate_email(email)
        now = self._clock()
        if self._background is not None:
            self._background.submit(self._send_password_reset, email, now)
        else:
            self._send_password_reset(email, now)

    def _send_password_reset(self, email: str, now: datetime) -> None:
        try:
            with self._store_errors("forgot_password"):
                user = self.store.get_user_by_email(email)
                if user is None:
                    logger.info("Password reset requested for unknown account")
                    return
                token = self.ephemeral_tokens.issue(
                    user.id, TokenPurpose.PASSWORD_RESET, self.lifetimes.password_reset, now
                )
        except DatabaseError:
            # Already logged. Surfacing it would reveal that the account exists.
            return

        self._deliver(
            self.gateway.send_password_reset_email,
            user.email,
            self._link("reset-password", token),
            user.display_name,
        )

    def validate_reset_token(self, token: str) -> None:
        """Check a reset token without consuming it."""
        try:
            with self._store_errors("validate_reset_token"):
                self.ephemeral_tokens.peek(token, TokenPurpose.PASSWORD_RESET, self._clock())
        except EphemeralTokenError as exc:
            raise _ephemeral_failure(exc, "Reset link") from exc

    def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password using a reset token.

        Token consumption, the password write, clearing leftover reset tokens,
        and revoking the user's sessions are one transaction. If any of them
        fails, the token stays valid and the old password stays in place.
        """
        self.passwords.validate_strength(new_password)
        password_hash = self.passwords.hash(new_password)
        now = self._clock()

        try:
            with self._store_errors("reset_password"):
                with self.store.transaction() as conn:
                    user_id = self.ephemeral_tokens.consume(token, TokenPurpose.PASSWORD_RESET, now, conn=conn)
                    if not self.store.update_password(user_id, password_hash, conn=conn):
                        raise InternalError("Failed to update password.")
                    self.ephemeral_tokens.clear(user_id, TokenPurpose.PASSWORD_RESET, now, conn=conn)
                    revoked = self.refresh_tokens.revoke_all(user_id, now, conn=conn)
        except EphemeralTokenError as exc:
            raise _ephemeral_failure(exc, "Reset link") from exc

        logger.info("Password reset for user %s; revoked %d session(s)", user_id, revoked)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _auth_result(
        self, user: User, refresh_token: str, now: datetime, warnings: list[str] | None = None
    ) -> AuthResult:
        return AuthResult(
            user=user,
            access_token=self.access_tokens.issue(user.id, user.email, now),
            refresh_token=refresh_token,
            expires_in=self.access_tokens.expires_in,
            warnings=warnings or [],
        )

    def _link(self, path: str, token: str) -> str:
        return f"{self.frontend_url}/{path}/{token}"

    def _deliver(self, send: Callable[[str, str, str | None], None], to: str, link: str, name: str | None) -> bool:
        """Call a gateway method; log and return False on failure."""
        try:
            send(to, link, name)
        except NotificationError as exc:
            logger.warning("Email delivery failed (%s): %s", send.__name__, exc)
            return False
        except Exception:
            logger.exception("Unexpected error from email gateway (%s)", send.__name__)
            return False
        return True

    @contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except AuthServiceError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("Store failure during %s", operation)
            raise DatabaseError("A storage error occurred. Please try again.") from exc


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def _validate_email(email: str) -> str:
    normalized = normalize_email(email)
    if len(normalized) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email format.")
    return normalized


def _clean_name(name: str | None) -> str | None:
    if name is None:
        return None
    return name.strip() or None


def _ephemeral_failure(exc: EphemeralTokenError, what: str) -> AuthServiceError:
    if exc.reason is TokenFailure.EXPIRED:
        return TokenExpiredError(f"{what} has expired.")
    return TokenNotFoundError(f"{what} is invalid or has already been used.")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_gateway(settings: Settings) -> EmailGateway:
    """SendGrid when SENDGRID_API_KEY is set, otherwise the log-only gateway."""
    if settings.sendgrid_api_key:
        return SendGridGateway(settings.sendgrid_api_key, settings.email_from_address, settings.email_from_name)
    logger.warning("SENDGRID_API_KEY not set -- verification and reset links will be logged, not emailed")
    return LogOnlyGateway()


def build_auth_service(
    settings: Settings,
    *,
    store: CredentialStore | None = None,
    gateway: EmailGateway | None = None,
    clock: Callable[[], datetime] = utcnow,
    background: Executor | None = None,
) -> AuthService:
    """Wire the full AuthService graph from settings.

    The signing secret is read here once and handed to the codec and the token
    hasher; no component reads configuration on its own.
    """
    store = store or CredentialStore(settings.database_url)
    token_hasher = TokenHasher(settings.secret_key)
    passwords = PasswordHasher(
        PasswordPolicy(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
            require_letter=settings.password_require_letter,
            require_digit=settings.password_require_digit,
            require_uppercase=settings.password_require_uppercase,
            require_symbol=settings.password_require_symbol,
        ),
        time_cost=settings.argon2_time_cost,
        memory_cost=settings.argon2_memory_cost,
        parallelism=settings.argon2_parallelism,
    )
    return AuthService(
        store=store,
        passwords=passwords,
        access_tokens=AccessTokenCodec(settings.secret_key, settings.access_token_lifetime),
        refresh_tokens=RefreshTokenManager(store, token_hasher, settings.refresh_token_lifetime, clock),
        ephemeral_tokens=EphemeralTokenManager(store, token_hasher, clock),
        gateway=gateway or build_gateway(settings),
        frontend_url=settings.frontend_url,
        lifetimes=TokenLifetimes(
            verification=settings.verification_token_lifetime,
            password_reset=settings.reset_token_lifetime,
        ),
        clock=clock,
        background=background,
    )
