"""
auth/refresh.py -- Refresh token issuance, validation, rotation, and revocation.

Refresh tokens are long-lived and stateful: every check reads the store, so a
revocation takes effect on the very next request. Validity is

    present AND not revoked AND not expired

and the failure reported follows that check order (NOT_FOUND, REVOKED,
EXPIRED). All three mean "not usable"; the order only decides which reason is
logged.

Rotation:
  rotate() runs validate -> revoke -> issue in one store transaction. The
  revoke is a compare-and-set that records the successor's hash in
  replaced_by, so exactly one of two concurrent rotations of the same token
  can win.

Reuse detection:
  A token that was rotated out should never be seen again. If it is, either
  the client replayed it or someone else holds a copy. We cannot tell which
  party is legitimate, so every refresh token of the user is revoked --
  including the successor issued by the rotation -- and the caller has to log
  in again. Losing a concurrent rotation race is treated the same way.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection

from auth.errors import RefreshTokenError, TokenFailure
from auth.models import RefreshToken, RotatedRefreshToken
from auth.store import CredentialStore
from auth.tokens import TokenHasher

logger = logging.getLogger("authgate.auth.refresh")


class RefreshTokenManager:
    def __init__(
        self,
        store: CredentialStore,
        hasher: TokenHasher,
        default_ttl: timedelta,
        clock: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._hasher = hasher
        self.default_ttl = default_ttl
        self._clock = clock

    def issue(
        self,
        user_id: str,
        ttl: timedelta | None = None,
        now: datetime | None = None,
        conn: Connection | None = None,
    ) -> str:
        """Create and persist a new refresh token; return the raw value.

        The raw value is returned exactly once. Only its hash is stored.
        """
        now = now or self._clock()
        raw = self._hasher.generate()
        self._store.insert_refresh_token(
            RefreshToken(
                token_hash=self._hasher.hash(raw),
                user_id=user_id,
                expires_at=now + (ttl or self.default_ttl),
                created_at=now,
            ),
            conn=conn,
        )
        return raw

    def validate(self, token: str, now: datetime | None = None) -> str:
        """Return the owning user id, or raise RefreshTokenError."""
        now = now or self._clock()
        record = self._store.get_refresh_token(self._hasher.hash(token))
        failure = _check(record, now)
        if failure is not None:
            raise RefreshTokenError(failure)
        return record.user_id

    def revoke(self, token: str, now: datetime | None = None, conn: Connection | None = None) -> None:
        """Make a single token unusable. Revoking twice is not an error."""
        self._store.revoke_refresh_token(self._hasher.hash(token), now or self._clock(), conn=conn)

    def revoke_all(self, user_id: str, now: datetime | None = None, conn: Connection | None = None) -> int:
        """Revoke every live refresh token of user_id; return how many were revoked."""
        return self._store.revoke_user_refresh_tokens(user_id, now or self._clock(), conn=conn)

    def rotate(self, token: str, ttl: timedelta | None = None, now: datetime | None = None) -> RotatedRefreshToken:
        """Exchange a valid refresh token for a new one, atomically.

        Raises RefreshTokenError on any failure. Reuse of a rotated-out token
        revokes all of the user's tokens before raising.
        """
        now = now or self._clock()
        old_hash = self._hasher.hash(token)
        new_raw = self._hasher.generate()
        new_hash = self._hasher.hash(new_raw)

        reuse_user_id: str | None = None
        with self._store.transaction() as conn:
            record = self._store.get_refresh_token(old_hash, conn=conn)
            failure = _check(record, now)
            if failure is None:
                if self._store.revoke_refresh_token(old_hash, now, replaced_by=new_hash, conn=conn):
                    self._store.insert_refresh_token(
                        RefreshToken(
                            token_hash=new_hash,
                            user_id=record.user_id,
                            expires_at=now + (ttl or self.default_ttl),
                            created_at=now,
                        ),
                        conn=conn,
                    )
                    return RotatedRefreshToken(user_id=record.user_id, refresh_token=new_raw)
                # Another request rotated this token between our read and our update.
                failure = TokenFailure.REVOKED
                reuse_user_id = record.user_id
            elif failure is TokenFailure.REVOKED and record.replaced_by is not None:
                reuse_user_id = record.user_id

            if reuse_user_id is not None:
                revoked = self._store.revoke_user_refresh_tokens(reuse_user_id, now, conn=conn)
                logger.warning(
                    "Refresh token reuse detected for user %s; revoked %d live token(s)",
                    reuse_user_id,
                    revoked,
                )

        # Raised after the transaction commits so the reuse revocation sticks.
        raise RefreshTokenError(failure)


def _check(record: RefreshToken | None, now: datetime) -> TokenFailure | None:
    if record is None:
        return TokenFailure.NOT_FOUND
    if record.is_revoked:
        return TokenFailure.REVOKED
    if record.expires_at <= now:
        return TokenFailure.EXPIRED
    return None
