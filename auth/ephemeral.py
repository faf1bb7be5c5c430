"""
auth/ephemeral.py -- Single-use, purpose-tagged tokens.

Used for email verification links and password reset links. Invariants:

  At most one live token per (user, purpose). issue() locks the user row,
  tombstones every unconsumed token of that purpose, and inserts the new one
  in a single transaction, so two concurrent issues cannot leave two valid
  links behind.

  Consumed means dead. consume() is a compare-and-set on consumed_at; a
  consumed, superseded, unknown, or wrong-purpose token all report NOT_FOUND.
  Only an expired-but-otherwise-live token reports EXPIRED, so clients can
  offer "send a new link" instead of "this link is invalid".

consume() and clear() accept the caller's connection. AuthService uses that
to consume a reset token and write the new password hash in one transaction:
if the password write fails, the consumption is rolled back with it.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection

from auth.errors import EphemeralTokenError, TokenFailure
from auth.models import EphemeralToken, TokenPurpose
from auth.store import CredentialStore
from auth.tokens import TokenHasher

logger = logging.getLogger("authgate.auth.ephemeral")


class EphemeralTokenManager:
    def __init__(self, store: CredentialStore, hasher: TokenHasher, clock: Callable[[], datetime]) -> None:
        self._store = store
        self._hasher = hasher
        self._clock = clock

    def issue(
        self,
        user_id: str,
        purpose: TokenPurpose,
        ttl: timedelta,
        now: datetime | None = None,
        conn: Connection | None = None,
    ) -> str:
        """Supersede any live token of purpose for user_id and issue a new one."""
        now = now or self._clock()
        raw = self._hasher.generate()
        with self._store.transaction(conn) as c:
            if not self._store.lock_user(user_id, conn=c):
                raise EphemeralTokenError(TokenFailure.NOT_FOUND)
            superseded = self._store.consume_user_ephemeral_tokens(user_id, purpose, now, conn=c)
            self._store.insert_ephemeral_token(
                EphemeralToken(
                    token_hash=self._hasher.hash(raw),
                    user_id=user_id,
                    purpose=purpose,
                    expires_at=now + ttl,
                    created_at=now,
                ),
                conn=c,
            )
        if superseded:
            logger.info("Superseded %d %s token(s) for user %s", superseded, purpose.value, user_id)
        return raw

    def consume(
        self,
        token: str,
        purpose: TokenPurpose,
        now: datetime | None = None,
        conn: Connection | None = None,
    ) -> str:
        """Validate and consume token in one step; return the owning user id."""
        now = now or self._clock()
        token_hash = self._hasher.hash(token)
        with self._store.transaction(conn) as c:
            record = self._store.get_ephemeral_token(token_hash, conn=c)
            failure = _check(record, purpose, now)
            if failure is not None:
                raise EphemeralTokenError(failure)
            if not self._store.mark_ephemeral_consumed(token_hash, now, conn=c):
                # A concurrent request consumed it between our read and our update.
                raise EphemeralTokenError(TokenFailure.NOT_FOUND)
        return record.user_id

    def peek(self, token: str, purpose: TokenPurpose, now: datetime | None = None) -> str:
        """Validate without consuming; return the owning user id."""
        now = now or self._clock()
        record = self._store.get_ephemeral_token(self._hasher.hash(token))
        failure = _check(record, purpose, now)
        if failure is not None:
            raise EphemeralTokenError(failure)
        return record.user_id

    def clear(
        self,
        user_id: str,
        purpose: TokenPurpose,
        now: datetime | None = None,
        conn: Connection | None = None,
    ) -> int:
        """Consume every live token of purpose for user_id out of band."""
        return self._store.consume_user_ephemeral_tokens(user_id, purpose, now or self._clock(), conn=conn)


def _check(record: EphemeralToken | None, purpose: TokenPurpose, now: datetime) -> TokenFailure | None:
    if record is None or record.purpose is not purpose or record.is_consumed:
        return TokenFailure.NOT_FOUND
    if record.expires_at <= now:
        return TokenFailure.EXPIRED
    return None
