"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_user / _row_to_refresh_token /
_row_to_ephemeral_token are the mappers. Managers and the service never touch
SQL directly.

Transactions:
  Every write method accepts an optional `conn`. Without it, the method runs
  in its own engine.begin() transaction. With it, the method joins the
  caller's transaction, which lets the token managers and AuthService compose
  several writes into one atomic unit:

      with store.transaction() as conn:
          user_id = ephemeral.consume(token, TokenPurpose.PASSWORD_RESET, now, conn=conn)
          store.update_password(user_id, new_hash, conn=conn)

  An exception anywhere inside the block rolls back every statement.

  Single-use state changes are compare-and-set UPDATEs (WHERE revoked_at IS
  NULL / consumed_at IS NULL) and report whether they won via rowcount, so two
  concurrent requests can never both consume or rotate the same token.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only token hashes are stored; raw refresh/ephemeral tokens never reach the DB.

Timestamps are stored as fixed-width ISO 8601 UTC strings (microsecond
precision, +00:00 offset). Fixed width makes lexicographic order equal to
chronological order, so expiry comparisons can be done in SQL.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import EphemeralToken, RefreshToken, TokenPurpose, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),  # UUID4
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("password_hash", Text, nullable=False),  # argon2 encoded string
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("created_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("replaced_by", String(64)),  # successor hash when rotated out
    Index("ix_refresh_tokens_user_id", "user_id"),
)

_ephemeral_tokens = Table(
    "ephemeral_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False),
    Column("purpose", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
    Index("ix_ephemeral_tokens_user_purpose", "user_id", "purpose"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, RefreshToken, and EphemeralToken records.

    Usage:
        store = CredentialStore("sqlite:///authgate.db")
        user = store.create_user(User(email="a@example.com", password_hash=h))
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///authgate.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, conn: Connection | None = None) -> Iterator[Connection]:
        """Yield a connection inside a transaction.

        If conn is given, yield it unchanged: the caller owns commit/rollback.
        Otherwise open a new transaction that commits on clean exit and rolls
        back if the block raises.
        """
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, conn: Connection | None = None) -> User:
        """Insert a new user and return it with id and created_at filled in.

        Raises sqlalchemy.exc.IntegrityError if the email already exists
        (compared lower-cased). AuthService turns that into ConflictError.
        """
        created = User(
            id=str(uuid.uuid4()),
            email=normalize_email(user.email),
            password_hash=user.password_hash,
            email_verified=user.email_verified,
            first_name=user.first_name,
            last_name=user.last_name,
            created_at=_now(),
        )
        with self.transaction(conn) as c:
            c.execute(
                _users.insert().values(
                    id=created.id,
                    email=created.email,
                    password_hash=created.password_hash,
                    email_verified=created.email_verified,
                    first_name=created.first_name,
                    last_name=created.last_name,
                    created_at=_iso(created.created_at),
                )
            )
        return created

    def get_user_by_id(self, user_id: str, conn: Connection | None = None) -> User | None:
        with self.transaction(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.transaction(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def lock_user(self, user_id: str, conn: Connection) -> bool:
        """Take a row lock on the user for the rest of conn's transaction.

        SELECT ... FOR UPDATE on databases that support it. SQLite has no row
        locks and serializes writers instead; the clause is dropped there.
        Returns False if the user does not exist.
        """
        row = conn.execute(select(_users.c.id).where(_users.c.id == user_id).with_for_update()).fetchone()
        return row is not None

    def update_password(self, user_id: str, password_hash: str, conn: Connection | None = None) -> bool:
        """Replace the stored hash. Returns True if a row was updated."""
        with self.transaction(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash))
        return result.rowcount > 0

    def set_email_verified(self, user_id: str, conn: Connection | None = None) -> bool:
        with self.transaction(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(email_verified=True))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def insert_refresh_token(self, token: RefreshToken, conn: Connection | None = None) -> None:
        with self.transaction(conn) as c:
            c.execute(
                _refresh_tokens.insert().values(
                    token_hash=token.token_hash,
                    user_id=token.user_id,
                    expires_at=_iso(token.expires_at),
                    created_at=_iso(token.created_at or _now()),
                )
            )

    def get_refresh_token(self, token_hash: str, conn: Connection | None = None) -> RefreshToken | None:
        with self.transaction(conn) as c:
            row = c.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_refresh_token(
        self,
        token_hash: str,
        now: datetime,
        replaced_by: str | None = None,
        conn: Connection | None = None,
    ) -> bool:
        """Revoke one live token. Returns True only if this call did the revoking."""
        with self.transaction(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_iso(now), replaced_by=replaced_by)
            )
        return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime, conn: Connection | None = None) -> int:
        """Revoke every live refresh token owned by user_id. Returns the count."""
        with self.transaction(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_iso(now))
            )
        return result.rowcount

    def list_refresh_tokens(self, user_id: str, conn: Connection | None = None) -> list[RefreshToken]:
        """Return all refresh token records of a user, newest first."""
        with self.transaction(conn) as c:
            rows = c.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Ephemeral tokens
    # ------------------------------------------------------------------

    def insert_ephemeral_token(self, token: EphemeralToken, conn: Connection | None = None) -> None:
        with self.transaction(conn) as c:
            c.execute(
                _ephemeral_tokens.insert().values(
                    token_hash=token.token_hash,
                    user_id=token.user_id,
                    purpose=token.purpose.value,
                    expires_at=_iso(token.expires_at),
                    created_at=_iso(token.created_at or _now()),
                )
            )

    def get_ephemeral_token(self, token_hash: str, conn: Connection | None = None) -> EphemeralToken | None:
        with self.transaction(conn) as c:
            row = c.execute(
                _ephemeral_tokens.select().where(_ephemeral_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_ephemeral_token(row) if row is not None else None

    def mark_ephemeral_consumed(self, token_hash: str, now: datetime, conn: Connection | None = None) -> bool:
        """Consume one token if it is still unconsumed and unexpired.

        Returns True only if this call consumed it.
        """
        with self.transaction(conn) as c:
            result = c.execute(
                _ephemeral_tokens.update()
                .where(
                    (_ephemeral_tokens.c.token_hash == token_hash)
                    & (_ephemeral_tokens.c.consumed_at.is_(None))
                    & (_ephemeral_tokens.c.expires_at > _iso(now))
                )
                .values(consumed_at=_iso(now))
            )
        return result.rowcount > 0

    def consume_user_ephemeral_tokens(
        self,
        user_id: str,
        purpose: TokenPurpose,
        now: datetime,
        conn: Connection | None = None,
    ) -> int:
        """Tombstone every unconsumed token of purpose for user_id. Returns the count."""
        with self.transaction(conn) as c:
            result = c.execute(
                _ephemeral_tokens.update()
                .where(
                    (_ephemeral_tokens.c.user_id == user_id)
                    & (_ephemeral_tokens.c.purpose == purpose.value)
                    & (_ephemeral_tokens.c.consumed_at.is_(None))
                )
                .values(consumed_at=_iso(now))
            )
        return result.rowcount

    def list_ephemeral_tokens(
        self, user_id: str, purpose: TokenPurpose, conn: Connection | None = None
    ) -> list[EphemeralToken]:
        with self.transaction(conn) as c:
            rows = c.execute(
                _ephemeral_tokens.select()
                .where((_ephemeral_tokens.c.user_id == user_id) & (_ephemeral_tokens.c.purpose == purpose.value))
                .order_by(_ephemeral_tokens.c.created_at.desc())
            ).fetchall()
        return [_row_to_ephemeral_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> tuple[int, int]:
        """Delete refresh and ephemeral token rows that expired before now.

        Returns (refresh_rows_deleted, ephemeral_rows_deleted).
        """
        cutoff = _iso(now)
        with self.engine.begin() as conn:
            refresh = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < cutoff))
            ephemeral = conn.execute(_ephemeral_tokens.delete().where(_ephemeral_tokens.c.expires_at < cutoff))
        return refresh.rowcount, ephemeral.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        first_name=row.first_name,
        last_name=row.last_name,
        created_at=_parse(row.created_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        token_hash=row.token_hash,
        user_id=row.user_id,
        expires_at=_parse(row.expires_at),
        created_at=_parse(row.created_at),
        revoked_at=_parse(row.revoked_at),
        replaced_by=row.replaced_by,
    )


def _row_to_ephemeral_token(row) -> EphemeralToken:
    return EphemeralToken(
        token_hash=row.token_hash,
        user_id=row.user_id,
        purpose=TokenPurpose(row.purpose),
        expires_at=_parse(row.expires_at),
        created_at=_parse(row.created_at),
        consumed_at=_parse(row.consumed_at),
    )
