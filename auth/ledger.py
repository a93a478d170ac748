"""
auth/ledger.py -- Refresh token ledger (SQLAlchemy Core).

The ledger is the authoritative record of refresh-token validity. A refresh
token is usable only while its row exists, revoked = 0 and now < expires_at;
the JWT's own exp claim is checked too, but the ledger wins when they differ.

Pattern: Repository + Data Mapper, same shape as auth/store.py.

Revocation is idempotent: revoke() on an unknown or already-revoked token
returns False instead of raising, which keeps logout always-succeeds from the
client's point of view.

Maintenance (purge_expired / purge_revoked_older_than) only deletes rows that
can no longer authenticate anything, so it is safe to run against live
traffic from a cron job or `python main.py purge`.

Layer rule: no imports from cache/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.db import refresh_tokens as _tokens
from auth.errors import DuplicateRefreshTokenError, RefreshTokenNotFoundError, infrastructure_guard
from auth.models import RefreshToken
from core.clock import Clock, from_iso, to_iso, utc_now

logger = logging.getLogger("authcore.ledger")

_COMPONENT = "refresh token ledger"


def _guard():
    return infrastructure_guard(_COMPONENT, SQLAlchemyError)


class RefreshTokenLedger:
    """Repository for RefreshToken rows."""

    def __init__(self, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def store(self, record: RefreshToken) -> RefreshToken:
        """Persist a new refresh token row and return it with its id.

        Raises DuplicateRefreshTokenError if the token string already exists.
        Tokens carry a random jti, so this only fires on a genuine replay of
        the same string.
        """
        now = to_iso(self._clock())
        with _guard():
            try:
                with self.engine.connect() as conn:
                    conn.execute(
                        _tokens.insert().values(
                            user_id=record.user_id,
                            token=record.token,
                            expires_at=to_iso(record.expires_at),
                            revoked=1 if record.revoked else 0,
                            ip_address=record.ip_address or "",
                            user_agent=record.user_agent or "",
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    conn.commit()
            except IntegrityError as exc:
                raise DuplicateRefreshTokenError() from exc
        return self.find_by_token(record.token)

    def find_by_token(self, token: str) -> RefreshToken:
        """Return the row for token. Raises RefreshTokenNotFoundError if absent."""
        with _guard():
            with self.engine.connect() as conn:
                row = conn.execute(
                    _tokens.select().where((_tokens.c.token == token) & _tokens.c.deleted_at.is_(None))
                ).fetchone()
        if row is None:
            raise RefreshTokenNotFoundError()
        return _row_to_token(row)

    def find_active_by_user(self, user_id: int) -> list[RefreshToken]:
        """Return the user's usable tokens (unrevoked, unexpired), newest first."""
        now = to_iso(self._clock())
        with _guard():
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(_tokens)
                    .where(
                        (_tokens.c.user_id == user_id)
                        & (_tokens.c.revoked == 0)
                        & (_tokens.c.expires_at > now)
                        & _tokens.c.deleted_at.is_(None)
                    )
                    .order_by(_tokens.c.created_at.desc(), _tokens.c.id.desc())
                ).fetchall()
        return [_row_to_token(r) for r in rows]

    def revoke(self, token: str) -> bool:
        """Mark a token revoked. Returns True if this call changed a row.

        Unknown and already-revoked tokens are not an error.
        """
        now = to_iso(self._clock())
        with _guard():
            with self.engine.connect() as conn:
                result = conn.execute(
                    _tokens.update()
                    .where((_tokens.c.token == token) & (_tokens.c.revoked == 0))
                    .values(revoked=1, updated_at=now)
                )
                conn.commit()
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int) -> int:
        """Revoke every unrevoked token of a user. Returns the number revoked."""
        now = to_iso(self._clock())
        with _guard():
            with self.engine.connect() as conn:
                result = conn.execute(
                    _tokens.update()
                    .where((_tokens.c.user_id == user_id) & (_tokens.c.revoked == 0))
                    .values(revoked=1, updated_at=now)
                )
                conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Hard-delete rows whose expires_at has passed. Returns rows removed."""
        now = to_iso(self._clock())
        with _guard():
            with self.engine.connect() as conn:
                result = conn.execute(_tokens.delete().where(_tokens.c.expires_at <= now))
                conn.commit()
        logger.info("Purged %d expired refresh tokens", result.rowcount)
        return result.rowcount

    def purge_revoked_older_than(self, age: timedelta) -> int:
        """Hard-delete rows revoked more than `age` ago.

        updated_at is stamped at revocation and a revoked row is never updated
        again, so it doubles as the revocation time.
        """
        cutoff = to_iso(self._clock() - age)
        with _guard():
            with self.engine.connect() as conn:
                result = conn.execute(
                    _tokens.delete().where((_tokens.c.revoked == 1) & (_tokens.c.updated_at < cutoff))
                )
                conn.commit()
        logger.info("Purged %d refresh tokens revoked before %s", result.rowcount, cutoff)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=from_iso(row.expires_at),
        revoked=bool(row.revoked),
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        deleted_at=from_iso(row.deleted_at),
    )
