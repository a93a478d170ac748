"""
auth/db.py -- SQLAlchemy Core schema and engine setup for the auth stores.

Both UserStore and RefreshTokenLedger share one MetaData so the
refresh_tokens.user_id foreign key resolves at create_all() time, and one
Engine so they see the same database (including in-memory test databases).

Timestamps are TEXT columns holding core.clock.to_iso() output (UTC,
microsecond precision). Lexical comparison in SQL therefore equals
chronological comparison, which the ledger's expiry queries rely on.

Uniqueness of email / username is case-insensitive. The stores compare
func.lower() on both sides. Emails are stored lower-cased so the plain UNIQUE
constraint backs that invariant; usernames keep their casing and are backed by
a unique index on lower(username).
"""

from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, Text, create_engine, event, func
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token", String(500), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

Index("uq_users_username_lower", func.lower(users.c.username), unique=True)
Index("idx_refresh_tokens_user_id", refresh_tokens.c.user_id)
Index("idx_refresh_tokens_expires_at", refresh_tokens.c.expires_at)
Index("idx_refresh_tokens_revoked", refresh_tokens.c.revoked)


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign-key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what makes the
    ON DELETE CASCADE from users to refresh_tokens actually fire.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str, pool_timeout: float = 5.0) -> Engine:
    """Build an Engine for db_url and create the schema if needed.

    In-memory SQLite URLs get a StaticPool: every checkout returns the same
    connection, so worker threads (FastAPI runs sync dependencies in a thread
    pool) see the same database instead of a blank one.
    """
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_timeout"] = pool_timeout
        kwargs["pool_pre_ping"] = True
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine
