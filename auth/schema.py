"""
auth/schema.py -- SQLAlchemy Core schema and engine factory for auth tables.

Every auth store (UserStore, SessionStore, ResetTokenStore) shares one
MetaData and one Engine, so the password-reset transaction can update users,
password_reset_tokens and sessions on a single connection.

Security:
  All queries in the stores use bound parameters. No f-strings in SQL.

  UNIQUE(oauth_provider, oauth_subject) is enforced in code rather than SQL
  because SQLite treats two NULL values as distinct in UNIQUE constraints.

Timestamps are REAL epoch seconds. Comparisons such as expires_at <= :now
are then plain numeric comparisons in every backend.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255)),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(30), nullable=False, server_default="user"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("full_name", String(255)),
    Column("phone", String(40)),
    Column("security_answers", Text),  # JSON {"q1": bcrypt, ...}
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("created_at", Float, nullable=False),
    Column("last_login", Float),
)

sessions = Table(
    "sessions",
    metadata,
    Column("token", String(64), primary_key=True),  # 24 random bytes, hex
    Column("user_id", Integer, nullable=False),
    Column("username", String(255), nullable=False),
    Column("role", String(30), nullable=False),
    Column("mfa_pending", Integer, nullable=False, server_default="0"),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("last_accessed_at", Float, nullable=False),
    Index("ix_sessions_user_id", "user_id"),
    Index("ix_sessions_expires_at", "expires_at"),
)

password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("channel", String(30), nullable=False, server_default="email"),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Index("ix_password_reset_tokens_user_id", "user_id"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str) -> Engine:
    """Create the shared engine and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine
