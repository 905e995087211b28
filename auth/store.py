"""
auth/store.py -- SQLAlchemy Core repository for User accounts.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and dependency code never touches SQL directly.

Usernames are normalised (strip + lower) on every write and lookup so
"Alice " and "alice" are the same account.

Methods that take an optional `conn` join the caller's transaction; without
one they open and commit their own. The password-reset and change-password
flows rely on this to update the hash and revoke sessions atomically.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Engine

from auth.models import User
from auth.schema import users as _users


ACCOUNT_STATUSES = ("active", "disabled")


def normalize_username(username: str) -> str:
    return username.strip().lower()


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(create_auth_engine(url))
        uid = store.create_user(User(username="admin", role="admin", hashed_password=hash_password("...")))
        user = store.get_by_username("admin")
    """

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_username(self, username: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == normalize_username(username))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_identity(self, identity: str) -> User | None:
        """Resolve a forgot-password identity: username first, then e-mail."""
        user = self.get_by_username(identity)
        if user is None and "@" in identity:
            user = self.get_by_email(identity)
        return user

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.oauth_provider == provider) & (_users.c.oauth_subject == subject))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        Callers (registration, OAuth first login) treat that as a conflict.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=normalize_username(user.username),
                    email=user.email.strip().lower() if user.email else None,
                    hashed_password=user.hashed_password,
                    role=user.role,
                    status=user.status,
                    full_name=user.full_name,
                    phone=user.phone,
                    security_answers=json.dumps(user.security_answers) if user.security_answers else None,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    oauth_provider=user.oauth_provider,
                    oauth_subject=user.oauth_subject,
                    created_at=self._clock(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def link_oauth(self, user_id: int, provider: str, subject: str) -> None:
        """Associate an OAuth identity with an existing user record."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(oauth_provider=provider, oauth_subject=subject)
            )
            conn.commit()

    def update_password(self, user_id: int, hashed_password: str, *, conn: Connection | None = None) -> bool:
        """Replace the password hash. Returns False if the user does not exist."""
        stmt = _users.update().where(_users.c.id == user_id).values(hashed_password=hashed_password)
        if conn is not None:
            return conn.execute(stmt).rowcount > 0
        with self.engine.begin() as own:
            return own.execute(stmt).rowcount > 0

    def set_mfa_enabled(self, user_id: int, enabled: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(mfa_enabled=1 if enabled else 0))
            conn.commit()
        return result.rowcount > 0

    def set_status(self, user_id: int, status: str, *, conn: Connection | None = None) -> bool:
        """Set "active" or "disabled". Callers revoke sessions in the same transaction."""
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"Unknown account status: {status!r}")
        stmt = _users.update().where(_users.c.id == user_id).values(status=status)
        if conn is not None:
            return conn.execute(stmt).rowcount > 0
        with self.engine.begin() as own:
            return own.execute(stmt).rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp last_login on every successful authentication (password or OAuth)."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=self._clock()))
            conn.commit()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        status=row.status,
        full_name=row.full_name,
        phone=row.phone,
        security_answers=json.loads(row.security_answers) if row.security_answers else {},
        mfa_enabled=bool(row.mfa_enabled),
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=row.created_at,
        last_login=row.last_login,
    )
