"""
auth/sessions.py -- DB-backed login sessions with sliding expiry.

A session is an opaque 192-bit token (hex) stored in the sessions table.
Reading a valid session touches it: last_accessed_at moves to now and
expires_at to now + idle timeout. An expired row is deleted on sight, so an
expired token is indistinguishable from one that never existed. The same
happens to a session whose account is disabled or gone.

Failure policy: a storage error on create/get is logged and reported as
"no session". An outage degrades to logged-out, never to logged-in.

Background maintenance: cleanup() deletes expired rows. start()/stop() run it
on a fixed interval as an asyncio task; the process entry point (the FastAPI
lifespan) owns that lifecycle. Nothing starts on import.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from sqlalchemy import delete, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Session, User
from auth.schema import sessions as _sessions
from auth.schema import users as _users
from auth.tokens import generate_session_token

logger = logging.getLogger("movex.auth.sessions")

DEFAULT_IDLE_TIMEOUT = 60 * 60  # 1 hour
DEFAULT_CLEANUP_INTERVAL = 15 * 60  # 15 minutes
DEFAULT_CLEANUP_INITIAL_DELAY = 60


class SessionStore:
    """Repository for Session rows plus the periodic expiry sweep.

    Usage:
        store = SessionStore(engine)
        session = store.create(user)
        same = store.get(session.token)    # touches the row
        store.destroy(session.token)
    """

    def __init__(
        self,
        engine: Engine,
        *,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
        cleanup_initial_delay: float = DEFAULT_CLEANUP_INITIAL_DELAY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.idle_timeout = idle_timeout
        self.cleanup_interval = cleanup_interval
        self.cleanup_initial_delay = cleanup_initial_delay
        self._clock = clock
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, user: User, *, mfa_pending: bool = False) -> Session | None:
        """Persist a new session for user. Returns None if the store fails."""
        now = self._clock()
        session = Session(
            token=generate_session_token(),
            user_id=user.id,
            username=user.username,
            role=user.role,
            created_at=now,
            expires_at=now + self.idle_timeout,
            last_accessed_at=now,
            mfa_pending=mfa_pending,
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _sessions.insert().values(
                        token=session.token,
                        user_id=session.user_id,
                        username=session.username,
                        role=session.role,
                        mfa_pending=1 if mfa_pending else 0,
                        created_at=session.created_at,
                        expires_at=session.expires_at,
                        last_accessed_at=session.last_accessed_at,
                    )
                )
        except SQLAlchemyError:
            logger.exception("Session create failed for user_id=%s", user.id)
            return None
        return session

    def get(self, token: str | None) -> Session | None:
        """Return the live session for token and slide its expiry, or None.

        The select is a plain read; what keeps concurrent readers consistent
        is the touch, a conditional UPDATE ... WHERE expires_at > now. A row
        that expired or was destroyed after the select matches zero rows and
        is never revived, and a live row is only ever pushed further out, so
        two readers of one valid token both see it alive.
        """
        if not token:
            return None
        now = self._clock()
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(_sessions, _users.c.status.label("account_status"))
                    .select_from(_sessions.outerjoin(_users, _users.c.id == _sessions.c.user_id))
                    .where(_sessions.c.token == token)
                ).fetchone()
                if row is None:
                    return None
                if row.expires_at <= now or row.account_status != "active":
                    conn.execute(delete(_sessions).where(_sessions.c.token == token))
                    return None
                expires_at = now + self.idle_timeout
                result = conn.execute(
                    update(_sessions)
                    .where((_sessions.c.token == token) & (_sessions.c.expires_at > now))
                    .values(last_accessed_at=now, expires_at=expires_at)
                )
                if result.rowcount != 1:
                    return None
        except SQLAlchemyError:
            logger.exception("Session lookup failed; treating request as unauthenticated")
            return None
        session = _row_to_session(row)
        session.last_accessed_at = now
        session.expires_at = expires_at
        return session

    def mark_mfa_verified(self, token: str) -> bool:
        """Promote a session to fully authenticated after a passed MFA challenge."""
        now = self._clock()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(_sessions)
                    .where((_sessions.c.token == token) & (_sessions.c.expires_at > now))
                    .values(mfa_pending=0)
                )
        except SQLAlchemyError:
            logger.exception("Session MFA promotion failed")
            return False
        return result.rowcount == 1

    def destroy(self, token: str | None) -> None:
        """Delete one session. Deleting an unknown token is a no-op."""
        if not token:
            return
        with self.engine.begin() as conn:
            conn.execute(delete(_sessions).where(_sessions.c.token == token))

    def destroy_for_user(self, user_id: int, *, keep: str | None = None, conn: Connection | None = None) -> int:
        """Delete every session of user_id (except `keep`). Returns rows removed.

        Pass `conn` to run inside the caller's transaction -- the password
        reset flow does this so the password change and the logout of every
        device commit together.
        """
        stmt = delete(_sessions).where(_sessions.c.user_id == user_id)
        if keep is not None:
            stmt = stmt.where(_sessions.c.token != keep)
        if conn is not None:
            return conn.execute(stmt).rowcount
        with self.engine.begin() as own:
            return own.execute(stmt).rowcount

    def cleanup(self) -> int:
        """Delete all expired sessions. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(delete(_sessions).where(_sessions.c.expires_at <= self._clock()))
        if result.rowcount:
            logger.info("Session cleanup removed %d expired sessions", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Background sweep lifecycle
    # ------------------------------------------------------------------

    async def _cleanup_loop(self) -> None:
        """Run cleanup() after an initial delay, then every cleanup_interval.

        CancelledError from stop() propagates out of asyncio.sleep and unwinds
        the loop. A failed sweep is logged and retried on the next tick.
        """
        await asyncio.sleep(self.cleanup_initial_delay)
        while True:
            try:
                await asyncio.to_thread(self.cleanup)
            except SQLAlchemyError:
                logger.exception("Session cleanup failed")
            await asyncio.sleep(self.cleanup_interval)

    def start(self) -> None:
        """Start the periodic sweep on the running event loop. Idempotent."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._cleanup_loop(), name="session-cleanup")

    async def stop(self) -> None:
        """Cancel the periodic sweep and wait for it to unwind."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()


def _row_to_session(row) -> Session:
    return Session(
        token=row.token,
        user_id=row.user_id,
        username=row.username,
        role=row.role,
        created_at=row.created_at,
        expires_at=row.expires_at,
        last_accessed_at=row.last_accessed_at,
        mfa_pending=bool(row.mfa_pending),
    )
