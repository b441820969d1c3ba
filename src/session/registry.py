"""
src/session/registry.py
========================
Session Registry — SCAI Guard

Responsibility:
    - Own the mapping call_id → Session (exactly one Session per call_id)
    - Own one asyncio.Lock per session; all mutations of a session
      (open, merge, close) are serialized on it
    - Create sessions under a short registry-wide critical section so two
      concurrent first-touches of the same call_id cannot produce two
      Session objects
    - Close sessions and evict closed ones after the retention window

Locking rules:
    - The registry-wide lock is held only while checking for and
      inserting a new session. Nothing awaits while holding it.
    - Operations on different call_ids never share a lock.

This module does NOT:
    - Merge chunks (aggregator.py)
    - Interpret telephony events (coordinator.py)
    - Notify subscribers (service.py)
"""

import asyncio
import logging
from datetime import datetime, timedelta

from src.config import DEFAULT_RETENTION_SECONDS
from src.errors import SessionAlreadyClosed, SessionNotFound
from src.session.models import CallDirection, Session, SessionState, utc_now

logger = logging.getLogger("scai.session.registry")


class SessionRegistry:
    """In-memory arena of sessions keyed by call_id."""

    def __init__(self, retention_seconds: float = DEFAULT_RETENTION_SECONDS):
        if retention_seconds < 0:
            raise ValueError(f"retention_seconds must be >= 0, got {retention_seconds}")
        self.retention = timedelta(seconds=retention_seconds)
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._create_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Creation / lookup
    # ------------------------------------------------------------------

    async def open_or_get(
        self,
        call_id: str,
        direction: CallDirection | None = None,
        phone_number: str | None = None,
        reject_closed: bool = False,
        now: datetime | None = None,
    ) -> tuple[Session, bool]:
        """
        Return the session for call_id, creating it if absent.

        The first caller to create a session decides its direction and
        phone number; later callers only observe that it exists.

        Args:
            call_id:       Call identifier.
            direction:     Direction for a newly created session.
            phone_number:  Remote party number for a newly created session.
            reject_closed: Raise instead of returning a CLOSED session.
            now:           Creation timestamp (defaults to UTC now).

        Returns:
            (session, created) — created is True only for the caller that
            inserted the session.

        Raises:
            ValueError:           If call_id is empty.
            SessionAlreadyClosed: If reject_closed and the session is CLOSED.
        """
        if not call_id or not call_id.strip():
            raise ValueError("call_id must be a non-empty string")

        created = False
        session = self._sessions.get(call_id)
        if session is None:
            async with self._create_lock:
                session = self._sessions.get(call_id)
                if session is None:
                    stamp = now or utc_now()
                    session = Session(
                        call_id=call_id,
                        phone_number=phone_number,
                        direction=direction or CallDirection.UNKNOWN,
                        started_at=stamp,
                    )
                    session.touch(stamp)
                    self._sessions[call_id] = session
                    self._locks[call_id] = asyncio.Lock()
                    created = True

        assert self._sessions.get(call_id) is session, (
            f"registry holds two sessions for {call_id!r}"
        )

        if created:
            logger.info(
                "Session opened: %s (direction=%s, number=%s).",
                call_id, session.direction.value, session.phone_number,
            )
        elif reject_closed and session.state is SessionState.CLOSED:
            raise SessionAlreadyClosed(
                call_id, "Session is closed; a new call needs a fresh call_id."
            )

        return session, created

    def get(self, call_id: str) -> Session:
        """
        Raises:
            SessionNotFound: If no session exists for call_id.
        """
        session = self._sessions.get(call_id)
        if session is None:
            raise SessionNotFound(call_id, "No session for this call_id.")
        return session

    def lock_for(self, call_id: str) -> asyncio.Lock:
        """
        Per-session lock guarding every mutation of that session.

        Raises:
            SessionNotFound: If no session exists for call_id.
        """
        lock = self._locks.get(call_id)
        if lock is None:
            raise SessionNotFound(call_id, "No session for this call_id.")
        return lock

    def sessions(self) -> list[Session]:
        """Snapshot of all sessions currently held."""
        return list(self._sessions.values())

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Closing / eviction
    # ------------------------------------------------------------------

    async def close(
        self,
        call_id: str,
        now: datetime | None = None,
    ) -> tuple[Session, bool]:
        """
        Transition a session to CLOSED and freeze its assessment.

        Closing an already closed session returns it unchanged.

        Returns:
            (session, closed) — closed is True only if this call performed
            the OPEN → CLOSED transition.

        Raises:
            SessionNotFound: If no session exists for call_id.
        """
        session = self.get(call_id)
        async with self.lock_for(call_id):
            if session.state is SessionState.CLOSED:
                return session, False
            stamp = now or utc_now()
            session.state = SessionState.CLOSED
            session.ended_at = stamp
            session.touch(stamp)

        logger.info(
            "Session closed: %s (chunks=%d, max_risk=%.1f, level=%s).",
            call_id,
            session.aggregate_risk.chunk_count,
            session.aggregate_risk.max_risk,
            session.aggregate_risk.overall_risk_level.value,
        )
        return session, True

    def evict_expired(self, now: datetime | None = None) -> int:
        """
        Drop CLOSED sessions whose retention window has elapsed.

        Returns:
            Number of sessions evicted.
        """
        stamp = now or utc_now()
        expired = [
            call_id
            for call_id, session in self._sessions.items()
            if session.state is SessionState.CLOSED
            and session.ended_at is not None
            and session.ended_at + self.retention <= stamp
        ]
        for call_id in expired:
            self._sessions.pop(call_id, None)
            self._locks.pop(call_id, None)

        if expired:
            logger.info("Evicted %d expired session(s).", len(expired))
        return len(expired)
