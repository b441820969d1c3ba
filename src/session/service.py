"""
src/session/service.py
=======================
Session Service — SCAI Guard

The single entry point used by outer layers (HTTP API, telephony bridge).

Responsibility:
    - start_session / stop_session / get_session / list_sessions
    - ingest_chunk: validate → score (no lock held) → open-or-get →
      merge under the per-session lock
    - Record scoring failures as null-result placeholders in the audit log
    - Push every accepted open / merge / close to subscribers
    - Periodically evict closed sessions past their retention window

Ordering guarantees:
    - Scoring never runs while a session lock is held, so a slow scorer
      never blocks other chunks of the same call.
    - Stopping a session does not cancel in-flight scoring; results that
      land after the close become late arrivals.

Subscribers receive the live Session object. Delivery is at-least-once
and not ordered across concurrent operations; subscribers should key on
``session.version``.

This module does NOT:
    - Parse HTTP requests (api/app.py)
    - Implement aggregation rules (aggregator.py)
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from src.config import Settings
from src.errors import ScoringUnavailable, SessionNotFound
from src.scoring.adapter import ChunkScorer, validate_chunk
from src.scoring.retry import score_with_retry
from src.session.aggregator import (
    AUDIT_REASON_SCORING_UNAVAILABLE,
    AuditEntry,
    AuditLog,
    merge,
)
from src.session.coordinator import LifecycleCoordinator
from src.session.models import (
    CallDirection,
    MergeStatus,
    RunningAssessment,
    Session,
    utc_now,
)
from src.session.registry import SessionRegistry
from src.telephony.classifier import CallEvent, CallEventKind

logger = logging.getLogger("scai.session.service")

SessionListener = Callable[[Session], Any]


@dataclass(frozen=True)
class IngestResult:
    """Outcome of ingest_chunk."""

    session: Session
    assessment: RunningAssessment
    status: MergeStatus

    @property
    def warning(self) -> str | None:
        if self.status is MergeStatus.LATE_ARRIVAL:
            return "Session already closed; chunk recorded as a late arrival and not merged."
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "warning": self.warning,
            "assessment": self.assessment.to_dict(),
            "session": self.session.to_dict(),
        }


class SessionService:
    """Facade over registry, scorer, aggregator and coordinator."""

    def __init__(
        self,
        scorer: ChunkScorer,
        settings: Settings | None = None,
        registry: SessionRegistry | None = None,
        audit_log: AuditLog | None = None,
    ):
        self.settings = settings or Settings()
        self.scorer = scorer
        self.registry = registry or SessionRegistry(self.settings.retention_seconds)
        self.audit_log = audit_log or AuditLog(self.settings.audit_log_max_entries)
        self.coordinator = LifecycleCoordinator(self.registry, on_change=self._notify)
        self._listeners: list[SessionListener] = []

    # ------------------------------------------------------------------
    # Life-cycle
    # ------------------------------------------------------------------

    async def start_session(
        self,
        call_id: str,
        phone_number: str | None = None,
        direction: CallDirection | str | None = None,
    ) -> Session:
        """
        Open a session explicitly. Idempotent for an open call_id.

        Raises:
            ValueError:           Empty call_id or unknown direction.
            SessionAlreadyClosed: call_id belongs to a closed session.
        """
        if not call_id or not call_id.strip():
            raise ValueError("call_id must be a non-empty string")
        event = CallEvent(
            call_id=call_id,
            kind=CallEventKind.STARTED,
            phone_number=phone_number,
            direction=CallDirection(direction) if direction else CallDirection.UNKNOWN,
        )
        return await self.coordinator.handle(event)

    async def stop_session(self, call_id: str) -> Session:
        """
        Close a session, equivalent to a CALL_ENDED event.

        Raises:
            SessionNotFound: No session exists for call_id.
        """
        session = await self.coordinator.handle(
            CallEvent(call_id=call_id, kind=CallEventKind.ENDED)
        )
        if session is None:
            raise SessionNotFound(call_id, "No session for this call_id.")
        return session

    def get_session(self, call_id: str) -> Session:
        """
        Raises:
            SessionNotFound: No session exists for call_id.
        """
        return self.registry.get(call_id)

    def list_sessions(self, limit: int | None = None, scam_only: bool = False) -> list[Session]:
        """Sessions, most recently started first."""
        sessions = sorted(self.registry.sessions(), key=lambda s: s.started_at, reverse=True)
        if scam_only:
            sessions = [s for s in sessions if s.is_scam]
        if limit is not None:
            sessions = sessions[: max(limit, 0)]
        return sessions

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def ingest_chunk(
        self,
        call_id: str,
        sequence_number: int,
        audio: bytes,
        total_chunks: int | None = None,
    ) -> IngestResult:
        """
        Score one chunk and merge it into its session.

        Returns:
            IngestResult; status LATE_ARRIVAL means the session had closed
            and the chunk was only recorded in the audit log.

        Raises:
            InvalidChunk:       Malformed metadata or payload.
            ScoringUnavailable: Scoring failed after retries; a placeholder
                                was recorded in the audit log.
            SessionNotFound:    Implicit sessions are disabled and call_id
                                was never opened.
        """
        validate_chunk(
            call_id, sequence_number, audio, total_chunks,
            self.settings.max_chunk_bytes, self.settings.max_total_chunks,
        )

        if not self.settings.allow_implicit_sessions:
            self.registry.get(call_id)

        try:
            chunk = await score_with_retry(
                self.scorer,
                call_id,
                sequence_number,
                audio,
                total_chunks,
                max_retries=self.settings.scoring_max_retries,
                base_delay=self.settings.scoring_base_delay,
                max_delay=self.settings.scoring_max_delay,
            )
        except ScoringUnavailable as exc:
            self.audit_log.record(
                AuditEntry(
                    call_id=call_id,
                    sequence_number=sequence_number,
                    reason=AUDIT_REASON_SCORING_UNAVAILABLE,
                    detail=exc.message,
                )
            )
            raise

        if self.settings.allow_implicit_sessions:
            session, created = await self.registry.open_or_get(call_id)
            if created:
                logger.info("Session %s created implicitly by chunk seq=%d.", call_id, sequence_number)
                await self._notify(session)
        else:
            session = self.registry.get(call_id)

        async with self.registry.lock_for(call_id):
            if total_chunks is not None and session.is_open:
                session.total_chunks = total_chunks
            outcome = merge(session, chunk, self.audit_log)

        if outcome.status is not MergeStatus.LATE_ARRIVAL:
            await self._notify(session)

        return IngestResult(session=session, assessment=outcome.assessment, status=outcome.status)

    def audit_entries(self, call_id: str | None = None) -> list[AuditEntry]:
        return self.audit_log.entries(call_id)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> SessionListener:
        """Register a sync or async callable fired after each accepted change."""
        self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, session: Session) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(session)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(
                    "Session update listener failed for %s (version %d): %s",
                    session.call_id, session.version, exc, exc_info=True,
                )

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict_expired(self, now: datetime | None = None) -> int:
        return self.registry.evict_expired(now or utc_now())

    async def run_eviction(self, interval_seconds: float | None = None) -> None:
        """Evict expired sessions forever; cancel the task to stop."""
        interval = interval_seconds or self.settings.eviction_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()
