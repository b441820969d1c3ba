"""
src/session/aggregator.py
==========================
Session Aggregator — SCAI Guard

Responsibility:
    - Merge scored chunks into a session's running assessment
    - Detect duplicate chunks by sequence number and merge them idempotently
    - Gate merges on session state: a closed session is frozen and chunks
      that reach it are recorded as late arrivals in the audit log
    - Derive the overall risk level from the worst chunk seen

Aggregation rules:
    - chunk_count counts distinct sequence numbers
    - mean_risk is the running mean over distinct chunks
    - max_risk is the maximum over distinct chunks
    - merged_patterns is the union by pattern name; the first occurrence
      of a name keeps its description and confidence
    - overall_risk_level is a function of max_risk only

Every rule above is commutative and monotonic, so chunks can be merged in
any order and any number of times without a reordering buffer.

The caller MUST hold the session's lock (registry.lock_for) around merge().

This module does NOT:
    - Score audio (scoring/)
    - Create, look up, or close sessions (registry.py)
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from src.config import DEFAULT_AUDIT_LOG_MAX_ENTRIES
from src.session.models import (
    ChunkResult,
    MergeOutcome,
    MergeStatus,
    PatternMatch,
    RiskLevel,
    RunningAssessment,
    Session,
    SessionState,
    utc_now,
)

logger = logging.getLogger("scai.session.aggregator")


# ---------------------------------------------------------------------------
# Risk level thresholds (applied to max_risk, 0–100)
# ---------------------------------------------------------------------------

RISK_THRESHOLD_CRITICAL: float = 80.0
RISK_THRESHOLD_HIGH: float = 60.0
RISK_THRESHOLD_MEDIUM: float = 40.0


def risk_level_for(max_risk: float) -> RiskLevel:
    """Map a 0–100 risk score onto the four escalation levels."""
    if max_risk >= RISK_THRESHOLD_CRITICAL:
        return RiskLevel.CRITICAL
    elif max_risk >= RISK_THRESHOLD_HIGH:
        return RiskLevel.HIGH
    elif max_risk >= RISK_THRESHOLD_MEDIUM:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


AUDIT_REASON_LATE_ARRIVAL = "late_arrival"
AUDIT_REASON_SCORING_UNAVAILABLE = "scoring_unavailable"


@dataclass(frozen=True)
class AuditEntry:
    """One chunk that did not change any assessment."""

    call_id: str
    sequence_number: int
    reason: str
    recorded_at: datetime = field(default_factory=utc_now)
    risk_score: float | None = None  # None for scoring placeholders
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "sequence_number": self.sequence_number,
            "reason": self.reason,
            "recorded_at": self.recorded_at.isoformat(),
            "risk_score": self.risk_score,
            "detail": self.detail,
        }


class AuditLog:
    """
    Size-capped record of late arrivals and scoring placeholders.

    The oldest entries are dropped once max_entries is reached.
    """

    def __init__(self, max_entries: int = DEFAULT_AUDIT_LOG_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self._entries: deque = deque(maxlen=max_entries)

    def record(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    def entries(self, call_id: str | None = None) -> list[AuditEntry]:
        if call_id is None:
            return list(self._entries)
        return [e for e in self._entries if e.call_id == call_id]

    def __len__(self) -> int:
        return len(self._entries)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def merge(
    session: Session,
    chunk: ChunkResult,
    audit_log: AuditLog | None = None,
    now: datetime | None = None,
) -> MergeOutcome:
    """
    Merge one ChunkResult into a session.

    Args:
        session:   Target session. Its lock must be held by the caller.
        chunk:     Scored chunk for session.call_id.
        audit_log: Where late arrivals are recorded.
        now:       Timestamp for last_updated_at (defaults to UTC now).

    Returns:
        MergeOutcome with the session's current assessment and whether the
        chunk was MERGED, a DUPLICATE, or a LATE_ARRIVAL.
    """
    assert chunk.call_id == session.call_id, (
        f"chunk for {chunk.call_id!r} routed to session {session.call_id!r}"
    )

    # --- 1. Closed session: the assessment is final ---
    if session.state is SessionState.CLOSED:
        session.late_arrivals += 1
        if audit_log is not None:
            audit_log.record(
                AuditEntry(
                    call_id=chunk.call_id,
                    sequence_number=chunk.sequence_number,
                    reason=AUDIT_REASON_LATE_ARRIVAL,
                    risk_score=chunk.risk_score,
                )
            )
        logger.warning(
            "Late arrival for closed session %s: seq=%d risk=%.1f (ignored).",
            session.call_id, chunk.sequence_number, chunk.risk_score,
        )
        return MergeOutcome(session.aggregate_risk, MergeStatus.LATE_ARRIVAL)

    current = session.aggregate_risk
    patterns = _union_patterns(current.merged_patterns, chunk.patterns)

    # --- 2. Duplicate: only the pattern union may change ---
    if chunk.sequence_number in session.received_sequences:
        session.aggregate_risk = RunningAssessment(
            mean_risk=current.mean_risk,
            max_risk=current.max_risk,
            merged_patterns=patterns,
            chunk_count=current.chunk_count,
            overall_risk_level=current.overall_risk_level,
        )
        session.touch(now)
        logger.debug(
            "Duplicate chunk seq=%d for %s merged idempotently.",
            chunk.sequence_number, session.call_id,
        )
        return MergeOutcome(session.aggregate_risk, MergeStatus.DUPLICATE)

    # --- 3. New chunk ---
    session.received_sequences.add(chunk.sequence_number)
    if (
        session.highest_sequence_seen is None
        or chunk.sequence_number > session.highest_sequence_seen
    ):
        session.highest_sequence_seen = chunk.sequence_number

    count = current.chunk_count + 1
    mean_risk = current.mean_risk + (chunk.risk_score - current.mean_risk) / count
    max_risk = max(current.max_risk, chunk.risk_score)

    session.aggregate_risk = RunningAssessment(
        mean_risk=mean_risk,
        max_risk=max_risk,
        merged_patterns=patterns,
        chunk_count=count,
        overall_risk_level=risk_level_for(max_risk),
    )
    session.touch(now)

    if session.aggregate_risk.overall_risk_level is not current.overall_risk_level:
        logger.info(
            "Session %s escalated %s → %s (max_risk=%.1f).",
            session.call_id,
            current.overall_risk_level.value,
            session.aggregate_risk.overall_risk_level.value,
            max_risk,
        )

    return MergeOutcome(session.aggregate_risk, MergeStatus.MERGED)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _union_patterns(
    existing: tuple,
    incoming: Iterable[PatternMatch],
) -> tuple:
    """Union by name; existing entries win, new names are appended sorted."""
    seen = {p.name for p in existing}
    added: list[PatternMatch] = []
    # Sort so the winner among same-name patterns in one chunk is stable
    for pattern in sorted(incoming, key=lambda p: (p.name, -p.confidence, p.description)):
        if pattern.name in seen:
            continue
        seen.add(pattern.name)
        added.append(pattern)
    if not added:
        return existing
    return tuple(existing) + tuple(added)
