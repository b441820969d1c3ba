"""
src/session/models.py
======================
Session Data Model — SCAI Guard

Responsibility:
    - Define the typed structures shared by the registry, aggregator,
      coordinator and service
    - Provide enums for call direction, session state, risk level and
      merge outcome
    - Serialize sessions into plain dicts for the HTTP layer and webhooks

Value types (PatternMatch, ChunkResult, RunningAssessment, MergeOutcome)
are frozen. Session is the only mutable record and is only mutated under
its per-session lock (see registry.py).

This module does NOT:
    - Perform any merging or scoring (aggregator.py / scoring/)
    - Hold locks or registry state
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class CallDirection(str, Enum):
    """Which side placed the call."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"
    UNKNOWN = "unknown"


class SessionState(str, Enum):
    """Session life-cycle. OPEN → CLOSED is the only transition."""

    OPEN = "open"
    CLOSED = "closed"


class RiskLevel(str, Enum):
    """Overall escalation level of a session."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class MergeStatus(str, Enum):
    """How a chunk result was applied to its session."""

    MERGED = "merged"
    DUPLICATE = "duplicate"
    LATE_ARRIVAL = "late_arrival"


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PatternMatch:
    """A scam pattern detected in a chunk."""

    name: str
    description: str = ""
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ChunkResult:
    """Scored outcome of a single audio chunk."""

    call_id: str
    sequence_number: int
    risk_score: float           # 0–100
    confidence: float           # 0–1
    patterns: frozenset = frozenset()
    observed_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class RunningAssessment:
    """
    Aggregate risk view of a session, replaced wholesale on every merge.

    merged_patterns keeps first-occurrence order and holds at most one
    PatternMatch per name.
    """

    mean_risk: float = 0.0
    max_risk: float = 0.0
    merged_patterns: tuple = ()
    chunk_count: int = 0
    overall_risk_level: RiskLevel = RiskLevel.LOW

    @property
    def pattern_names(self) -> list[str]:
        return [p.name for p in self.merged_patterns]

    def to_dict(self) -> dict[str, Any]:
        return {
            "mean_risk": round(self.mean_risk, 2),
            "max_risk": round(self.max_risk, 2),
            "merged_patterns": [p.to_dict() for p in self.merged_patterns],
            "chunk_count": self.chunk_count,
            "overall_risk_level": self.overall_risk_level.value,
        }


@dataclass(frozen=True)
class MergeOutcome:
    """Result of merging one ChunkResult into a session."""

    assessment: RunningAssessment
    status: MergeStatus

    @property
    def late_arrival(self) -> bool:
        return self.status is MergeStatus.LATE_ARRIVAL


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class Session:
    """
    Per-call aggregation context spanning call start to call end.

    Identity is the object itself; the registry guarantees one Session per
    call_id; sessions compare by identity.
    """

    call_id: str
    phone_number: str | None = None
    direction: CallDirection = CallDirection.UNKNOWN
    state: SessionState = SessionState.OPEN
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    highest_sequence_seen: int | None = None
    received_sequences: set = field(default_factory=set)
    aggregate_risk: RunningAssessment = field(default_factory=RunningAssessment)
    last_updated_at: datetime = field(default_factory=utc_now)
    total_chunks: int | None = None
    late_arrivals: int = 0
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    @property
    def is_scam(self) -> bool:
        return self.aggregate_risk.overall_risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    @property
    def missing_sequences(self) -> list[int]:
        """Sequence numbers in [0, total_chunks) not yet received."""
        if self.total_chunks is None:
            return []
        return [
            seq for seq in range(self.total_chunks)
            if seq not in self.received_sequences
        ]

    def touch(self, now: datetime | None = None) -> None:
        """Stamp an accepted mutation and bump the version counter."""
        self.last_updated_at = now or utc_now()
        self.version += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "phone_number": self.phone_number,
            "direction": self.direction.value,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "highest_sequence_seen": self.highest_sequence_seen,
            "received_chunks": len(self.received_sequences),
            "total_chunks": self.total_chunks,
            "missing_sequences": self.missing_sequences,
            "late_arrivals": self.late_arrivals,
            "assessment": self.aggregate_risk.to_dict(),
            "is_scam": self.is_scam,
            "last_updated_at": self.last_updated_at.isoformat(),
            "version": self.version,
        }
