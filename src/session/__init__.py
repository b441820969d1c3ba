# src/session/__init__.py
# ========================
# Session Engine — SCAI Guard
#
# Responsibility:
#   - One risk-assessment session per active call
#   - Merge scored chunks into a running assessment
#   - Open / close sessions from call life-cycle events
#
# Public API:
#   - src.session.service.SessionService       — start / ingest / stop / get / list
#   - src.session.coordinator.LifecycleCoordinator — CallEvent → registry operations
#   - SessionRegistry — call_id → Session, per-session locks
#   - merge()         — chunk aggregation rules
#
# service and coordinator are not re-exported here: they depend on
# src.telephony, which itself depends on src.session.models.

from src.session.models import (  # noqa: F401
    CallDirection,
    ChunkResult,
    MergeOutcome,
    MergeStatus,
    PatternMatch,
    RiskLevel,
    RunningAssessment,
    Session,
    SessionState,
)
from src.session.aggregator import AuditEntry, AuditLog, merge, risk_level_for  # noqa: F401
from src.session.registry import SessionRegistry  # noqa: F401
