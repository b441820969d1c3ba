"""
src/errors.py
==============
Error Taxonomy — SCAI Guard

Every externally surfaced failure carries the ``call_id`` it concerns and
the UTC timestamp at which it was raised, so it can be correlated with the
audit log.

    InvalidChunk          malformed input, caller's fault       (HTTP 400)
    InvalidRequest        bad direction or raw call state       (HTTP 422)
    ScoringUnavailable    scorer failed or timed out, retryable (HTTP 503)
    SessionAlreadyClosed  reuse of a closed call id             (HTTP 409)
    SessionNotFound       operation on an unknown call id       (HTTP 404)

A late arrival is NOT an error. It is reported through
``src.session.models.MergeStatus.LATE_ARRIVAL``.
"""

from datetime import datetime, timezone


class ScaiError(Exception):
    """Base class for all session-engine failures."""

    def __init__(self, call_id: str | None, message: str):
        self.call_id = call_id
        self.message = message
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(f"[{call_id}] {message}")

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "call_id": self.call_id,
            "timestamp": self.timestamp.isoformat(),
        }


class InvalidChunk(ScaiError):
    """Raised when a chunk payload or its metadata is malformed."""
    pass


class ScoringUnavailable(ScaiError):
    """Raised when the scoring collaborator fails, times out, or misbehaves."""
    pass


class SessionAlreadyClosed(ScaiError):
    """Raised when a closed call id is reused to open a session."""
    pass


class SessionNotFound(ScaiError):
    """Raised when no session exists for the requested call id."""
    pass


class InvalidRequest(ScaiError):
    """Raised when a session or telephony request carries an unusable field."""
    pass
