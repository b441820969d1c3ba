# src/telephony/__init__.py
# ==========================
# Telephony Layer — SCAI Guard
#
# Responsibility:
#   - Classify raw device call states into life-cycle events
#   - Deliver those events to consumers over a channel
#
# Public API:
#   - CallStateClassifier.handle() — raw state → CallEvent | None
#   - CallEventChannel            — publish / subscribe for CallEvents

from src.telephony.classifier import (  # noqa: F401
    CallEvent,
    CallEventKind,
    CallStateClassifier,
    RawCallState,
)
from src.telephony.channel import CallEventChannel, Subscription  # noqa: F401
