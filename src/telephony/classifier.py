"""
src/telephony/classifier.py
============================
Call State Classifier — SCAI Guard

Responsibility:
    - Turn raw device call-state signals (IDLE / RINGING / OFFHOOK) into
      call life-cycle events (INCOMING / STARTED / ENDED)
    - Track the previous raw state and whether the current call rang first
    - Assign a call_id to each call: the device's id when it sends one,
      otherwise a freshly minted id held until the call ends

Transition table (previous → new):

    any      → RINGING   INCOMING  (marks the call as incoming)
    RINGING  → OFFHOOK   STARTED   (incoming call answered)
    IDLE     → OFFHOOK   STARTED   (outgoing call placed)
    OFFHOOK  → IDLE      ENDED
    anything else        no event  (repeats and noise are ignored)

This module does NOT:
    - Open or close sessions (coordinator.py)
    - Deliver events (channel.py)
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from src.session.models import CallDirection, utc_now

logger = logging.getLogger("scai.telephony.classifier")


# ---------------------------------------------------------------------------
# Enums / data types
# ---------------------------------------------------------------------------


class RawCallState(str, Enum):
    """Device-level telephony state."""

    IDLE = "IDLE"
    RINGING = "RINGING"
    OFFHOOK = "OFFHOOK"

    @classmethod
    def parse(cls, value: "str | RawCallState") -> "RawCallState":
        """
        Parse a raw state string, case-insensitively.

        Accepts the Android ``TelephonyManager.EXTRA_STATE_*`` spellings,
        including ``OFF_HOOK``.

        Raises:
            ValueError: If value is not a known state.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Raw call state must be a string, got {type(value).__name__}")
        normalized = value.strip().upper().replace("_", "").replace("-", "")
        for state in cls:
            if state.value == normalized:
                return state
        raise ValueError(
            f"Unknown raw call state: {value!r}. "
            f"Must be one of {[s.value for s in cls]}"
        )


class CallEventKind(str, Enum):
    """Semantic call life-cycle event."""

    INCOMING = "CALL_INCOMING"
    STARTED = "CALL_STARTED"
    ENDED = "CALL_ENDED"


@dataclass(frozen=True)
class CallEvent:
    """A classified life-cycle event for one call."""

    call_id: str
    kind: CallEventKind
    phone_number: str | None = None
    direction: CallDirection = CallDirection.UNKNOWN
    observed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "kind": self.kind.value,
            "phone_number": self.phone_number,
            "direction": self.direction.value,
            "observed_at": self.observed_at.isoformat(),
        }


def _new_call_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class CallStateClassifier:
    """
    Three-state machine over raw telephony signals.

    State is process-local and owned by this instance; a new instance
    starts from IDLE with no call in progress.
    """

    def __init__(self, id_factory: Callable[[], str] = _new_call_id):
        self._id_factory = id_factory
        self.last_state: RawCallState = RawCallState.IDLE
        self.is_incoming: bool = False
        self._call_id: str | None = None
        self._phone_number: str | None = None

    @property
    def current_call_id(self) -> str | None:
        return self._call_id

    def handle(
        self,
        raw_state: "str | RawCallState",
        phone_number: str | None = None,
        call_id: str | None = None,
        now: datetime | None = None,
    ) -> CallEvent | None:
        """
        Classify one raw signal.

        Args:
            raw_state:    IDLE, RINGING or OFFHOOK.
            phone_number: Remote number, when the device reports it.
            call_id:      Device-supplied call id; overrides the minted id.
            now:          Observation time (defaults to UTC now).

        Returns:
            The CallEvent for this transition, or None.

        Raises:
            ValueError: If raw_state is not a known state.
        """
        call_id = (call_id or "").strip() or None
        state = RawCallState.parse(raw_state)
        previous = self.last_state
        stamp = now or utc_now()

        logger.debug("Raw call state %s → %s (number=%s).", previous.value, state.value, phone_number)

        if state is RawCallState.RINGING:
            kind = self._on_ringing(previous, phone_number, call_id)
        elif state is RawCallState.OFFHOOK:
            kind = self._on_offhook(previous, phone_number, call_id)
        else:
            kind = self._on_idle(previous, call_id)

        self.last_state = state

        if kind is None:
            if state is RawCallState.IDLE:
                self._reset_call()
            return None

        event = CallEvent(
            call_id=self._call_id,
            kind=kind,
            phone_number=self._phone_number,
            direction=CallDirection.INCOMING if self.is_incoming else CallDirection.OUTGOING,
            observed_at=stamp,
        )

        if state is RawCallState.IDLE:
            self._reset_call()

        logger.info("Call event: %s for %s.", event.kind.value, event.call_id)
        return event

    # ------------------------------------------------------------------
    # Transition handlers
    # ------------------------------------------------------------------

    def _on_ringing(
        self,
        previous: RawCallState,
        phone_number: str | None,
        call_id: str | None,
    ) -> CallEventKind:
        # A repeated RINGING broadcast belongs to the call already ringing
        if call_id:
            self._call_id = call_id
        elif previous is not RawCallState.RINGING or self._call_id is None:
            self._call_id = self._id_factory()
            self._phone_number = None
        if phone_number:
            self._phone_number = phone_number
        self.is_incoming = True
        return CallEventKind.INCOMING

    def _on_offhook(
        self,
        previous: RawCallState,
        phone_number: str | None,
        call_id: str | None,
    ) -> CallEventKind | None:
        if previous is RawCallState.RINGING:
            if call_id:
                self._call_id = call_id
            elif self._call_id is None:
                self._call_id = self._id_factory()
            if phone_number:
                self._phone_number = phone_number
            return CallEventKind.STARTED

        if previous is RawCallState.IDLE:
            self.is_incoming = False
            self._call_id = call_id or self._id_factory()
            self._phone_number = phone_number
            return CallEventKind.STARTED

        return None

    def _on_idle(self, previous: RawCallState, call_id: str | None) -> CallEventKind | None:
        if previous is RawCallState.OFFHOOK:
            if call_id:
                self._call_id = call_id
            elif self._call_id is None:
                self._call_id = self._id_factory()
            return CallEventKind.ENDED
        return None

    def _reset_call(self) -> None:
        self.is_incoming = False
        self._call_id = None
        self._phone_number = None
