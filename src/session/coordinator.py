"""
src/session/coordinator.py
===========================
Lifecycle Coordinator — SCAI Guard

Responsibility:
    - Apply call life-cycle events to the Session Registry
        INCOMING / STARTED → open the session (no-op if already open)
        ENDED              → close the session (no-op if unknown)
    - Reject reuse of a closed call_id with SessionAlreadyClosed
    - Consume events from a CallEventChannel subscription

A session moves OPEN → CLOSED exactly once. A new call needs a fresh
call_id; a closed one is never reopened.

This module does NOT:
    - Classify raw telephony states (telephony/classifier.py)
    - Merge chunks (aggregator.py)
"""

import logging
from typing import Awaitable, Callable

from src.errors import ScaiError, SessionNotFound
from src.session.models import Session
from src.session.registry import SessionRegistry
from src.telephony.channel import Subscription
from src.telephony.classifier import CallEvent, CallEventKind

logger = logging.getLogger("scai.session.coordinator")

SessionCallback = Callable[[Session], Awaitable[None]]


class LifecycleCoordinator:
    """Binds classified call events to registry operations."""

    def __init__(self, registry: SessionRegistry, on_change: SessionCallback | None = None):
        self.registry = registry
        self.on_change = on_change

    async def handle(self, event: CallEvent) -> Session | None:
        """
        Apply one event.

        Returns:
            The affected session, or None for an ENDED event whose call
            never had a session.

        Raises:
            SessionAlreadyClosed: INCOMING / STARTED for a closed call_id.
        """
        if event.kind in (CallEventKind.INCOMING, CallEventKind.STARTED):
            session, created = await self.registry.open_or_get(
                event.call_id,
                direction=event.direction,
                phone_number=event.phone_number,
                reject_closed=True,
                now=event.observed_at,
            )
            if created:
                await self._changed(session)
            else:
                logger.debug("%s for already open session %s ignored.", event.kind.value, event.call_id)
            return session

        if event.kind is CallEventKind.ENDED:
            try:
                session, closed = await self.registry.close(event.call_id, now=event.observed_at)
            except SessionNotFound:
                logger.debug("CALL_ENDED for unknown call %s ignored.", event.call_id)
                return None
            if closed:
                await self._changed(session)
            return session

        raise AssertionError(f"unhandled call event kind: {event.kind!r}")

    async def run(self, subscription: Subscription) -> int:
        """
        Consume events until the subscription or its channel closes.

        A rejected or failing event is logged and skipped; it never stops
        the loop.

        Returns:
            Number of events handled.
        """
        handled = 0
        async for event in subscription:
            try:
                await self.handle(event)
            except (ScaiError, ValueError) as exc:
                logger.warning("Call event %s for %r rejected: %s", event.kind.value, event.call_id, exc)
            except Exception:
                logger.exception("Call event %s for %r failed.", event.kind.value, event.call_id)
            handled += 1
        logger.info("Lifecycle coordinator stopped after %d event(s).", handled)
        return handled

    async def _changed(self, session: Session) -> None:
        if self.on_change is not None:
            await self.on_change(session)
