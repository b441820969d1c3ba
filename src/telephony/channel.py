"""
src/telephony/channel.py
=========================
Call Event Channel — SCAI Guard

Responsibility:
    - Deliver CallEvents from the classifier to any number of consumers
    - Give each subscriber its own queue so a slow consumer never drops
      events for another one
    - End every subscription cleanly when the channel is closed

Publishing never blocks and never touches session state; the Lifecycle
Coordinator is just one subscriber.
"""

import asyncio
import logging

from src.telephony.classifier import CallEvent

logger = logging.getLogger("scai.telephony.channel")

# Sentinel placed on subscriber queues when the channel closes
_CLOSED = object()


class Subscription:
    """Async iterator over the events published after subscribing."""

    def __init__(self, channel: "CallEventChannel"):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def _put(self, item) -> None:
        self._queue.put_nowait(item)

    async def get(self) -> CallEvent | None:
        """Next event, or None once the channel (or this subscription) is closed."""
        if self._done:
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            return None
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        self._channel._unsubscribe(self)
        self._put(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> CallEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class CallEventChannel:
    """Fan-out publish/subscribe channel for CallEvents."""

    def __init__(self):
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        """
        Raises:
            RuntimeError: If the channel is already closed.
        """
        if self._closed:
            raise RuntimeError("Cannot subscribe to a closed channel.")
        subscription = Subscription(self)
        self._subscribers.append(subscription)
        return subscription

    def publish(self, event: CallEvent) -> int:
        """
        Queue an event for every current subscriber.

        Returns:
            Number of subscribers the event was queued for.

        Raises:
            RuntimeError: If the channel is closed.
        """
        if self._closed:
            raise RuntimeError("Cannot publish to a closed channel.")
        for subscription in list(self._subscribers):
            subscription._put(event)
        if not self._subscribers:
            logger.warning("Call event %s for %s had no subscribers.", event.kind.value, event.call_id)
        return len(self._subscribers)

    def close(self) -> None:
        """Close the channel; every subscription ends after draining."""
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscribers):
            subscription._put(_CLOSED)
        self._subscribers.clear()

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
