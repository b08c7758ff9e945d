"""Typed progress channel for batch sessions.

Publishing never waits on subscribers: each subscription owns a bounded
queue and the oldest event is dropped when a slow consumer falls behind.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from ticket_audit.schemas.batch import EventPhase, ProgressEvent

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, channel: "ProgressEventChannel", session_id: Optional[str], buffer_size: int) -> None:
        self.channel = channel
        self.session_id = session_id
        self.queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=buffer_size)
        self.dropped = 0

    def matches(self, event: ProgressEvent) -> bool:
        return self.session_id is None or self.session_id == event.session_id

    def offer(self, event: ProgressEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self) -> ProgressEvent:
        return await self.queue.get()

    def get_nowait(self) -> ProgressEvent:
        return self.queue.get_nowait()

    def drain(self) -> List[ProgressEvent]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self.queue.get()
            yield event
            if event.phase == "completed" and self.session_id is not None:
                return

    def close(self) -> None:
        self.channel.unsubscribe(self)


class ProgressEventChannel:
    """Fan-out of session progress events to any number of subscribers."""

    def __init__(self, buffer_size: int = 100) -> None:
        self.buffer_size = buffer_size
        self._subscriptions: List[Subscription] = []

    def subscribe(self, session_id: Optional[str] = None) -> Subscription:
        """Subscribe to one session, or to every session when ``session_id`` is None."""
        subscription = Subscription(self, session_id, self.buffer_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, session_id: str, phase: EventPhase, payload: Optional[Dict[str, Any]] = None) -> ProgressEvent:
        event = ProgressEvent(
            session_id=session_id,
            phase=phase,
            payload=payload or {},
            emitted_at=datetime.now(timezone.utc),
        )
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.offer(event)
        logger.debug("Published progress event", extra={"session_id": session_id, "phase": phase})
        return event
