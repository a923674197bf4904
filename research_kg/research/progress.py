"""
Progress Emitter: a run-partitioned publish/subscribe channel.

Each subscriber owns an asyncio.Queue registered under one run id. publish()
fans an event out to that run's queues only, so concurrent runs never see each
other's events. Delivery is best-effort: nothing is buffered for subscribers
that attach after an event was published.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Optional

from research_kg.schemas.research import ProgressEvent, ProgressStatus

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Registry of run_id -> subscriber queues."""

    def __init__(self):
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def publish(self, run_id: str, event: ProgressEvent) -> int:
        """Deliver an event to every subscriber of run_id. Returns the number reached."""
        queues = self._subscribers.get(run_id)
        if not queues:
            return 0
        for queue in list(queues):
            queue.put_nowait(event)
        return len(queues)

    def subscribe(self, run_id: str) -> "ProgressSubscription":
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[run_id].add(queue)
        return ProgressSubscription(self, run_id, queue)

    def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(run_id)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._subscribers[run_id]

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))


class ProgressSubscription:
    """
    Async stream of one run's events.

    Iteration ends after a terminal event (COMPLETE, FAILED, CANCELLED) and the
    subscription removes itself from the channel. Use as an async context
    manager to unsubscribe early.
    """

    def __init__(self, channel: ProgressChannel, run_id: str, queue: asyncio.Queue):
        self.channel = channel
        self.run_id = run_id
        self._queue = queue
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._closed:
            raise StopAsyncIteration
        event = await self._queue.get()
        if event.status.terminal:
            self.close()
        return event

    async def get(self, timeout: Optional[float] = None) -> ProgressEvent:
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.channel.unsubscribe(self.run_id, self._queue)

    def detach(self) -> None:
        """Drop the registry entry but keep already-buffered events readable."""
        self.channel.unsubscribe(self.run_id, self._queue)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class ProgressReporter:
    """
    Publishes one run's events with a strictly increasing step_index.

    total_steps is 0 until the plan is known.
    """

    def __init__(self, channel: ProgressChannel, run_id: str):
        self.channel = channel
        self.run_id = run_id
        self.total_steps = 0
        self._sequence = 0
        self._finished = False

    def emit(
        self,
        status: ProgressStatus,
        message: str,
        sub_query_index: Optional[int] = None,
        data: Optional[dict] = None,
    ) -> ProgressEvent:
        self._sequence += 1
        event = ProgressEvent(
            run_id=self.run_id,
            step_index=self._sequence,
            total_steps=self.total_steps,
            status=status,
            message=message,
            sub_query_index=sub_query_index,
            data=data or {},
        )
        if status.terminal:
            self._finished = True
        self.channel.publish(self.run_id, event)
        logger.debug("[%s] #%d %s: %s", self.run_id, event.step_index, status.value, message)
        return event

    @property
    def finished(self) -> bool:
        """True once a terminal event has been published."""
        return self._finished


_default_channel = ProgressChannel()


def default_channel() -> ProgressChannel:
    """The process-wide channel used when a caller does not supply one."""
    return _default_channel
