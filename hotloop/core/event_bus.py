import asyncio
import itertools
import logging
from enum import Enum
from typing import List, Optional

from .events import HotReloadEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class OverflowPolicy(Enum):
    DROP_OLDEST = "drop_oldest"
    BACKPRESSURE = "backpressure"


class Subscription:
    """A subscriber's bounded queue of events, in publish order"""

    def __init__(self, name: str, maxsize: int, policy: OverflowPolicy):
        self.name = name
        self.policy = policy
        self.dropped = 0
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def get(self) -> Optional[HotReloadEvent]:
        """Next event, or None once the subscription is closed and drained"""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def get_nowait(self) -> Optional[HotReloadEvent]:
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return None if item is _CLOSED else item

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self):
        return self

    async def __anext__(self) -> HotReloadEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def _deliver(self, event: HotReloadEvent):
        if self.closed:
            return
        if self.policy is OverflowPolicy.BACKPRESSURE:
            await self._queue.put(event)
            return
        self._put_dropping(event)

    def _put_dropping(self, event):
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1
                logger.warning(f"Subscriber {self.name} is full, dropped oldest event")

    def _close(self):
        if self.closed:
            return
        self.closed = True
        # A full queue has no blocked reader; get() sees closed once drained
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass


class EventBus:
    """In-process publish/subscribe channel for hot reload events"""

    def __init__(self, maxsize: int = 256, policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST):
        if maxsize < 1:
            raise ValueError("EventBus queue size must be at least 1")
        self.maxsize = maxsize
        self.policy = policy
        self._subscribers: List[Subscription] = []
        self._counter = itertools.count(1)
        self._lock = asyncio.Lock()
        self.closed = False

    def subscribe(self, name: Optional[str] = None, maxsize: Optional[int] = None,
                  policy: Optional[OverflowPolicy] = None) -> Subscription:
        """Register a new subscriber; it sees every event published from now on"""
        if self.closed:
            raise RuntimeError("EventBus is closed")
        subscription = Subscription(
            name=name or f"subscriber-{next(self._counter)}",
            maxsize=maxsize or self.maxsize,
            policy=policy or self.policy,
        )
        self._subscribers.append(subscription)
        logger.debug(f"Subscribed {subscription.name} ({subscription.policy.value})")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        subscription._close()

    async def publish(self, event: HotReloadEvent):
        """Deliver an event to every subscriber"""
        if self.closed:
            logger.debug(f"Dropping {event.kind} published after close")
            return
        # Serialize publishers so every subscriber sees the same order
        async with self._lock:
            for subscription in list(self._subscribers):
                await subscription._deliver(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def close(self):
        """Close the bus; subscribers drain what is queued, then stop"""
        if self.closed:
            return
        self.closed = True
        async with self._lock:
            for subscription in self._subscribers:
                subscription._close()
            self._subscribers.clear()
