"""
Partitioned dispatcher for stream sessions.

Routes data frames to one bounded queue per partition key (account id or
instrument) and runs one consumer worker per key.

Overflow policy is drop-oldest and lossy: route() never blocks the read loop.
When a partition queue is full the oldest pending message is evicted to admit
the newest. Consumers that need every message must keep up with the stream.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Hashable, Optional, TypeVar

from fxclient.stream.errors import MessageParseError, RoutingError, StreamError
from fxclient.stream.feeds import BaseFeed
from fxclient.stream.health import HealthMonitor
from fxclient.stream.types import StreamMessage

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


class PartitionQueue:
    """
    Bounded FIFO with drop-oldest overflow.

    get() waits for the next message and returns None once the queue is closed
    and empty.
    """

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._items: deque[StreamMessage] = deque(maxlen=capacity)
        self._ready = asyncio.Event()
        self._closed = False
        self.evicted = 0

    @property
    def capacity(self) -> int:
        return self._items.maxlen or 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def full(self) -> bool:
        return len(self._items) >= self.capacity

    def put_nowait(self, msg: StreamMessage) -> Optional[StreamMessage]:
        """
        Insert without blocking. Returns the evicted message, if any.

        Raises:
            StreamError: If the queue is closed
        """
        if self._closed:
            raise StreamError("put on a closed partition queue", component="PartitionQueue")
        victim = self._items[0] if self.full() else None
        # deque(maxlen) discards from the left on append
        self._items.append(msg)
        if victim is not None:
            self.evicted += 1
        self._ready.set()
        return victim

    async def get(self) -> Optional[StreamMessage]:
        while not self._items:
            if self._closed:
                return None
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def close(self, discard: bool = False) -> int:
        """Close the queue. Returns the number of discarded messages."""
        dropped = 0
        if discard:
            dropped = len(self._items)
            self._items.clear()
        self._closed = True
        self._ready.set()
        return dropped

    def snapshot(self) -> list[StreamMessage]:
        """Pending messages, oldest first."""
        return list(self._items)


@dataclass
class DispatcherStats:
    """Statistics for the dispatcher."""

    routed: int = 0
    evicted: int = 0
    unrouted: int = 0
    discarded: int = 0
    delivered: int = 0
    decode_errors: int = 0
    callback_errors: int = 0
    by_key: dict[Any, int] = field(default_factory=dict)


class PartitionedDispatcher(Generic[K, T]):
    """
    Routes messages to per-key queues, each drained by its own worker.

    The routing table is written only by register() before workers start and
    is read-only afterwards, so route() needs no lock.

    Usage:
        dispatcher = PartitionedDispatcher(PriceFeed(), capacity=5)
        dispatcher.register("EUR_USD")
        dispatcher.start_workers(on_tick)
        dispatcher.route("EUR_USD", msg)
        ...
        await dispatcher.drain_and_close()
    """

    def __init__(
        self,
        feed: BaseFeed[K, T],
        capacity: int = 5,
        *,
        health: Optional[HealthMonitor] = None,
        on_unrouted: Optional[Callable[[RoutingError], None]] = None,
        name: str = "dispatcher",
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            feed: Feed used to decode payloads inside the workers
            capacity: Per partition queue capacity
            health: Optional health monitor to record deliveries
            on_unrouted: Optional hook for messages with an unregistered key
            name: Name for logging purposes
        """
        self._feed = feed
        self._capacity = capacity
        self._health = health
        self._on_unrouted = on_unrouted
        self._name = name

        self._queues: dict[K, PartitionQueue] = {}
        self._workers: dict[K, asyncio.Task[None]] = {}
        self._halted = False
        self._closed = False
        self._stats = DispatcherStats()

    @property
    def stats(self) -> DispatcherStats:
        return self._stats

    @property
    def keys(self) -> list[K]:
        return list(self._queues)

    @property
    def halted(self) -> bool:
        return self._halted

    def queue(self, key: K) -> Optional[PartitionQueue]:
        return self._queues.get(key)

    def register(self, key: K) -> PartitionQueue:
        """
        Register interest in a partition key.

        Raises:
            StreamError: If workers were already started
        """
        if self._workers or self._closed:
            raise StreamError(
                "Partitions must be registered before workers start",
                component=self._name,
            )
        q = self._queues.get(key)
        if q is None:
            q = PartitionQueue(self._capacity)
            self._queues[key] = q
            if self._health:
                self._health.register_partition(key)
            logger.debug(f"[{self._name}] Registered partition {key!r}")
        return q

    def route(self, key: K, msg: StreamMessage) -> bool:
        """
        Queue a message for its partition without blocking.

        Returns True if the message was queued.
        """
        if self._halted or self._closed:
            self._stats.discarded += 1
            return False

        q = self._queues.get(key)
        if q is None:
            self._stats.unrouted += 1
            if self._health:
                self._health.record_unrouted()
            err = RoutingError(
                f"No partition registered for key {key!r}",
                key=key,
                kind=msg.kind,
                component=self._name,
            )
            logger.warning(f"[{self._name}] Dropping message: {err}")
            if self._on_unrouted:
                try:
                    self._on_unrouted(err)
                except Exception as e:
                    logger.warning(f"[{self._name}] Unrouted hook error: {e}")
            return False

        victim = q.put_nowait(msg)
        self._stats.routed += 1
        self._stats.by_key[key] = self._stats.by_key.get(key, 0) + 1
        if victim is not None:
            self._stats.evicted += 1
            if self._health:
                self._health.record_eviction(key)
            logger.debug(f"[{self._name}] Partition {key!r} full, evicted oldest message")
        return True

    def start_workers(self, callback: Callable[[K, T], Awaitable[None]]) -> None:
        """Start one consumer worker per registered key."""
        if self._workers:
            raise StreamError("Workers already started", component=self._name)
        for key, q in self._queues.items():
            self._workers[key] = asyncio.create_task(
                self._worker(key, q, callback), name=f"{self._name}_{key}"
            )
        logger.debug(f"[{self._name}] Started {len(self._workers)} workers")

    async def _worker(
        self,
        key: K,
        q: PartitionQueue,
        callback: Callable[[K, T], Awaitable[None]],
    ) -> None:
        while True:
            msg = await q.get()
            if msg is None or self._halted:
                break

            try:
                record = self._feed.decode(msg)
            except MessageParseError as e:
                self._stats.decode_errors += 1
                if self._health:
                    self._health.record_decode_error(key, str(e))
                logger.warning(f"[{self._name}] Decode error for {key!r}: {e}")
                continue
            except Exception as e:
                self._stats.decode_errors += 1
                if self._health:
                    self._health.record_decode_error(key, str(e))
                logger.error(f"[{self._name}] Unexpected decode error for {key!r}: {e}", exc_info=True)
                continue

            # A halt while decoding still wins
            if self._halted:
                break

            try:
                await callback(key, record)
                self._stats.delivered += 1
                if self._health:
                    self._health.record_delivery(key)
            except Exception as e:
                self._stats.callback_errors += 1
                if self._health:
                    self._health.record_callback_error(key, str(e))
                logger.error(f"[{self._name}] Callback error for {key!r}: {e}", exc_info=True)

    def halt(self) -> None:
        """
        Stop delivering immediately: no callback starts after this returns and
        pending messages are discarded. Workers exit on their own.
        """
        if self._halted:
            return
        self._halted = True
        for q in self._queues.values():
            self._stats.discarded += q.close(discard=True)

    async def drain_and_close(self) -> None:
        """
        Close every partition queue and wait for all workers to exit.

        Unless halted, workers first consume the messages already queued.
        """
        self._closed = True
        for q in self._queues.values():
            if not q.closed:
                q.close()

        workers = list(self._workers.values())
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        logger.debug(f"[{self._name}] All workers exited")

    def pending(self) -> dict[K, int]:
        return {key: len(q) for key, q in self._queues.items()}
