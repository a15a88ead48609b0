"""
Stream session: the public facade of the streaming core.

A session composes one ConnectionSupervisor, one PartitionedDispatcher and one
HeartbeatRelay around a feed. PriceStream and EventStream differ only in their
feed.

Lifecycle:
    session = PriceStream(request, ["EUR_USD", "USD_JPY"])
    await session.connect_and_handle(on_tick, on_heartbeat)  # blocks
    session.stop()  # from a callback, another task or another thread
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import threading
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, Hashable, Iterable, Optional, TypeVar

import aiohttp

from fxclient.stream.config import StreamConfig
from fxclient.stream.connection import ConnectionSupervisor
from fxclient.stream.dispatcher import PartitionedDispatcher
from fxclient.stream.errors import ConfigurationError, MessageParseError, RoutingError, StreamError
from fxclient.stream.feeds import BaseFeed, EventFeed, PriceFeed
from fxclient.stream.health import HealthMonitor
from fxclient.stream.heartbeat import HeartbeatRelay
from fxclient.stream.request import RequestTemplate
from fxclient.stream.types import ConnectionState, SessionHealth, StreamMessage
from fxclient.types.aliases import AccountId, Instrument
from fxclient.types.types import Event, PriceTick

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")

# Upper bound for a cross-thread stop() to be applied on the session loop
STOP_TIMEOUT_S = 5.0


class StreamSession(Generic[K, T]):
    """
    Streams one request and delivers decoded records per partition key.

    connect_and_handle() returns None after stop() and raises ApiError when
    the server rejects the request. Transient failures are retried silently.
    """

    def __init__(
        self,
        request: RequestTemplate,
        partition_keys: Iterable[Any],
        feed: BaseFeed[K, T],
        config: Optional[StreamConfig] = None,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        on_unrouted: Optional[Callable[[RoutingError], None]] = None,
        name: Optional[str] = None,
    ) -> None:
        """
        Initialize the session.

        Args:
            request: Prepared streaming request
            partition_keys: Keys to deliver (instruments or account ids)
            feed: Feed describing partitioning and payload decoding
            config: Stream configuration
            http: Optional shared aiohttp session
            on_unrouted: Optional hook for frames with an unregistered key
            name: Name for logging purposes (defaults to the feed name)

        Raises:
            ConfigurationError: If no partition key is given
        """
        self._feed = feed
        self._config = config or StreamConfig()
        self._name = name or feed.name

        raw_keys = list(partition_keys)
        keys: list[K] = list(dict.fromkeys(feed.normalize_key(k) for k in raw_keys))
        if not keys:
            raise ConfigurationError(
                "At least one partition key is required",
                field="partition_keys",
                value=raw_keys,
            )

        self._health = HealthMonitor(
            staleness_threshold_s=self._config.staleness_threshold_s,
            name=self._name,
        )
        self._supervisor = ConnectionSupervisor(
            request,
            self._config,
            http=http,
            name=self._name,
        )
        self._dispatcher: PartitionedDispatcher[K, T] = PartitionedDispatcher(
            feed,
            self._config.queue_capacity,
            health=self._health,
            on_unrouted=on_unrouted,
            name=f"{self._name}_dispatcher",
        )
        for key in keys:
            self._dispatcher.register(key)
        self._relay = HeartbeatRelay(
            self._config.heartbeat_capacity,
            health=self._health,
            name=f"{self._name}_heartbeat",
        )

        self._health.register_connection_provider(self._supervisor.get_health)
        self._health.register_pending_provider(self._dispatcher.pending)

        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def keys(self) -> list[K]:
        return self._dispatcher.keys

    @property
    def state(self) -> ConnectionState:
        return self._supervisor.state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def supervisor(self) -> ConnectionSupervisor:
        return self._supervisor

    @property
    def dispatcher(self) -> PartitionedDispatcher[K, T]:
        return self._dispatcher

    @property
    def relay(self) -> HeartbeatRelay:
        return self._relay

    async def connect_and_handle(
        self,
        on_message: Callable[[K, T], Awaitable[None]],
        on_heartbeat: Optional[Callable[[datetime], Awaitable[None]]] = None,
    ) -> None:
        """
        Stream until stop() is called or the server rejects the request.

        Args:
            on_message: Async callback invoked with (key, record), sequentially per key
            on_heartbeat: Optional async callback invoked with each heartbeat time

        Raises:
            ApiError: The server rejected the request
            StreamConnectionError: max_reconnect_attempts was exceeded
            StreamError: The session is already running
        """
        if self._running:
            raise StreamError("Session is already running", component=self._name)
        if self._supervisor.stopped:
            logger.info(f"[{self._name}] Session was stopped before start")
            return

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        logger.info(f"[{self._name}] Starting session for {len(self.keys)} partitions")

        self._dispatcher.start_workers(on_message)
        self._relay.start(on_heartbeat)
        try:
            async with contextlib.aclosing(self._supervisor.frames()) as frames:
                async for msg in frames:
                    self._handle_frame(msg)
        finally:
            # Nothing is routed past this point
            self._supervisor.stop()
            await self._dispatcher.drain_and_close()
            await self._relay.close()
            self._running = False
            logger.info(f"[{self._name}] Session ended")

    def _handle_frame(self, msg: StreamMessage) -> None:
        if msg.is_heartbeat:
            self._relay.push(msg)
            return

        if not self._feed.accepts(msg):
            self._health.record_dropped_kind()
            logger.debug(f"[{self._name}] Ignoring frame kind {msg.kind!r}")
            return

        try:
            key = self._feed.partition_key(msg)
        except MessageParseError as e:
            logger.warning(f"[{self._name}] Cannot route {msg.kind} frame: {e}")
            return
        self._dispatcher.route(key, msg)

    def stop(self) -> None:
        """
        Stop the session. Idempotent and safe to call from any thread.

        No callback starts after this returns; connect_and_handle() returns once
        every worker has exited. From another thread it waits up to STOP_TIMEOUT_S
        for the session loop; a busy loop applies the stop as soon as it is free.
        """
        loop = self._loop
        if (
            loop is not None
            and self._loop_thread != threading.get_ident()
            and loop.is_running()
        ):
            future = asyncio.run_coroutine_threadsafe(self._stop_async(), loop)
            try:
                future.result(timeout=STOP_TIMEOUT_S)
            except concurrent.futures.TimeoutError:
                # Still queued on the loop; applied once the loop is free
                logger.warning(
                    f"[{self._name}] Loop busy, stop not applied within {STOP_TIMEOUT_S}s"
                )
            return
        self._stop_now()

    async def _stop_async(self) -> None:
        self._stop_now()

    def _stop_now(self) -> None:
        self._supervisor.stop()
        self._dispatcher.halt()
        self._relay.halt()

    def get_health(self) -> SessionHealth:
        """Get current session health snapshot."""
        return self._health.get_health()


class PriceStream(StreamSession[Instrument, PriceTick]):
    """Price stream: delivers PriceTick records keyed by instrument."""

    def __init__(
        self,
        request: RequestTemplate,
        instruments: Iterable[str],
        config: Optional[StreamConfig] = None,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        on_unrouted: Optional[Callable[[RoutingError], None]] = None,
        name: str = "prices",
    ) -> None:
        super().__init__(
            request,
            instruments,
            PriceFeed(name=name),
            config,
            http=http,
            on_unrouted=on_unrouted,
            name=name,
        )


class EventStream(StreamSession[AccountId, Event]):
    """Event stream: delivers Event records keyed by account id."""

    def __init__(
        self,
        request: RequestTemplate,
        account_ids: Iterable[int],
        config: Optional[StreamConfig] = None,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        on_unrouted: Optional[Callable[[RoutingError], None]] = None,
        name: str = "events",
    ) -> None:
        super().__init__(
            request,
            account_ids,
            EventFeed(name=name),
            config,
            http=http,
            on_unrouted=on_unrouted,
            name=name,
        )
