"""
Connection supervisor for streaming HTTP endpoints.

Handles the connection lifecycle including:
- Issuing the prepared streaming request
- Stall detection (no data within stall_timeout_s closes the connection)
- Exponential backoff reconnection after failed connects and interrupted streams
- Planned server disconnects (reconnect) vs. error frames (stop)
- Cancellation: stop() unblocks any pending connect, read or backoff sleep

State Machine:
    [DISCONNECTED] --frames()--> [CONNECTING] --success--> [STREAMING]
    [CONNECTING]   --failure--> backoff --> [CONNECTING]
    [STREAMING]    --disconnect frame--> [CONNECTING]
    [STREAMING]    --stall / read error / EOF--> [DISCONNECTED] --backoff--> [CONNECTING]
    [STREAMING]    --error frame--> [STOPPED] (ApiError raised)
    any            --stop()--> [STOPPED]
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional

import aiohttp
import orjson

from fxclient.stream.backoff import Backoff
from fxclient.stream.config import StreamConfig
from fxclient.stream.decoder import FrameDecoder
from fxclient.stream.errors import (
    ApiError,
    MessageParseError,
    StallTimeoutError,
    StreamConnectionError,
    StreamError,
    TransportError,
)
from fxclient.stream.request import RequestTemplate
from fxclient.stream.types import (
    ConnectionHealth,
    ConnectionMetrics,
    ConnectionState,
    StreamMessage,
)

logger = logging.getLogger(__name__)

# Failures that are retried
_TRANSIENT = (TransportError, aiohttp.ClientError, asyncio.TimeoutError, OSError)


class _Stopped(Exception):
    """Internal: stop() was called while waiting."""


class ConnectionSupervisor:
    """
    Owns the HTTP connection of one stream session.

    The supervisor does NOT route messages. frames() yields every data and
    heartbeat frame across reconnects; routing is the caller's job.

    Usage:
        supervisor = ConnectionSupervisor(request, StreamConfig())
        async for msg in supervisor.frames():
            ...
        # from another task:
        supervisor.stop()
    """

    def __init__(
        self,
        request: RequestTemplate,
        config: Optional[StreamConfig] = None,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        envelope_keys: Iterable[str] = (),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "connection",
    ) -> None:
        """
        Initialize the connection supervisor.

        Args:
            request: Prepared request replayed on every connect
            config: Stream configuration
            http: Optional shared aiohttp session; one is created (and closed) otherwise
            envelope_keys: Top-level frame keys ignored when classifying frames
            sleep: Coroutine used for backoff waits
            name: Name for logging purposes
        """
        self._request = request
        self._config = config or StreamConfig()
        self._http = http
        self._owns_http = http is None
        self._envelope_keys = tuple(envelope_keys)
        self._sleep = sleep
        self._name = name

        # State
        self._state = ConnectionState.DISCONNECTED
        self._running = False
        self._stopped_by_caller = False
        self._response: Optional[aiohttp.ClientResponse] = None

        # Cancellation token raced against every blocking wait
        self._stop_event = asyncio.Event()

        self._backoff = Backoff(
            base_delay_s=self._config.base_reconnect_delay_s,
            max_delay_s=self._config.max_reconnect_delay_s,
            jitter=self._config.reconnect_jitter,
        )

        # Metrics
        self._metrics = ConnectionMetrics()
        self._connected_at: Optional[datetime] = None
        self._last_frame_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[datetime] = None

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def stopped(self) -> bool:
        return self._state == ConnectionState.STOPPED

    @property
    def stopped_by_caller(self) -> bool:
        """True if stop() ended the session (as opposed to an error)."""
        return self._stopped_by_caller

    @property
    def backoff(self) -> Backoff:
        return self._backoff

    @property
    def metrics(self) -> ConnectionMetrics:
        return self._metrics

    @property
    def request(self) -> RequestTemplate:
        return self._request

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if old_state == ConnectionState.STOPPED:
            return  # Terminal
        self._state = new_state
        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")

    def _record_error(self, error: BaseException) -> None:
        self._metrics.errors += 1
        self._last_error = str(error)
        self._last_error_at = datetime.now(timezone.utc)

    def stop(self) -> None:
        """
        Stop the supervisor. Idempotent.

        Flips the state to STOPPED, releases any pending connect, read or backoff
        sleep and closes the live response. No reconnect is attempted afterwards.
        """
        if self._stop_event.is_set():
            return
        logger.info(f"[{self._name}] Stopping")
        self._stopped_by_caller = self._state != ConnectionState.STOPPED
        self._set_state(ConnectionState.STOPPED)
        self._stop_event.set()
        self._close_response()

    def _close_response(self) -> None:
        if self._response is not None:
            self._response.close()
            self._response = None

    async def frames(self) -> AsyncIterator[StreamMessage]:
        """
        Yield data and heartbeat frames until stopped.

        Disconnect frames, stalls and transport failures lead to a reconnect and
        are not visible to the caller.

        Raises:
            ApiError: The server rejected the request (at connect or mid-stream)
            StreamConnectionError: max_reconnect_attempts was exceeded
        """
        if self._running:
            raise StreamError("Supervisor is already running", component=self._name)
        if self.stopped:
            return
        self._running = True

        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                # The number of open connections to the stream server is restricted
                connector=aiohttp.TCPConnector(force_close=True),
            )
            self._owns_http = True

        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        try:
            while not self.stopped:
                response = await self._connect(stop_waiter)
                if response is None:
                    break

                decoder = FrameDecoder(
                    self._envelope_keys,
                    max_frame_bytes=self._config.max_frame_bytes,
                    name=f"{self._name}_decoder",
                )
                failure: Optional[BaseException] = None
                try:
                    async with contextlib.aclosing(self._read(response, decoder, stop_waiter)) as body:
                        async for msg in body:
                            if msg.is_disconnect:
                                self._on_disconnect(msg)
                                break
                            if self.stopped:
                                return
                            yield msg
                except _Stopped:
                    break
                except ApiError as e:
                    self._record_error(e)
                    logger.error(f"[{self._name}] Server error frame, stopping: {e}")
                    self._set_state(ConnectionState.STOPPED)
                    raise
                except _TRANSIENT as e:
                    if self.stopped:
                        break
                    self._record_error(e)
                    failure = e
                finally:
                    if self._response is response:
                        self._close_response()
                    else:
                        response.close()

                if failure is not None:
                    self._set_state(ConnectionState.DISCONNECTED)
                    if not await self._retry_wait(stop_waiter, failure, "Stream interrupted"):
                        break

                if not self.stopped:
                    self._metrics.reconnections += 1
                    logger.info(f"[{self._name}] Reconnecting")
        finally:
            stop_waiter.cancel()
            self._close_response()
            self._set_state(ConnectionState.STOPPED)
            self._running = False
            if self._owns_http and self._http is not None:
                await self._http.close()
                self._http = None

    async def _connect(self, stop_waiter: asyncio.Future[Any]) -> Optional[aiohttp.ClientResponse]:
        """Connect with exponential backoff. Returns None if stopped."""
        while not self.stopped:
            self._set_state(ConnectionState.CONNECTING)
            try:
                response = await self._race(self._open(), stop_waiter)
            except _Stopped:
                return None
            except ApiError as e:
                self._record_error(e)
                logger.error(f"[{self._name}] Request rejected: {e}")
                self._set_state(ConnectionState.STOPPED)
                raise
            except _TRANSIENT as e:
                if self.stopped:
                    return None
                self._record_error(e)
                self._metrics.connect_failures += 1

                if not await self._retry_wait(stop_waiter, e, "Connection failed"):
                    return None
                continue

            if self.stopped:
                response.close()
                return None

            self._response = response
            self._metrics.connects += 1
            self._metrics.connected_at = time.monotonic()
            self._connected_at = datetime.now(timezone.utc)
            self._set_state(ConnectionState.STREAMING)
            logger.info(f"[{self._name}] Connected to {self._request.url}")
            return response
        return None

    async def _retry_wait(
        self,
        stop_waiter: asyncio.Future[Any],
        error: BaseException,
        reason: str,
    ) -> bool:
        """
        Sleep the backoff delay before the next connect. Returns False if stopped.

        Raises:
            StreamConnectionError: max_reconnect_attempts was exceeded
        """
        max_attempts = self._config.max_reconnect_attempts
        if max_attempts is not None and self._backoff.failures >= max_attempts:
            self._set_state(ConnectionState.STOPPED)
            raise StreamConnectionError(
                f"Giving up after {self._backoff.failures + 1} failed attempts",
                url=self._request.url,
                reconnect_attempt=self._backoff.failures + 1,
                component=self._name,
            ) from error

        delay = self._backoff.next_delay()
        logger.warning(
            f"[{self._name}] {reason} (attempt {self._backoff.failures}), "
            f"retrying in {delay:.2f}s: {error}"
        )
        try:
            await self._race(self._sleep(delay), stop_waiter)
        except _Stopped:
            return False
        return True

    async def _open(self) -> aiohttp.ClientResponse:
        """Issue the request. Raises ApiError for a rejected request."""
        assert self._http is not None
        logger.debug(f"[{self._name}] Connecting to {self._request.url}")
        response = await self._http.request(
            self._request.method,
            self._request.url,
            headers=dict(self._request.headers),
            timeout=aiohttp.ClientTimeout(
                total=None,
                connect=self._config.connect_timeout_s,
                sock_read=None,
            ),
        )
        if 200 <= response.status < 300:
            return response

        try:
            body = await asyncio.wait_for(response.read(), self._config.stall_timeout_s)
        finally:
            response.release()

        status = response.status
        try:
            data = orjson.loads(body)
        except orjson.JSONDecodeError:
            data = None

        if isinstance(data, dict) and "code" in data:
            try:
                err = ApiError.from_dict(data, component=self._name)
            except MessageParseError as e:
                raise TransportError(
                    f"HTTP {status} with malformed error body", component=self._name
                ) from e
            if err.code != 0:
                raise err

        raise TransportError(
            f"HTTP {status} from {self._request.url}",
            component=self._name,
            details={"status": status},
        )

    async def _read(
        self,
        response: aiohttp.ClientResponse,
        decoder: FrameDecoder,
        stop_waiter: asyncio.Future[Any],
    ) -> AsyncIterator[StreamMessage]:
        """Read and decode the body. Each read is bounded by the stall timeout."""
        stall_timeout = self._config.stall_timeout_s
        fresh = True
        while True:
            try:
                chunk = await self._race(
                    response.content.read(self._config.read_chunk_size),
                    stop_waiter,
                    timeout=stall_timeout,
                )
            except asyncio.TimeoutError:
                if self.stopped:
                    raise _Stopped() from None
                self._metrics.stalls += 1
                raise StallTimeoutError(
                    f"No data for {stall_timeout}s, closing connection",
                    timeout_s=stall_timeout,
                    component=self._name,
                ) from None

            if not chunk:
                decoder.finish()
                raise TransportError("Server closed the stream", component=self._name)

            self._metrics.bytes_received += len(chunk)
            for msg in decoder.feed(chunk):
                self._metrics.frames_received += 1
                self._metrics.last_frame_at = time.monotonic()
                self._last_frame_at = datetime.now(timezone.utc)
                if fresh:
                    # First frame on this connection: it is healthy again
                    self._backoff.reset()
                    fresh = False
                yield msg

    async def _race(
        self,
        aw: Awaitable[Any],
        stop_waiter: asyncio.Future[Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Await aw unless stop() or the timeout comes first.

        Raises:
            _Stopped: stop() was called
            asyncio.TimeoutError: The timeout elapsed
        """
        task = asyncio.ensure_future(aw)
        try:
            done, _ = await asyncio.wait(
                {task, stop_waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if stop_waiter in done:
            raise _Stopped()
        raise asyncio.TimeoutError()

    def _on_disconnect(self, msg: StreamMessage) -> None:
        """Planned disconnect notice: log it and let the caller reconnect."""
        self._metrics.disconnects += 1
        try:
            notice: Any = ApiError.from_dict(orjson.loads(msg.payload), component=self._name)
        except (orjson.JSONDecodeError, AttributeError, MessageParseError):
            notice = msg.payload.decode("utf-8", "replace")
        logger.info(f"[{self._name}] Server disconnect: {notice}")
        self._backoff.reset()

    def get_health(self) -> ConnectionHealth:
        """Get current connection health snapshot."""
        return ConnectionHealth(
            state=self._state,
            url=self._request.url,
            connected_since=self._connected_at,
            last_frame_at=self._last_frame_at,
            reconnect_count=self._metrics.reconnections,
            stall_count=self._metrics.stalls,
            frame_count=self._metrics.frames_received,
            error_count=self._metrics.errors,
            last_error=self._last_error,
            last_error_at=self._last_error_at,
        )
