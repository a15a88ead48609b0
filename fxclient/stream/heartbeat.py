"""
Heartbeat relay.

Heartbeats travel on their own small queue and worker so that liveness stays
visible to the caller even when a data partition is backlogged.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

import orjson

from fxclient.stream.dispatcher import PartitionQueue
from fxclient.stream.errors import MessageParseError
from fxclient.stream.health import HealthMonitor
from fxclient.stream.types import StreamMessage
from fxclient.types.types import parse_time

logger = logging.getLogger(__name__)


def decode_heartbeat(msg: StreamMessage) -> datetime:
    """Decode a {"time": ...} heartbeat payload."""
    try:
        data = orjson.loads(msg.payload)
        return parse_time(data["time"])
    except (orjson.JSONDecodeError, KeyError, TypeError, ValueError, OverflowError) as e:
        raise MessageParseError(
            f"Invalid heartbeat payload: {e}",
            raw_data=msg.payload,
            expected_type="heartbeat",
        ) from e


class HeartbeatRelay:
    """Forwards heartbeat timestamps to an optional async callback."""

    def __init__(
        self,
        capacity: int = 1,
        *,
        health: Optional[HealthMonitor] = None,
        name: str = "heartbeat",
    ) -> None:
        self._queue = PartitionQueue(capacity)
        self._health = health
        self._name = name
        self._callback: Optional[Callable[[datetime], Awaitable[None]]] = None
        self._worker: Optional[asyncio.Task[None]] = None
        self._halted = False
        self.received = 0
        self.delivered = 0
        self.errors = 0

    @property
    def queue(self) -> PartitionQueue:
        return self._queue

    def start(self, callback: Optional[Callable[[datetime], Awaitable[None]]]) -> None:
        """Start the relay worker. Without a callback heartbeats are only counted."""
        self._callback = callback
        if callback is not None and self._worker is None:
            self._worker = asyncio.create_task(self._run(), name=f"{self._name}_worker")

    def push(self, msg: StreamMessage) -> None:
        """Called by the read loop; never blocks."""
        self.received += 1
        if self._halted or self._queue.closed:
            return
        if self._worker is None:
            # Nobody listening; keep liveness in the health snapshot only
            if self._health:
                try:
                    self._health.record_heartbeat(decode_heartbeat(msg))
                except MessageParseError as e:
                    logger.debug(f"[{self._name}] {e}")
            return
        self._queue.put_nowait(msg)

    async def _run(self) -> None:
        while True:
            msg = await self._queue.get()
            if msg is None or self._halted:
                break
            try:
                ts = decode_heartbeat(msg)
            except MessageParseError as e:
                self.errors += 1
                logger.warning(f"[{self._name}] {e}")
                continue

            if self._health:
                self._health.record_heartbeat(ts)
            if self._halted or self._callback is None:
                break
            try:
                await self._callback(ts)
                self.delivered += 1
            except Exception as e:
                self.errors += 1
                logger.error(f"[{self._name}] Heartbeat callback error: {e}", exc_info=True)

    def halt(self) -> None:
        """Stop relaying immediately and drop pending heartbeats."""
        self._halted = True
        self._queue.close(discard=True)

    async def close(self) -> None:
        if not self._queue.closed:
            self._queue.close()
        if self._worker is not None:
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None
