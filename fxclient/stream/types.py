"""
Shared types, enums, and data structures for the streaming module.

This module contains types that are used across multiple components
of the streaming core.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

# Reserved frame kinds; every other kind is a data frame
HEARTBEAT = "heartbeat"
DISCONNECT = "disconnect"


class ConnectionState(str, Enum):
    """State machine for the connection supervisor."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class StreamMessage:
    """One classified frame from the streaming body."""

    kind: str  # e.g. "tick", "transaction", "heartbeat"
    payload: bytes  # Undecoded JSON value of the kind key

    @property
    def is_heartbeat(self) -> bool:
        return self.kind == HEARTBEAT

    @property
    def is_disconnect(self) -> bool:
        return self.kind == DISCONNECT

    def __str__(self) -> str:
        return f"StreamMessage{{{self.kind}, {self.payload.decode('utf-8', 'replace')}}}"


@dataclass
class ConnectionMetrics:
    """Counters for the connection supervisor."""

    connects: int = 0
    connect_failures: int = 0
    reconnections: int = 0
    disconnects: int = 0  # Planned disconnect notices from the server
    stalls: int = 0
    errors: int = 0
    frames_received: int = 0
    bytes_received: int = 0

    # Timing
    connected_at: Optional[float] = None  # monotonic time
    last_frame_at: Optional[float] = None  # monotonic time


@dataclass
class ConnectionHealth:
    """Health snapshot for the streaming connection."""

    state: ConnectionState
    url: str
    connected_since: Optional[datetime] = None
    last_frame_at: Optional[datetime] = None
    reconnect_count: int = 0
    stall_count: int = 0
    frame_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def is_healthy(self) -> bool:
        """Check if connection is in a healthy state."""
        return self.state == ConnectionState.STREAMING

    @property
    def seconds_since_frame(self) -> Optional[float]:
        """Seconds since last frame, or None if no frames yet."""
        if self.last_frame_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.last_frame_at).total_seconds()


@dataclass
class PartitionHealth:
    """Health status for a single partition (account id or instrument)."""

    key: Any
    delivered: int = 0
    evicted: int = 0
    decode_errors: int = 0
    callback_errors: int = 0
    pending: int = 0
    last_delivery_at: Optional[datetime] = None
    is_stale: bool = False

    @property
    def is_healthy(self) -> bool:
        return not self.is_stale


@dataclass
class SessionHealth:
    """Aggregate health status for a stream session."""

    name: str
    connection: ConnectionHealth
    partitions: list[PartitionHealth] = field(default_factory=list)
    unrouted: int = 0
    dropped_kinds: int = 0
    last_heartbeat_at: Optional[datetime] = None

    @property
    def is_healthy(self) -> bool:
        if not self.connection.is_healthy:
            return False
        return all(p.is_healthy for p in self.partitions)

    @property
    def stale_partitions(self) -> list[Any]:
        return [p.key for p in self.partitions if p.is_stale]
