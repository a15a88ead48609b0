"""
Health tracking for stream sessions.

Tracks per-partition delivery state and aggregates it with the connection
health into a SessionHealth snapshot:
- Deliveries, evictions and errors per partition
- Partition staleness (nothing delivered for N seconds)
- Last heartbeat received
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fxclient.stream.types import ConnectionHealth, PartitionHealth, SessionHealth

logger = logging.getLogger(__name__)


def _wall_time(monotonic_ts: Optional[float]) -> Optional[datetime]:
    if monotonic_ts is None:
        return None
    return datetime.fromtimestamp(time.time() - (time.monotonic() - monotonic_ts), tz=timezone.utc)


@dataclass
class PartitionTracker:
    """Internal tracking state for a single partition."""

    key: Any
    last_delivery_at: Optional[float] = None  # monotonic time
    delivered: int = 0
    evicted: int = 0
    decode_errors: int = 0
    callback_errors: int = 0
    last_error: Optional[str] = None

    def record_delivery(self) -> None:
        self.last_delivery_at = time.monotonic()
        self.delivered += 1

    def is_stale(self, threshold_s: float) -> bool:
        """Check if partition is stale."""
        if self.last_delivery_at is None:
            return False  # Haven't delivered anything yet
        return (time.monotonic() - self.last_delivery_at) > threshold_s


class HealthMonitor:
    """
    Collects health for one stream session.

    The monitor is passive: components report into it and get_health() builds
    a snapshot on demand.
    """

    def __init__(self, staleness_threshold_s: float = 60.0, name: str = "health") -> None:
        self._staleness_threshold_s = staleness_threshold_s
        self._name = name
        self._partitions: dict[Any, PartitionTracker] = {}
        self._connection_provider: Optional[Callable[[], ConnectionHealth]] = None
        self._pending_provider: Optional[Callable[[], dict[Any, int]]] = None
        self._last_heartbeat_at: Optional[datetime] = None
        self._unrouted = 0
        self._dropped_kinds = 0

    @property
    def last_heartbeat_at(self) -> Optional[datetime]:
        return self._last_heartbeat_at

    def register_partition(self, key: Any) -> None:
        if key not in self._partitions:
            self._partitions[key] = PartitionTracker(key=key)
            logger.debug(f"[{self._name}] Registered partition for monitoring: {key!r}")

    def register_connection_provider(self, provider: Callable[[], ConnectionHealth]) -> None:
        self._connection_provider = provider

    def register_pending_provider(self, provider: Callable[[], dict[Any, int]]) -> None:
        self._pending_provider = provider

    def _tracker(self, key: Any) -> PartitionTracker:
        tracker = self._partitions.get(key)
        if tracker is None:
            tracker = self._partitions[key] = PartitionTracker(key=key)
        return tracker

    def record_delivery(self, key: Any) -> None:
        self._tracker(key).record_delivery()

    def record_eviction(self, key: Any) -> None:
        self._tracker(key).evicted += 1

    def record_decode_error(self, key: Any, error: str) -> None:
        tracker = self._tracker(key)
        tracker.decode_errors += 1
        tracker.last_error = error

    def record_callback_error(self, key: Any, error: str) -> None:
        tracker = self._tracker(key)
        tracker.callback_errors += 1
        tracker.last_error = error

    def record_unrouted(self) -> None:
        self._unrouted += 1

    def record_dropped_kind(self) -> None:
        self._dropped_kinds += 1

    def record_heartbeat(self, ts: datetime) -> None:
        self._last_heartbeat_at = ts

    def get_health(self) -> SessionHealth:
        """Get current session health snapshot."""
        if self._connection_provider is None:
            raise RuntimeError("No connection health provider registered")
        pending = self._pending_provider() if self._pending_provider else {}

        partitions = [
            PartitionHealth(
                key=tracker.key,
                delivered=tracker.delivered,
                evicted=tracker.evicted,
                decode_errors=tracker.decode_errors,
                callback_errors=tracker.callback_errors,
                pending=pending.get(tracker.key, 0),
                last_delivery_at=_wall_time(tracker.last_delivery_at),
                is_stale=tracker.is_stale(self._staleness_threshold_s),
            )
            for tracker in self._partitions.values()
        ]
        return SessionHealth(
            name=self._name,
            connection=self._connection_provider(),
            partitions=partitions,
            unrouted=self._unrouted,
            dropped_kinds=self._dropped_kinds,
            last_heartbeat_at=self._last_heartbeat_at,
        )

    def get_partition(self, key: Any) -> Optional[PartitionTracker]:
        return self._partitions.get(key)
