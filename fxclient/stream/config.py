"""
Configuration types for the streaming module.

Provides immutable, validated configuration for stream sessions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fxclient.stream.errors import ConfigurationError


class Environment(str, Enum):
    """Supported broker environments."""

    FXPRACTICE = "fxpractice"
    FXTRADE = "fxtrade"
    SANDBOX = "sandbox"


# REST hosts; streaming hosts are derived by replacing the "api" prefix with "stream"
API_HOSTS: dict[Environment, str] = {
    Environment.FXPRACTICE: "api-fxpractice.oanda.com",
    Environment.FXTRADE: "api-fxtrade.oanda.com",
    Environment.SANDBOX: "api-sandbox.oanda.com",
}

DEFAULT_QUEUE_CAPACITY = 5
DEFAULT_STALL_TIMEOUT_S = 10.0
DEFAULT_MAX_RECONNECT_DELAY_S = 5 * 60.0
DEFAULT_MAX_FRAME_BYTES = 1024 * 1024


@dataclass(frozen=True)
class StreamConfig:
    """Tuning for a single stream session."""

    # Dispatch
    queue_capacity: int = DEFAULT_QUEUE_CAPACITY  # Per partition, drop-oldest when full
    heartbeat_capacity: int = 1

    # Connection behavior
    stall_timeout_s: float = DEFAULT_STALL_TIMEOUT_S
    connect_timeout_s: float = 30.0
    base_reconnect_delay_s: float = 1.0
    max_reconnect_delay_s: float = DEFAULT_MAX_RECONNECT_DELAY_S
    reconnect_jitter: float = 0.0  # ±fraction of the delay
    max_reconnect_attempts: Optional[int] = None  # None retries forever
    read_chunk_size: int = 64 * 1024
    max_frame_bytes: Optional[int] = DEFAULT_MAX_FRAME_BYTES  # None disables the limit

    # Health
    staleness_threshold_s: float = 60.0  # Partition is stale if nothing delivered for this long

    def __post_init__(self) -> None:
        if self.queue_capacity <= 0:
            raise ConfigurationError(
                "queue_capacity must be positive",
                field="queue_capacity",
                value=self.queue_capacity,
            )
        if self.heartbeat_capacity <= 0:
            raise ConfigurationError(
                "heartbeat_capacity must be positive",
                field="heartbeat_capacity",
                value=self.heartbeat_capacity,
            )
        if self.stall_timeout_s <= 0:
            raise ConfigurationError(
                "stall_timeout_s must be positive",
                field="stall_timeout_s",
                value=self.stall_timeout_s,
            )
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.base_reconnect_delay_s <= 0:
            raise ConfigurationError(
                "base_reconnect_delay_s must be positive",
                field="base_reconnect_delay_s",
                value=self.base_reconnect_delay_s,
            )
        if self.max_reconnect_delay_s < self.base_reconnect_delay_s:
            raise ConfigurationError(
                "max_reconnect_delay_s must not be below base_reconnect_delay_s",
                field="max_reconnect_delay_s",
                value=self.max_reconnect_delay_s,
            )
        if not (0 <= self.reconnect_jitter <= 1):
            raise ConfigurationError(
                "reconnect_jitter must be between 0 and 1",
                field="reconnect_jitter",
                value=self.reconnect_jitter,
            )
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                "max_reconnect_attempts must be non-negative",
                field="max_reconnect_attempts",
                value=self.max_reconnect_attempts,
            )
        if self.read_chunk_size <= 0:
            raise ConfigurationError(
                "read_chunk_size must be positive",
                field="read_chunk_size",
                value=self.read_chunk_size,
            )
        if self.max_frame_bytes is not None and self.max_frame_bytes <= 0:
            raise ConfigurationError(
                "max_frame_bytes must be positive",
                field="max_frame_bytes",
                value=self.max_frame_bytes,
            )
        if self.staleness_threshold_s <= 0:
            raise ConfigurationError(
                "staleness_threshold_s must be positive",
                field="staleness_threshold_s",
                value=self.staleness_threshold_s,
            )
