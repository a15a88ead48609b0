from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from fxclient.stream.config import (
    DEFAULT_MAX_FRAME_BYTES,
    DEFAULT_MAX_RECONNECT_DELAY_S,
    DEFAULT_QUEUE_CAPACITY,
    DEFAULT_STALL_TIMEOUT_S,
    Environment,
    StreamConfig,
)
from fxclient.stream.request import DEFAULT_DATETIME_FORMAT

"""
Client side configuration, loaded from TOML by ConfigLoader.
"""


class StreamSettings(BaseModel):
    queue_capacity: int = DEFAULT_QUEUE_CAPACITY
    heartbeat_capacity: int = 1
    stall_timeout_s: float = DEFAULT_STALL_TIMEOUT_S
    connect_timeout_s: float = 30.0
    base_reconnect_delay_s: float = 1.0
    max_reconnect_delay_s: float = DEFAULT_MAX_RECONNECT_DELAY_S
    reconnect_jitter: float = 0.0
    max_reconnect_attempts: Optional[int] = None
    read_chunk_size: int = 64 * 1024
    max_frame_bytes: Optional[int] = DEFAULT_MAX_FRAME_BYTES
    staleness_threshold_s: float = 60.0

    def to_stream_config(self) -> StreamConfig:
        """Validated runtime config; raises ConfigurationError on bad values."""
        return StreamConfig(**self.model_dump())


class ClientConfig(BaseModel):
    environment: Environment = Environment.FXPRACTICE
    token: str = ""
    account_id: Optional[int] = None
    datetime_format: str = DEFAULT_DATETIME_FORMAT
    base_url: Optional[str] = None  # Overrides the environment's stream host
    stream: StreamSettings = StreamSettings()

    def __repr__(self) -> str:
        token = "***" if self.token else ""
        return (
            f"ClientConfig(environment={self.environment.value!r}, token={token!r}, "
            f"account_id={self.account_id!r}, base_url={self.base_url!r})"
        )
