"""
Unit tests for StreamConfig validation.
"""

import pytest

from fxclient.stream.config import StreamConfig
from fxclient.stream.errors import ConfigurationError


class TestStreamConfig:
    """Tests for StreamConfig."""

    def test_defaults(self) -> None:
        cfg = StreamConfig()

        assert cfg.queue_capacity == 5
        assert cfg.heartbeat_capacity == 1
        assert cfg.stall_timeout_s == 10.0
        assert cfg.base_reconnect_delay_s == 1.0
        assert cfg.max_reconnect_delay_s == 300.0
        assert cfg.reconnect_jitter == 0.0
        assert cfg.max_reconnect_attempts is None
        assert cfg.max_frame_bytes == 1024 * 1024

    @pytest.mark.parametrize(
        "kwargs, field",
        [
            ({"queue_capacity": 0}, "queue_capacity"),
            ({"heartbeat_capacity": 0}, "heartbeat_capacity"),
            ({"stall_timeout_s": 0}, "stall_timeout_s"),
            ({"connect_timeout_s": -1}, "connect_timeout_s"),
            ({"base_reconnect_delay_s": 0}, "base_reconnect_delay_s"),
            ({"base_reconnect_delay_s": 10, "max_reconnect_delay_s": 5}, "max_reconnect_delay_s"),
            ({"reconnect_jitter": 1.5}, "reconnect_jitter"),
            ({"max_reconnect_attempts": -1}, "max_reconnect_attempts"),
            ({"read_chunk_size": 0}, "read_chunk_size"),
            ({"staleness_threshold_s": 0}, "staleness_threshold_s"),
            ({"max_frame_bytes": 0}, "max_frame_bytes"),
        ],
    )
    def test_invalid_values(self, kwargs: dict, field: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            StreamConfig(**kwargs)

        assert exc_info.value.field == field

    def test_frozen(self) -> None:
        cfg = StreamConfig()

        with pytest.raises(AttributeError):
            cfg.queue_capacity = 10  # type: ignore[misc]
