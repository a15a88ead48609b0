"""
Resilient Streaming Module.

This module consumes long-lived chunked JSON streams (prices, account events),
reconnects under failure with backoff and delivers decoded records to one
consumer worker per partition key.

Components:
- StreamSession: Public facade with connect_and_handle() / stop()
- ConnectionSupervisor: Connection lifecycle, stall detection, reconnection
- FrameDecoder: Splits the byte stream into classified frames
- PartitionedDispatcher: Drop-oldest queue and worker per partition key
- HeartbeatRelay: Heartbeats on their own queue and worker
- HealthMonitor: Delivery, eviction and connection health snapshots

Usage:
    from fxclient.stream import PriceStream, price_stream_request

    request = price_stream_request(url, ["EUR_USD"], headers=auth_headers(token))
    stream = PriceStream(request, ["EUR_USD"])
    await stream.connect_and_handle(on_tick)
"""

from fxclient.stream.config import Environment, StreamConfig
from fxclient.stream.errors import (
    ApiError,
    ConfigurationError,
    FrameSyntaxError,
    MessageParseError,
    RoutingError,
    StallTimeoutError,
    StreamConnectionError,
    StreamError,
    TransportError,
)
from fxclient.stream.request import (
    RequestTemplate,
    auth_headers,
    base_url,
    event_stream_request,
    price_stream_request,
)
from fxclient.stream.session import EventStream, PriceStream, StreamSession
from fxclient.stream.types import (
    ConnectionHealth,
    ConnectionState,
    PartitionHealth,
    SessionHealth,
    StreamMessage,
)

__all__ = [
    # Main entry point
    "StreamSession",
    "PriceStream",
    "EventStream",
    "StreamConfig",
    "Environment",
    # Requests
    "RequestTemplate",
    "auth_headers",
    "base_url",
    "price_stream_request",
    "event_stream_request",
    # Types
    "ConnectionState",
    "StreamMessage",
    "ConnectionHealth",
    "PartitionHealth",
    "SessionHealth",
    # Errors
    "StreamError",
    "ApiError",
    "TransportError",
    "FrameSyntaxError",
    "StallTimeoutError",
    "StreamConnectionError",
    "MessageParseError",
    "RoutingError",
    "ConfigurationError",
]
