"""Streaming client for the fxTrade REST API (prices and account events)."""

from fxclient.client import StreamClient

__all__ = ["StreamClient"]
