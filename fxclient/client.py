"""
StreamClient: builds price and event stream sessions from a ClientConfig.

Usage:
    client = StreamClient(ConfigLoader().load_client_config("client.toml"))
    prices = client.new_price_stream("EUR_USD", "USD_JPY")
    await prices.connect_and_handle(on_tick)
    await client.close()
"""

from __future__ import annotations

import logging
from typing import Optional

import aiohttp

from fxclient.config.configs import ClientConfig
from fxclient.stream.config import StreamConfig
from fxclient.stream.request import (
    auth_headers,
    base_url,
    event_stream_request,
    price_stream_request,
)
from fxclient.stream.session import EventStream, PriceStream

logger = logging.getLogger(__name__)


class StreamClient:
    """
    Entry point for streaming sessions.

    All sessions share one aiohttp session. A session passed in by the caller is
    borrowed and never closed here.
    """

    def __init__(self, config: ClientConfig, http: Optional[aiohttp.ClientSession] = None) -> None:
        self._config = config
        self._stream_config: StreamConfig = config.stream.to_stream_config()
        self._http = http
        self._owns_http = http is None
        self._url = config.base_url or base_url(config.environment)
        self._headers = auth_headers(config.token, config.datetime_format)

    @property
    def url(self) -> str:
        return self._url

    @property
    def stream_config(self) -> StreamConfig:
        return self._stream_config

    def _session(self) -> aiohttp.ClientSession:
        # Created lazily, aiohttp sessions must be built inside a running loop
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(force_close=True),
            )
            self._owns_http = True
        return self._http

    def new_price_stream(self, *instruments: str) -> PriceStream:
        """Price stream for the given instruments, keyed by instrument."""
        request = price_stream_request(
            self._url,
            instruments,
            account_id=self._config.account_id,
            headers=self._headers,
        )
        logger.debug(f"[client] New price stream: {request!r}")
        return PriceStream(request, instruments, self._stream_config, http=self._session())

    def new_event_stream(self, *account_ids: int) -> EventStream:
        """
        Event stream for the given accounts, keyed by account id.

        Defaults to the configured account_id when none is given.
        """
        ids = list(account_ids)
        if not ids and self._config.account_id is not None:
            ids = [self._config.account_id]
        request = event_stream_request(self._url, ids, headers=self._headers)
        logger.debug(f"[client] New event stream: {request!r}")
        return EventStream(request, ids, self._stream_config, http=self._session())

    async def close(self) -> None:
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
