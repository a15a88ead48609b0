"""
Unit tests for request templates.
"""

from urllib.parse import parse_qs, urlsplit

import pytest

from fxclient.stream.config import Environment
from fxclient.stream.errors import ConfigurationError
from fxclient.stream.request import (
    auth_headers,
    base_url,
    event_stream_request,
    price_stream_request,
    stream_host,
)


class TestHosts:
    """Tests for host derivation."""

    def test_stream_host(self) -> None:
        assert stream_host("api-fxpractice.oanda.com") == "stream-fxpractice.oanda.com"

    @pytest.mark.parametrize(
        "env, expected",
        [
            (Environment.FXPRACTICE, "https://stream-fxpractice.oanda.com"),
            (Environment.FXTRADE, "https://stream-fxtrade.oanda.com"),
            ("sandbox", "http://stream-sandbox.oanda.com"),
        ],
    )
    def test_base_url(self, env: Environment | str, expected: str) -> None:
        assert base_url(env) == expected

    def test_unknown_environment(self) -> None:
        with pytest.raises(ConfigurationError):
            base_url("staging")


class TestRequests:
    """Tests for the stream request builders."""

    def test_auth_headers(self) -> None:
        headers = auth_headers("abc", "UNIX")

        assert headers == {"Authorization": "Bearer abc", "X-Accept-Datetime-Format": "UNIX"}

    def test_auth_headers_without_token(self) -> None:
        assert "Authorization" not in auth_headers()

    def test_price_stream_request(self) -> None:
        request = price_stream_request(
            "https://stream-fxpractice.oanda.com",
            ["eur_usd", "USD_JPY"],
            account_id=12345,
            headers={"Authorization": "Bearer abc"},
        )
        parts = urlsplit(request.url)

        assert request.method == "GET"
        assert parts.path == "/v1/prices"
        assert parse_qs(parts.query) == {"instruments": ["EUR_USD,USD_JPY"], "accountId": ["12345"]}
        assert request.headers["Authorization"] == "Bearer abc"

    def test_price_stream_requires_instruments(self) -> None:
        with pytest.raises(ConfigurationError):
            price_stream_request("https://stream-fxpractice.oanda.com", [])

    def test_event_stream_request(self) -> None:
        request = event_stream_request("http://127.0.0.1:8080/", [1, 2])
        parts = urlsplit(request.url)

        assert parts.path == "/v1/events"
        assert parse_qs(parts.query) == {"accountIds": ["1,2"]}

    def test_repr_hides_headers(self) -> None:
        request = price_stream_request(
            "https://stream-fxpractice.oanda.com", ["EUR_USD"], headers=auth_headers("secret")
        )

        assert "secret" not in repr(request)
