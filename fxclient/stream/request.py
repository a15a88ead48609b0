"""
Request templates for the streaming endpoints.

The streaming core never authenticates by itself. It only replays a prepared
RequestTemplate (method, URL, headers) on every (re)connect.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping
from urllib.parse import urlencode, urlsplit, urlunsplit

from fxclient.stream.config import API_HOSTS, Environment
from fxclient.stream.errors import ConfigurationError

DEFAULT_DATETIME_FORMAT = "RFC3339"


@dataclass(frozen=True)
class RequestTemplate:
    """Prepared HTTP request replayed by the connection supervisor."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        # Keep bearer tokens out of logs
        return f"RequestTemplate({self.method} {self.url})"


def stream_host(host: str) -> str:
    """Map a REST host to its streaming host: api-fxpractice.x -> stream-fxpractice.x."""
    parts = host.split("-")
    parts[0] = "stream"
    return "-".join(parts)


def base_url(environment: Environment | str) -> str:
    """Base URL of the streaming host for an environment."""
    try:
        env = Environment(environment)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid environment {environment}",
            field="environment",
            value=environment,
        ) from e
    scheme = "http" if env == Environment.SANDBOX else "https"
    return f"{scheme}://{stream_host(API_HOSTS[env])}"


def auth_headers(token: str = "", datetime_format: str = DEFAULT_DATETIME_FORMAT) -> dict[str, str]:
    headers = {"X-Accept-Datetime-Format": datetime_format}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _with_query(url: str, path: str, query: dict[str, str]) -> str:
    scheme, netloc, base_path, _, _ = urlsplit(url)
    return urlunsplit((scheme, netloc, base_path.rstrip("/") + path, urlencode(query), ""))


def price_stream_request(
    url: str,
    instruments: Iterable[str],
    *,
    account_id: int | None = None,
    headers: Mapping[str, str] | None = None,
) -> RequestTemplate:
    """Build the GET /v1/prices streaming request for a set of instruments."""
    instrs = [i.upper() for i in instruments]
    if not instrs:
        raise ConfigurationError("At least one instrument is required", field="instruments")
    query = {"instruments": ",".join(instrs)}
    if account_id is not None:
        query["accountId"] = str(account_id)
    return RequestTemplate("GET", _with_query(url, "/v1/prices", query), dict(headers or {}))


def event_stream_request(
    url: str,
    account_ids: Iterable[int],
    *,
    headers: Mapping[str, str] | None = None,
) -> RequestTemplate:
    """Build the GET /v1/events streaming request for a set of accounts."""
    ids = [str(int(a)) for a in account_ids]
    query = {"accountIds": ",".join(ids)} if ids else {}
    return RequestTemplate("GET", _with_query(url, "/v1/events", query), dict(headers or {}))
