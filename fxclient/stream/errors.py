"""
Custom exceptions for the streaming module.

Exception hierarchy:
- StreamError (base)
  - ApiError: Error object returned by the server (fatal, never retried)
  - TransportError: Connection-level failure (retried with backoff)
    - FrameSyntaxError: Body is not a valid sequence of JSON objects
    - StallTimeoutError: No data within the stall timeout
  - StreamConnectionError: Reconnect attempts exhausted
  - MessageParseError: A single frame or payload could not be decoded
  - RoutingError: Data frame for a partition key nobody registered
  - ConfigurationError: Invalid configuration
"""

from __future__ import annotations

from typing import Any, Optional


class StreamError(Exception):
    """Base exception for all streaming errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class ApiError(StreamError):
    """
    Error details as returned by the server: {"code": ..., "message": ..., "moreInfo": ...}.

    A non-zero code means the request itself was rejected (e.g. an invalid instrument),
    so reconnecting with the same request would reproduce it.
    """

    def __init__(
        self,
        code: int,
        message: str = "",
        more_info: str = "",
        *,
        component: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.more_info = more_info
        super().__init__(
            f"ApiError{{Code: {code}, Message: {message}, MoreInfo: {more_info}}}",
            component=component,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, component: Optional[str] = None) -> ApiError:
        """Build from a decoded error object, tolerating missing fields."""
        try:
            code = int(data.get("code", 0))
        except (TypeError, ValueError) as e:
            raise MessageParseError(
                f"Invalid error code: {data.get('code')!r}",
                expected_type="int",
                component=component,
            ) from e
        return cls(
            code,
            str(data.get("message") or ""),
            str(data.get("moreInfo") or ""),
            component=component,
        )


class TransportError(StreamError):
    """Raised when the connection fails or the body cannot be read."""


class FrameSyntaxError(TransportError):
    """Raised when the body is not a valid sequence of JSON objects."""

    def __init__(
        self,
        message: str,
        *,
        residue: Optional[bytes] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.residue = residue
        details = details or {}
        if residue is not None:
            details["residue_bytes"] = len(residue)
        super().__init__(message, component=component, details=details)


class StallTimeoutError(TransportError):
    """Raised when no data arrives within the stall timeout."""

    def __init__(
        self,
        message: str,
        *,
        timeout_s: float,
        component: Optional[str] = None,
    ) -> None:
        self.timeout_s = timeout_s
        super().__init__(message, component=component, details={"timeout_s": timeout_s})


class StreamConnectionError(StreamError):
    """Raised when reconnect attempts are exhausted."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        reconnect_attempt: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.reconnect_attempt = reconnect_attempt
        details = details or {}
        if url:
            details["url"] = url
        details["reconnect_attempt"] = reconnect_attempt
        super().__init__(message, component=component, details=details)


class MessageParseError(StreamError):
    """Raised when a frame or payload cannot be parsed."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[bytes] = None,
        expected_type: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.raw_data = raw_data
        self.expected_type = expected_type
        details = details or {}
        if expected_type:
            details["expected_type"] = expected_type
        # Don't include raw_data in details to avoid log spam
        super().__init__(message, component=component, details=details)


class RoutingError(StreamError):
    """Describes a data frame whose partition key was not registered."""

    def __init__(
        self,
        message: str,
        *,
        key: Any = None,
        kind: Optional[str] = None,
        component: Optional[str] = None,
    ) -> None:
        self.key = key
        self.kind = kind
        details: dict[str, Any] = {"key": key}
        if kind:
            details["kind"] = kind
        super().__init__(message, component=component, details=details)


class ConfigurationError(StreamError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)
