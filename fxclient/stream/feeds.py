"""
Feed definitions for stream sessions.

A feed tells the shared streaming core two things about a concrete stream:
- which partition a data frame belongs to (instrument or account id)
- how the frame payload decodes into a record

- PriceFeed: {"tick": {...}} -> PriceTick, keyed by instrument
- EventFeed: {"transaction": {...}} -> Event, keyed by account id
"""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, Hashable, TypeVar

import orjson

from fxclient.stream.errors import MessageParseError
from fxclient.stream.types import StreamMessage
from fxclient.types.aliases import AccountId, Instrument
from fxclient.types.types import (
    EVENT_CLASSES,
    EVENT_FIELDS,
    Event,
    PriceTick,
    TradeDetail,
    UnknownEvent,
    parse_time,
)

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


class BaseFeed(ABC, Generic[K, T]):
    """
    Abstract base class for feeds.

    partition_key() runs on the read loop and must stay cheap; decode() runs on
    the partition worker so a bad payload only affects its own message.
    """

    # Frame kinds carrying data for this feed
    data_kinds: frozenset[str] = frozenset()

    def __init__(self, name: str = "feed") -> None:
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def normalize_key(self, key: Any) -> K:
        """Normalize a caller supplied partition key."""
        return key

    def accepts(self, msg: StreamMessage) -> bool:
        return msg.kind in self.data_kinds

    @abstractmethod
    def partition_key(self, msg: StreamMessage) -> K:
        """Extract the partition key from a data frame."""
        ...

    @abstractmethod
    def decode(self, msg: StreamMessage) -> T:
        """Decode the frame payload into a record."""
        ...

    def _load(self, msg: StreamMessage) -> dict[str, Any]:
        try:
            data = orjson.loads(msg.payload)
        except orjson.JSONDecodeError as e:
            raise MessageParseError(
                f"Invalid {msg.kind} payload: {e}",
                raw_data=msg.payload,
                expected_type=msg.kind,
                component=self._name,
            ) from e
        if not isinstance(data, dict):
            raise MessageParseError(
                f"Expected an object for {msg.kind}, got {type(data).__name__}",
                raw_data=msg.payload,
                expected_type=msg.kind,
                component=self._name,
            )
        return data


def _safe_float(value: Any, field_name: str) -> float:
    """Safely convert a value to float."""
    try:
        if isinstance(value, float):
            return value
        return float(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid float value for {field_name}: {value}",
            expected_type="float",
        ) from e


def _safe_int(value: Any, field_name: str) -> int:
    """Safely convert a value to int."""
    try:
        return int(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid integer value for {field_name}: {value}",
            expected_type="int",
        ) from e


def _safe_time(value: Any, field_name: str):
    try:
        return parse_time(value)
    except (ValueError, TypeError, OverflowError) as e:
        raise MessageParseError(
            f"Invalid time value for {field_name}: {value}",
            expected_type="time",
        ) from e


def _require(data: dict[str, Any], key: str, kind: str) -> Any:
    if key not in data:
        raise MessageParseError(f"Missing '{key}' in {kind} payload", expected_type=kind)
    return data[key]


class PriceFeed(BaseFeed[Instrument, PriceTick]):
    """
    Feed for the price stream.

    Tick format:
    {
        "tick": {
            "instrument": "EUR_USD",
            "time": "2014-03-07T20:58:07.461445Z",
            "bid": 1.38701,
            "ask": 1.38712
        }
    }
    """

    data_kinds = frozenset({"tick"})

    def __init__(self, name: str = "prices") -> None:
        super().__init__(name=name)

    def normalize_key(self, key: Any) -> Instrument:
        return str(key).upper()

    def partition_key(self, msg: StreamMessage) -> Instrument:
        data = self._load(msg)
        return str(_require(data, "instrument", msg.kind)).upper()

    def decode(self, msg: StreamMessage) -> PriceTick:
        data = self._load(msg)
        return PriceTick(
            instrument=str(_require(data, "instrument", msg.kind)).upper(),
            time=_safe_time(_require(data, "time", msg.kind), "time"),
            bid=_safe_float(_require(data, "bid", msg.kind), "bid"),
            ask=_safe_float(_require(data, "ask", msg.kind), "ask"),
            status=str(data.get("status") or ""),
        )


class EventFeed(BaseFeed[AccountId, Event]):
    """
    Feed for the account event stream.

    Transaction format:
    {
        "transaction": {
            "id": 10001,
            "accountId": 234567,
            "time": "1456149472000000",
            "type": "SET_MARGIN_RATE",
            "marginRate": 0.05
        }
    }
    """

    data_kinds = frozenset({"transaction"})

    def __init__(self, name: str = "events") -> None:
        super().__init__(name=name)

    def normalize_key(self, key: Any) -> AccountId:
        return _safe_int(key, "accountId")

    def partition_key(self, msg: StreamMessage) -> AccountId:
        data = self._load(msg)
        return _safe_int(_require(data, "accountId", msg.kind), "accountId")

    def decode(self, msg: StreamMessage) -> Event:
        return decode_event(self._load(msg))


def _trade_detail(value: Any, field_name: str) -> TradeDetail | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise MessageParseError(f"Invalid {field_name}: {value}", expected_type="object")
    return TradeDetail(
        trade_id=_safe_int(value.get("id", 0), f"{field_name}.id"),
        units=_safe_int(value.get("units", 0), f"{field_name}.units"),
        pl=_safe_float(value.get("pl", 0.0), f"{field_name}.pl"),
        interest=_safe_float(value.get("interest", 0.0), f"{field_name}.interest"),
    )


def decode_event(data: dict[str, Any]) -> Event:
    """
    Decode a transaction object into its Event class.

    Unknown types become UnknownEvent so that server additions do not break
    the stream.
    """
    header = {
        "tran_id": _safe_int(_require(data, "id", "transaction"), "id"),
        "account_id": _safe_int(_require(data, "accountId", "transaction"), "accountId"),
        "time": _safe_time(_require(data, "time", "transaction"), "time"),
        "type": str(_require(data, "type", "transaction")),
    }

    cls = EVENT_CLASSES.get(header["type"])
    if cls is None:
        logger.debug(f"Unknown event type: {header['type']}")
        return UnknownEvent(**header, raw=data)

    names = {f.name: f for f in dataclasses.fields(cls)}
    body: dict[str, Any] = {}
    for wire, attr in EVENT_FIELDS.items():
        if attr not in names or data.get(wire) is None:
            continue
        value = data[wire]
        if attr in ("trade_opened", "trade_reduced"):
            body[attr] = _trade_detail(value, wire)
        elif attr == "expiry":
            body[attr] = _safe_time(value, wire)
        elif names[attr].type in ("int", int):
            body[attr] = _safe_int(value, wire)
        elif names[attr].type in ("float", float):
            body[attr] = _safe_float(value, wire)
        else:
            body[attr] = str(value)
    return cls(**header, **body)

