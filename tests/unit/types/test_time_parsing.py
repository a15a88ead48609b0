"""
Unit tests for parse_time and the record types.
"""

from datetime import datetime, timezone

import pytest

from fxclient.types.types import EVENT_CLASSES, PriceTick, TradeCloseEvent, TradeCreateEvent, parse_time

EXPECTED = datetime(2016, 2, 22, 13, 57, 52, tzinfo=timezone.utc)


class TestParseTime:
    """Tests for parse_time."""

    def test_integer_seconds(self) -> None:
        assert parse_time(1456149472) == EXPECTED

    def test_microsecond_digit_string(self) -> None:
        assert parse_time("1456149472000000") == EXPECTED

    def test_microseconds_are_kept(self) -> None:
        assert parse_time("1456149472000123").microsecond == 123

    def test_rfc3339_utc(self) -> None:
        assert parse_time("2016-02-22T13:57:52Z") == EXPECTED

    def test_rfc3339_offset(self) -> None:
        ts = parse_time("2016-02-22T14:57:52+01:00")

        assert ts == EXPECTED
        assert ts.tzinfo == timezone.utc

    def test_naive_string_is_utc(self) -> None:
        assert parse_time("2016-02-22T13:57:52") == EXPECTED

    @pytest.mark.parametrize("value", [None, True, "not a time", [1]])
    def test_invalid(self, value: object) -> None:
        with pytest.raises(ValueError):
            parse_time(value)


class TestRecordTypes:
    """Tests for record types."""

    def test_spread(self) -> None:
        tick = PriceTick(instrument="EUR_USD", time=EXPECTED, bid=1.5, ask=1.75)

        assert tick.spread == 0.25

    def test_market_order_maps_to_trade_create(self) -> None:
        assert EVENT_CLASSES["MARKET_ORDER_CREATE"] is TradeCreateEvent

    def test_events_are_frozen(self) -> None:
        event = TradeCloseEvent(tran_id=1, account_id=2, time=EXPECTED, type="TRADE_CLOSE")

        with pytest.raises(AttributeError):
            event.units = 5  # type: ignore[misc]
