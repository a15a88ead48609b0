from __future__ import annotations

from abc import ABC
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from fxclient.types.aliases import AccountId, Instrument, TransactionId

# --- Time ---

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_time(value: Any) -> datetime:
    """
    Parse a timestamp as sent by the server into an aware UTC datetime.

    Accepted forms:
        1456149472               integer seconds
        "1456149472000000"       digit string in microseconds (UNIX datetime format)
        "2016-02-22T13:57:52Z"   RFC3339
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid time value: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return _EPOCH + timedelta(microseconds=int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise ValueError(f"Invalid time value: {value!r}")


# --- Prices ---


@dataclass(frozen=True, slots=True)
class PriceTick:
    instrument: Instrument  # e.g. "EUR_USD"
    time: datetime
    bid: float
    ask: float
    status: str = ""  # e.g. "halted"

    @property
    def spread(self) -> float:
        return self.ask - self.bid


# --- Events (aka transactions) ---


@dataclass(frozen=True, slots=True)
class TradeDetail:
    trade_id: int
    units: int
    pl: float = 0.0
    interest: float = 0.0


@dataclass(frozen=True, slots=True, kw_only=True)
class Event(ABC):
    """
    Abstract base for account events. The concrete class is picked from the
    "type" field; see EVENT_CLASSES.
    """

    tran_id: TransactionId
    account_id: AccountId
    time: datetime
    type: str


@dataclass(frozen=True, slots=True, kw_only=True)
class AccountCreateEvent(Event):
    home_currency: str = ""
    reason: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class TradeCreateEvent(Event):
    instrument: Instrument = ""
    side: str = ""
    units: int = 0
    price: float = 0.0
    pl: float = 0.0
    interest: float = 0.0
    lower_bound: float = 0.0
    upper_bound: float = 0.0
    account_balance: float = 0.0
    stop_loss_price: float = 0.0
    take_profit_price: float = 0.0
    trailing_stop_loss_distance: float = 0.0
    trade_opened: Optional[TradeDetail] = None
    trade_reduced: Optional[TradeDetail] = None


@dataclass(frozen=True, slots=True, kw_only=True)
class OrderCreateEvent(Event):
    """LIMIT_ORDER_CREATE, STOP_ORDER_CREATE or MARKET_IF_TOUCHED_CREATE."""

    instrument: Instrument = ""
    side: str = ""
    units: int = 0
    price: float = 0.0
    expiry: Optional[datetime] = None
    reason: str = ""
    lower_bound: float = 0.0
    upper_bound: float = 0.0
    take_profit_price: float = 0.0
    stop_loss_price: float = 0.0
    trailing_stop_loss_distance: float = 0.0


@dataclass(frozen=True, slots=True, kw_only=True)
class OrderUpdateEvent(Event):
    instrument: Instrument = ""
    side: str = ""
    units: int = 0
    reason: str = ""
    lower_bound: float = 0.0
    upper_bound: float = 0.0
    take_profit_price: float = 0.0
    stop_loss_price: float = 0.0
    trailing_stop_loss_distance: float = 0.0


@dataclass(frozen=True, slots=True, kw_only=True)
class OrderCancelEvent(Event):
    order_id: int = 0
    reason: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class OrderFilledEvent(Event):
    order_id: int = 0


@dataclass(frozen=True, slots=True, kw_only=True)
class TradeUpdateEvent(Event):
    instrument: Instrument = ""
    units: int = 0
    side: str = ""
    trade_id: int = 0
    take_profit_price: float = 0.0
    stop_loss_price: float = 0.0
    trailing_stop_loss_distance: float = 0.0


@dataclass(frozen=True, slots=True, kw_only=True)
class TradeCloseEvent(Event):
    """
    TRADE_CLOSE, MIGRATE_TRADE_CLOSE, TAKE_PROFIT_FILLED, STOP_LOSS_FILLED,
    TRAILING_STOP_FILLED or MARGIN_CLOSEOUT.
    """

    instrument: Instrument = ""
    units: int = 0
    side: str = ""
    price: float = 0.0
    pl: float = 0.0
    interest: float = 0.0
    account_balance: float = 0.0
    trade_id: int = 0


@dataclass(frozen=True, slots=True, kw_only=True)
class MigrateTradeOpenEvent(Event):
    instrument: Instrument = ""
    side: str = ""
    units: int = 0
    price: float = 0.0
    take_profit_price: float = 0.0
    stop_loss_price: float = 0.0
    trailing_stop_loss_distance: float = 0.0
    trade_opened: Optional[TradeDetail] = None


@dataclass(frozen=True, slots=True, kw_only=True)
class SetMarginRateEvent(Event):
    rate: float = 0.0


@dataclass(frozen=True, slots=True, kw_only=True)
class TransferFundsEvent(Event):
    amount: float = 0.0


@dataclass(frozen=True, slots=True, kw_only=True)
class DailyInterestEvent(Event):
    interest: float = 0.0


@dataclass(frozen=True, slots=True, kw_only=True)
class FeeEvent(Event):
    amount: float = 0.0
    account_balance: float = 0.0
    reason: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class UnknownEvent(Event):
    """Event of a type this client does not know yet; the raw body is kept."""

    raw: Mapping[str, Any]


EVENT_CLASSES: dict[str, type[Event]] = {
    "CREATE": AccountCreateEvent,
    "MARKET_ORDER_CREATE": TradeCreateEvent,
    "LIMIT_ORDER_CREATE": OrderCreateEvent,
    "STOP_ORDER_CREATE": OrderCreateEvent,
    "MARKET_IF_TOUCHED_CREATE": OrderCreateEvent,
    "ORDER_UPDATE": OrderUpdateEvent,
    "ORDER_CANCEL": OrderCancelEvent,
    "ORDER_FILLED": OrderFilledEvent,
    "TRADE_UPDATE": TradeUpdateEvent,
    "TRADE_CLOSE": TradeCloseEvent,
    "MIGRATE_TRADE_CLOSE": TradeCloseEvent,
    "TAKE_PROFIT_FILLED": TradeCloseEvent,
    "STOP_LOSS_FILLED": TradeCloseEvent,
    "TRAILING_STOP_FILLED": TradeCloseEvent,
    "MARGIN_CLOSEOUT": TradeCloseEvent,
    "MIGRATE_TRADE_OPEN": MigrateTradeOpenEvent,
    "SET_MARGIN_RATE": SetMarginRateEvent,
    "TRANSFER_FUNDS": TransferFundsEvent,
    "DAILY_INTEREST": DailyInterestEvent,
    "FEE": FeeEvent,
}

# Wire name -> field name for body fields
EVENT_FIELDS: dict[str, str] = {
    "instrument": "instrument",
    "side": "side",
    "units": "units",
    "price": "price",
    "expiry": "expiry",
    "reason": "reason",
    "lowerBound": "lower_bound",
    "upperBound": "upper_bound",
    "takeProfitPrice": "take_profit_price",
    "stopLossPrice": "stop_loss_price",
    "trailingStopLossDistance": "trailing_stop_loss_distance",
    "pl": "pl",
    "interest": "interest",
    "accountBalance": "account_balance",
    "rate": "rate",
    "marginRate": "rate",
    "amount": "amount",
    "tradeId": "trade_id",
    "orderId": "order_id",
    "tradeOpened": "trade_opened",
    "tradeReduced": "trade_reduced",
    "homeCurrency": "home_currency",
}
