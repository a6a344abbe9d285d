"""Market data gateway protocol and normalized venue types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, Sequence

from backend.db.enums import OptionSide, OrderSide, OrderType
from hedging.common import decimal_to_str, utc_iso
from hedging.config import AccountConfig


@dataclass(frozen=True)
class TickSizeStep:
    """Price band above which a coarser tick applies."""

    above_price: Decimal
    tick_size: Decimal


@dataclass(frozen=True)
class Instrument:
    """Normalized tradable instrument."""

    instrument_name: str
    currency: str
    base_currency: str
    kind: str
    option_type: Optional[OptionSide]
    strike: Optional[Decimal]
    expiration: Optional[datetime]
    tick_size: Decimal
    min_trade_amount: Decimal
    tick_size_steps: tuple[TickSizeStep, ...] = ()
    is_active: bool = True


@dataclass(frozen=True)
class Quote:
    """Top of book plus greeks for one instrument."""

    instrument_name: str
    best_bid: Optional[Decimal]
    best_ask: Optional[Decimal]
    mark_price: Optional[Decimal] = None
    delta: Optional[float] = None
    gamma: Optional[float] = None
    theta: Optional[float] = None
    vega: Optional[float] = None


@dataclass(frozen=True)
class Position:
    """Open position snapshot; lives for one reconciliation pass."""

    instrument_name: str
    size: Decimal
    delta: Optional[float]
    mark_price: Optional[Decimal] = None
    kind: str = "option"
    direction: Optional[str] = None

    def per_unit_delta(self) -> float:
        if self.size == 0 or self.delta is None:
            return 0.0
        return float(self.delta) / float(self.size)

    def as_payload(self) -> dict[str, Any]:
        return {
            "instrument_name": self.instrument_name,
            "size": decimal_to_str(self.size),
            "delta": self.delta,
            "mark_price": None if self.mark_price is None else decimal_to_str(self.mark_price),
            "kind": self.kind,
            "direction": self.direction,
        }


@dataclass(frozen=True)
class OpenOrder:
    """Resting order on the venue."""

    order_id: str
    instrument_name: str
    direction: OrderSide
    amount: Decimal
    filled_amount: Decimal = Decimal("0")
    price: Optional[Decimal] = None
    order_state: str = "open"
    label: Optional[str] = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "instrument_name": self.instrument_name,
            "direction": self.direction.value,
            "amount": decimal_to_str(self.amount),
            "filled_amount": decimal_to_str(self.filled_amount),
            "price": None if self.price is None else decimal_to_str(self.price),
            "order_state": self.order_state,
            "label": self.label,
        }


@dataclass(frozen=True)
class OrderResult:
    """Venue acknowledgement of a placed order."""

    order_id: str
    instrument_name: str
    direction: OrderSide
    amount: Decimal
    order_state: str
    price: Optional[Decimal] = None
    filled_amount: Decimal = Decimal("0")


@dataclass(frozen=True)
class Credentials:
    """Short-lived access token for one account; refreshed every cycle."""

    account_id: str
    access_token: str
    expires_at: datetime
    scope: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        return f"account={self.account_id} expires_at={utc_iso(self.expires_at)}"


class MarketDataGateway(Protocol):
    """Venue capability set consumed by the reconciliation engine."""

    def authenticate(self, account: AccountConfig) -> Credentials:
        """Obtain fresh credentials for an account."""

    def list_instruments(self, currency: str, kind: str = "option", include_expired: bool = False) -> Sequence[Instrument]:
        """List instruments settled in currency."""

    def get_instrument(self, instrument_name: str) -> Instrument:
        """Fetch one instrument's trading parameters."""

    def get_quote(self, instrument_name: str) -> Quote:
        """Fetch top of book and greeks."""

    def get_positions(self, credentials: Credentials, currency: str = "any", kind: str = "option") -> Sequence[Position]:
        """Fetch open positions."""

    def get_open_orders(self, credentials: Credentials, currency: str = "any", kind: str = "option") -> Sequence[OpenOrder]:
        """Fetch resting orders."""

    def place_order(
        self,
        credentials: Credentials,
        instrument_name: str,
        side: OrderSide,
        amount: Decimal,
        order_type: OrderType = OrderType.LIMIT,
        price: Decimal | None = None,
        label: str | None = None,
    ) -> OrderResult:
        """Place an order and return the venue acknowledgement."""
