"""In-memory venue used for dry runs and tests."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
import itertools
import logging
import threading
from typing import Sequence

from backend.db.enums import OptionSide, OrderSide, OrderType
from hedging.common import HedgerClock
from hedging.config import AccountConfig
from hedging.errors import UpstreamUnavailable
from hedging.gateway_contract import Credentials, Instrument, OpenOrder, OrderResult, Position, Quote, TickSizeStep
from hedging.instruments import EXPIRY_HOUR_UTC

logger = logging.getLogger(__name__)

_OPERATIONS = frozenset(
    {
        "authenticate",
        "list_instruments",
        "get_instrument",
        "get_quote",
        "get_positions",
        "get_open_orders",
        "place_order",
    }
)

_MONTH_CODES = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")


class SimulatedGateway:
    """Deterministic stand-in for the venue.

    Orders fill immediately at their limit price unless ``fill_orders`` is
    False, in which case they rest as open orders. Individual operations can
    be made to fail with :meth:`fail` to exercise error paths.
    """

    def __init__(self, *, clock: HedgerClock | None = None, fill_orders: bool = True) -> None:
        self._clock = clock or HedgerClock()
        self._fill_orders = fill_orders
        self._lock = threading.Lock()
        self._instruments: dict[str, Instrument] = {}
        self._quotes: dict[str, Quote] = {}
        self._positions: dict[str, dict[str, Position]] = {}
        self._open_orders: dict[str, dict[str, OpenOrder]] = {}
        self._failures: dict[tuple[str, str], Exception] = {}
        self._order_ids = itertools.count(1)
        self.placed_orders: list[tuple[str, OrderResult]] = []

    # ---- scenario setup ---------------------------------------------

    def add_instrument(self, instrument: Instrument, quote: Quote | None = None) -> None:
        with self._lock:
            self._instruments[instrument.instrument_name] = instrument
            if quote is not None:
                self._quotes[instrument.instrument_name] = quote

    def set_quote(self, quote: Quote) -> None:
        with self._lock:
            self._quotes[quote.instrument_name] = quote

    def set_position(self, account_id: str, position: Position) -> None:
        with self._lock:
            self._positions.setdefault(account_id, {})[position.instrument_name] = position

    def add_open_order(self, account_id: str, order: OpenOrder) -> None:
        with self._lock:
            self._open_orders.setdefault(account_id, {})[order.order_id] = order

    def remove_open_order(self, account_id: str, order_id: str) -> None:
        with self._lock:
            self._open_orders.get(account_id, {}).pop(order_id, None)

    def fail(self, operation: str, key: str = "*", error: Exception | None = None) -> None:
        """Make ``operation`` raise for ``key`` (account id or instrument name, ``*`` for all)."""
        if operation not in _OPERATIONS:
            raise ValueError(f"Unknown simulated operation: {operation}")
        with self._lock:
            self._failures[(operation, key)] = error or UpstreamUnavailable(f"simulated {operation} failure for {key}")

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()

    def _check(self, operation: str, key: str) -> None:
        error = self._failures.get((operation, key)) or self._failures.get((operation, "*"))
        if error is not None:
            raise error

    # ---- gateway protocol --------------------------------------------

    def authenticate(self, account: AccountConfig) -> Credentials:
        with self._lock:
            self._check("authenticate", account.name)
        now = self._clock.now_utc()
        return Credentials(
            account_id=account.name,
            access_token=f"sim-token-{account.name}",
            expires_at=now + timedelta(minutes=15),
            scope=account.scope,
        )

    def list_instruments(self, currency: str, kind: str = "option", include_expired: bool = False) -> Sequence[Instrument]:
        now = self._clock.now_utc()
        with self._lock:
            self._check("list_instruments", currency)
            rows = [
                instrument
                for instrument in self._instruments.values()
                if instrument.currency == currency
                and instrument.kind == kind
                and (include_expired or instrument.expiration is None or instrument.expiration > now)
            ]
        return sorted(rows, key=lambda item: item.instrument_name)

    def get_instrument(self, instrument_name: str) -> Instrument:
        with self._lock:
            self._check("get_instrument", instrument_name)
            instrument = self._instruments.get(instrument_name)
        if instrument is None:
            raise UpstreamUnavailable(f"unknown instrument {instrument_name}")
        return instrument

    def get_quote(self, instrument_name: str) -> Quote:
        with self._lock:
            self._check("get_quote", instrument_name)
            quote = self._quotes.get(instrument_name)
        if quote is None:
            raise UpstreamUnavailable(f"no ticker for {instrument_name}")
        return quote

    def get_positions(self, credentials: Credentials, currency: str = "any", kind: str = "option") -> Sequence[Position]:
        with self._lock:
            self._check("get_positions", credentials.account_id)
            positions = list(self._positions.get(credentials.account_id, {}).values())
        return [
            position
            for position in positions
            if position.kind == kind and (currency == "any" or self._settles_in(position.instrument_name, currency))
        ]

    def get_open_orders(self, credentials: Credentials, currency: str = "any", kind: str = "option") -> Sequence[OpenOrder]:
        with self._lock:
            self._check("get_open_orders", credentials.account_id)
            orders = list(self._open_orders.get(credentials.account_id, {}).values())
        return [order for order in orders if currency == "any" or self._settles_in(order.instrument_name, currency)]

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
        with self._lock:
            self._check("place_order", instrument_name)
            if instrument_name not in self._instruments:
                raise UpstreamUnavailable(f"unknown instrument {instrument_name}")
            order_id = f"SIM-{next(self._order_ids)}"
            if self._fill_orders:
                self._apply_fill(credentials.account_id, instrument_name, side, amount)
                state = "filled"
                filled = amount
            else:
                self._open_orders.setdefault(credentials.account_id, {})[order_id] = OpenOrder(
                    order_id=order_id,
                    instrument_name=instrument_name,
                    direction=side,
                    amount=amount,
                    price=price,
                    label=label,
                )
                state = "open"
                filled = Decimal("0")
            result = OrderResult(
                order_id=order_id,
                instrument_name=instrument_name,
                direction=side,
                amount=amount,
                order_state=state,
                price=price,
                filled_amount=filled,
            )
            self.placed_orders.append((credentials.account_id, result))
        logger.info("Simulated %s %s %s %s -> %s", order_type.value, side.value, amount, instrument_name, state)
        return result

    # ---- internals ---------------------------------------------------

    def _settles_in(self, instrument_name: str, currency: str) -> bool:
        instrument = self._instruments.get(instrument_name)
        return instrument is not None and instrument.currency == currency

    def _apply_fill(self, account_id: str, instrument_name: str, side: OrderSide, amount: Decimal) -> None:
        book = self._positions.setdefault(account_id, {})
        current = book.get(instrument_name)
        signed = amount if side == OrderSide.BUY else -amount
        new_size = (current.size if current else Decimal("0")) + signed
        if new_size == 0:
            book.pop(instrument_name, None)
            return
        quote = self._quotes.get(instrument_name)
        unit_delta = quote.delta if quote is not None else None
        position = Position(
            instrument_name=instrument_name,
            size=new_size,
            delta=None if unit_delta is None else unit_delta * float(new_size),
            mark_price=None if quote is None else quote.mark_price,
            direction="buy" if new_size > 0 else "sell",
        )
        book[instrument_name] = position


def _expiry_code(expiry: datetime) -> str:
    return f"{expiry.day}{_MONTH_CODES[expiry.month - 1]}{expiry.year % 100:02d}"


def seed_demo_market(
    gateway: SimulatedGateway,
    now: datetime,
    *,
    underlying: str = "BTC",
    spot: Decimal = Decimal("60000"),
    expiries_days: Sequence[int] = (3, 10, 17, 31),
    strike_offsets: Sequence[Decimal] = (Decimal("-0.10"), Decimal("-0.05"), Decimal("0"), Decimal("0.05"), Decimal("0.10")),
) -> list[Instrument]:
    """Populate an inverse option chain with plausible deltas and tight books."""
    created: list[Instrument] = []
    for days in expiries_days:
        expiry = (now + timedelta(days=days)).replace(hour=EXPIRY_HOUR_UTC, minute=0, second=0, microsecond=0)
        for offset in strike_offsets:
            strike = (spot * (Decimal("1") + offset) / 1000).quantize(Decimal("1")) * 1000
            moneyness = float(offset) * 5
            for option_type, delta in (
                (OptionSide.CALL, max(0.05, min(0.95, 0.5 - moneyness))),
                (OptionSide.PUT, -max(0.05, min(0.95, 0.5 + moneyness))),
            ):
                suffix = "C" if option_type == OptionSide.CALL else "P"
                name = f"{underlying}-{_expiry_code(expiry)}-{strike}-{suffix}"
                instrument = Instrument(
                    instrument_name=name,
                    currency=underlying,
                    base_currency=underlying,
                    kind="option",
                    option_type=option_type,
                    strike=strike,
                    expiration=expiry,
                    tick_size=Decimal("0.0001"),
                    min_trade_amount=Decimal("0.1"),
                    tick_size_steps=(TickSizeStep(above_price=Decimal("0.005"), tick_size=Decimal("0.0005")),),
                )
                mid = Decimal(str(round(abs(delta) * 0.05, 4)))
                quote = Quote(
                    instrument_name=name,
                    best_bid=(mid * Decimal("0.97")).quantize(Decimal("0.0001")),
                    best_ask=(mid * Decimal("1.03")).quantize(Decimal("0.0001")),
                    mark_price=mid,
                    delta=round(delta, 4),
                )
                gateway.add_instrument(instrument, quote)
                created.append(instrument)
    return created

