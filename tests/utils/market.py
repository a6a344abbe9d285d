"""Option-chain builders and clocks shared by hedging unit tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from backend.db.enums import RecordType
from hedging.common import HedgerClock
from hedging.gateway_contract import Instrument, Position, Quote, TickSizeStep
from hedging.instruments import option_type_of, parse_instrument, parse_instrument_expiry
from hedging.ledger import DeltaTargetInput

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock(HedgerClock):
    def __init__(self, now_ts: datetime) -> None:
        self._now_ts = now_ts

    def now_utc(self) -> datetime:
        return self._now_ts

    def advance(self, **kwargs: float) -> None:
        self._now_ts = self._now_ts + timedelta(**kwargs)


def option(
    name: str,
    *,
    tick: str = "0.0001",
    min_amount: str = "0.1",
    active: bool = True,
    steps: tuple[TickSizeStep, ...] = (),
) -> Instrument:
    """Instrument whose expiry, side and currencies are read off its name."""
    currency, underlying = parse_instrument(name)
    return Instrument(
        instrument_name=name,
        currency=currency,
        base_currency=underlying,
        kind="option",
        option_type=option_type_of(name),
        strike=Decimal(name.split("-")[2]),
        expiration=parse_instrument_expiry(name),
        tick_size=Decimal(tick),
        min_trade_amount=Decimal(min_amount),
        tick_size_steps=steps,
        is_active=active,
    )


def quote(name: str, delta: float | None, bid: str | None = "0.0100", ask: str | None = "0.0110") -> Quote:
    return Quote(
        instrument_name=name,
        best_bid=None if bid is None else Decimal(bid),
        best_ask=None if ask is None else Decimal(ask),
        mark_price=Decimal("0.0105"),
        delta=delta,
    )


def position(name: str, size: str, delta: float | None) -> Position:
    return Position(instrument_name=name, size=Decimal(size), delta=delta)


def position_input(
    account_id: str,
    instrument_name: str,
    target_delta: float,
    *,
    min_expire_days: int | None = 5,
    **kwargs,  # type: ignore[no-untyped-def]
) -> DeltaTargetInput:
    return DeltaTargetInput(
        account_id=account_id,
        instrument_name=instrument_name,
        target_delta=target_delta,
        record_type=RecordType.POSITION,
        min_expire_days=min_expire_days,
        **kwargs,
    )


def order_input(account_id: str, instrument_name: str, order_id: str, target_delta: float, **kwargs) -> DeltaTargetInput:  # type: ignore[no-untyped-def]
    return DeltaTargetInput(
        account_id=account_id,
        instrument_name=instrument_name,
        target_delta=target_delta,
        record_type=RecordType.ORDER,
        order_id=order_id,
        **kwargs,
    )
