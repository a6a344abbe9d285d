"""Spread, tick-size and amount correction helpers.

All arithmetic is Decimal; the venue rejects prices that are not a multiple
of the tick in force for the price band, and amounts that are not a multiple
of the instrument's minimum trade amount.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from backend.db.enums import OrderSide
from hedging.common import to_decimal
from hedging.gateway_contract import Instrument, TickSizeStep

_ZERO = Decimal("0")


def spread_ratio(bid: Optional[Decimal], ask: Optional[Decimal]) -> float:
    """Return (ask - bid) / (ask + bid), or 1.0 when the book is one-sided or crossed."""
    if bid is None or ask is None:
        return 1.0
    bid_dec = to_decimal(bid)
    ask_dec = to_decimal(ask)
    if bid_dec <= 0 or ask_dec <= 0 or bid_dec > ask_dec:
        return 1.0
    return float((ask_dec - bid_dec) / (ask_dec + bid_dec))


def tick_size_for(price: Decimal, base_tick: Decimal, steps: Sequence[TickSizeStep] = ()) -> Decimal:
    for step in sorted(steps, key=lambda item: item.above_price, reverse=True):
        if price > step.above_price:
            return step.tick_size
    return base_tick


def _round_to_multiple(value: Decimal, unit: Decimal) -> Decimal:
    if unit <= 0:
        raise ValueError("rounding unit must be positive")
    steps = (value / unit).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return steps * unit


def correct_price(price: Decimal, instrument: Instrument) -> Decimal:
    """Round a limit price to the nearest valid tick, never below one tick."""
    price_dec = to_decimal(price)
    tick = tick_size_for(price_dec, instrument.tick_size, instrument.tick_size_steps)
    corrected = _round_to_multiple(price_dec, tick)
    return corrected if corrected > 0 else tick


def correct_amount(amount: Decimal, instrument: Instrument) -> Decimal:
    """Round an order amount to the nearest multiple of the minimum trade amount."""
    amount_dec = abs(to_decimal(amount))
    corrected = _round_to_multiple(amount_dec, instrument.min_trade_amount)
    return corrected if corrected > 0 else instrument.min_trade_amount


def smart_limit_price(
    side: OrderSide,
    bid: Optional[Decimal],
    ask: Optional[Decimal],
    instrument: Instrument,
    ratio: float = 0.2,
) -> Optional[Decimal]:
    """Place a limit price a fraction of the spread inside the touch.

    With a one-sided book the available side is used as is; with no book at
    all there is nothing to price against and None is returned.
    """
    bid_dec = to_decimal(bid) if bid is not None and to_decimal(bid) > 0 else None
    ask_dec = to_decimal(ask) if ask is not None and to_decimal(ask) > 0 else None
    if bid_dec is None and ask_dec is None:
        return None
    if bid_dec is None or ask_dec is None:
        raw = bid_dec if bid_dec is not None else ask_dec
    else:
        spread = ask_dec - bid_dec
        r = to_decimal(ratio)
        raw = bid_dec + spread * r if side == OrderSide.BUY else ask_dec - spread * r
    if raw is None or raw <= _ZERO:
        return None
    return correct_price(raw, instrument)
