"""Replacement-instrument selection over a snapshot of the option universe."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable, Iterable, Optional, Sequence

from backend.db.enums import OptionSide
from hedging.errors import UpstreamUnavailable
from hedging.gateway_contract import Instrument, Quote
from hedging.pricing import spread_ratio

logger = logging.getLogger(__name__)

EXPIRY_GROUPS = 2
CANDIDATES_PER_GROUP = 2

QuoteFn = Callable[[str], Quote]


@dataclass(frozen=True)
class ReplacementCandidate:
    """Instrument considered for a roll, with the keys it is ranked by."""

    instrument: Instrument
    quote: Quote
    delta: float
    delta_distance: float
    spread_ratio: float

    @property
    def instrument_name(self) -> str:
        return self.instrument.instrument_name

    def sort_key(self) -> tuple[float, float, str]:
        # Name keeps the order total when both numeric keys tie.
        return (self.delta_distance, self.spread_ratio, self.instrument.instrument_name)


def option_side_for_target(target_delta: float) -> OptionSide:
    """Calls carry positive delta, puts negative."""
    return OptionSide.CALL if target_delta > 0 else OptionSide.PUT


def _eligible(
    instruments: Iterable[Instrument],
    *,
    underlying: Optional[str],
    option_side: OptionSide,
    cutoff: datetime,
) -> list[Instrument]:
    eligible = []
    for instrument in instruments:
        if instrument.kind != "option" or not instrument.is_active:
            continue
        if instrument.option_type != option_side:
            continue
        if underlying is not None and instrument.base_currency.upper() != underlying.upper():
            continue
        if instrument.expiration is None or instrument.expiration < cutoff:
            continue
        eligible.append(instrument)
    return eligible


def _nearest_expiry_groups(instruments: Sequence[Instrument]) -> list[list[Instrument]]:
    groups: dict[datetime, list[Instrument]] = {}
    for instrument in instruments:
        if instrument.expiration is None:
            continue
        groups.setdefault(instrument.expiration, []).append(instrument)
    return [groups[expiry] for expiry in sorted(groups)[:EXPIRY_GROUPS]]


def _score(instrument: Instrument, quotes_fn: QuoteFn, target_delta: float) -> Optional[ReplacementCandidate]:
    try:
        quote = quotes_fn(instrument.instrument_name)
    except UpstreamUnavailable as exc:
        logger.warning("Quote unavailable for %s, excluding: %s", instrument.instrument_name, exc)
        return None
    if quote.delta is None:
        logger.info("No greeks for %s, excluding", instrument.instrument_name)
        return None
    return ReplacementCandidate(
        instrument=instrument,
        quote=quote,
        delta=float(quote.delta),
        delta_distance=abs(float(quote.delta) - target_delta),
        spread_ratio=spread_ratio(quote.best_bid, quote.best_ask),
    )


def rank_candidates(
    *,
    target_delta: float,
    option_side: OptionSide,
    min_expiry_days: int,
    instruments: Sequence[Instrument],
    quotes_fn: QuoteFn,
    now: datetime,
    underlying: Optional[str] = None,
) -> list[ReplacementCandidate]:
    """Shortlist from the two nearest eligible expiries, best first."""
    cutoff = now + timedelta(days=min_expiry_days)
    eligible = _eligible(instruments, underlying=underlying, option_side=option_side, cutoff=cutoff)
    if not eligible:
        logger.info(
            "No %s instruments expiring after %s (%s listed)",
            option_side.value,
            cutoff.isoformat(),
            len(instruments),
        )
        return []

    shortlist: list[ReplacementCandidate] = []
    for group in _nearest_expiry_groups(eligible):
        scored = [candidate for candidate in (_score(item, quotes_fn, target_delta) for item in group) if candidate]
        scored.sort(key=lambda candidate: (candidate.delta_distance, candidate.instrument.instrument_name))
        shortlist.extend(scored[:CANDIDATES_PER_GROUP])
    shortlist.sort(key=ReplacementCandidate.sort_key)
    return shortlist


def select_replacement(
    *,
    target_delta: float,
    option_side: OptionSide,
    min_expiry_days: int,
    instruments: Sequence[Instrument],
    quotes_fn: QuoteFn,
    now: datetime,
    underlying: Optional[str] = None,
) -> Optional[ReplacementCandidate]:
    """Return the instrument whose delta is nearest target_delta, tighter spread on ties.

    Only the two nearest expiries at or after ``now + min_expiry_days`` are
    considered, and at most two instruments from each. Instruments without
    greeks, or whose quote cannot be fetched, are excluded. None means no
    candidate survived.
    """
    ranked = rank_candidates(
        target_delta=target_delta,
        option_side=option_side,
        min_expiry_days=min_expiry_days,
        instruments=instruments,
        quotes_fn=quotes_fn,
        now=now,
        underlying=underlying,
    )
    if not ranked:
        return None
    best = ranked[0]
    logger.info(
        "Selected %s delta=%.4f distance=%.4f spread_ratio=%.4f from %s candidate(s)",
        best.instrument_name,
        best.delta,
        best.delta_distance,
        best.spread_ratio,
        len(ranked),
    )
    return best
