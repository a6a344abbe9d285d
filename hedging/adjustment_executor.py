"""Close-and-reopen roll of a drifted option position."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging
from typing import Optional

from backend.db.enums import OptionSide, OrderSide, OrderType, RecordType
from hedging.common import HedgerClock
from hedging.errors import AdjustmentResult, DuplicateRecord, InconsistentAdjustment, UpstreamUnavailable, ValidationError
from hedging.gateway_contract import Credentials, Instrument, MarketDataGateway, OrderResult, Position, Quote
from hedging.instruments import parse_instrument
from hedging.ledger import DeltaTargetInput, DeltaTargetLedger, DeltaTargetRecord
from hedging.option_selector import ReplacementCandidate, option_side_for_target, select_replacement
from hedging.pricing import correct_amount, smart_limit_price, spread_ratio

logger = logging.getLogger(__name__)

REASON_ADJUSTED = "adjusted"
REASON_DISABLED = "adjustment disabled"
REASON_BAD_INSTRUMENT = "unparseable instrument"
REASON_UPSTREAM = "upstream unavailable"
REASON_NO_REPLACEMENT = "no suitable replacement"
REASON_SPREAD = "spread too wide"
REASON_NO_PRICE = "no executable price"
REASON_CLOSE_FAILED = "close leg failed"
REASON_INCONSISTENT = "inconsistent adjustment"
REASON_LEDGER = "ledger update failed"


@dataclass(frozen=True)
class _Leg:
    instrument: Instrument
    side: OrderSide
    amount: Decimal
    price: Decimal


class AdjustmentExecutor:
    """Rolls one position into the instrument whose delta is nearest the record's target.

    The ledger is touched only after both legs are acknowledged by the venue.
    No leg is retried here.
    """

    def __init__(
        self,
        *,
        gateway: MarketDataGateway,
        ledger: DeltaTargetLedger,
        clock: HedgerClock | None = None,
        spread_ratio_threshold: float = 0.15,
        smart_price_ratio: float = 0.2,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._clock = clock or HedgerClock()
        self._spread_ratio_threshold = spread_ratio_threshold
        self._smart_price_ratio = smart_price_ratio

    def _failure(
        self,
        position: Position,
        reason: str,
        *,
        new_instrument: Optional[str] = None,
        error: Optional[str] = None,
        inconsistent: bool = False,
        close_order_id: Optional[str] = None,
    ) -> AdjustmentResult:
        return AdjustmentResult(
            success=False,
            reason=reason,
            old_instrument=position.instrument_name,
            new_instrument=new_instrument,
            error=error,
            inconsistent=inconsistent,
            close_order_id=close_order_id,
        )

    def _select(
        self,
        position: Position,
        record: DeltaTargetRecord,
        currency: str,
        underlying: str,
        min_expire_days: int,
    ) -> Optional[ReplacementCandidate]:
        option_side = option_side_for_target(record.target_delta)
        magnitude = abs(record.target_delta)
        signed_target = magnitude if option_side == OptionSide.CALL else -magnitude
        universe = [
            instrument
            for instrument in self._gateway.list_instruments(currency, "option")
            if instrument.instrument_name != position.instrument_name
        ]
        return select_replacement(
            target_delta=signed_target,
            option_side=option_side,
            min_expiry_days=min_expire_days,
            instruments=universe,
            quotes_fn=self._gateway.get_quote,
            now=self._clock.now_utc(),
            underlying=underlying,
        )

    def _leg(self, instrument: Instrument, quote: Quote, side: OrderSide, size: Decimal) -> Optional[_Leg]:
        price = smart_limit_price(side, quote.best_bid, quote.best_ask, instrument, self._smart_price_ratio)
        if price is None:
            return None
        return _Leg(instrument=instrument, side=side, amount=correct_amount(size, instrument), price=price)

    def _place(self, credentials: Credentials, leg: _Leg, label: str) -> OrderResult:
        logger.info(
            "Placing %s %s %s @ %s (%s)",
            leg.side.value,
            leg.amount,
            leg.instrument.instrument_name,
            leg.price,
            label,
        )
        return self._gateway.place_order(
            credentials,
            leg.instrument.instrument_name,
            leg.side,
            leg.amount,
            OrderType.LIMIT,
            leg.price,
            label,
        )

    def adjust(
        self,
        account_id: str,
        position: Position,
        record: DeltaTargetRecord,
        credentials: Credentials,
        *,
        request_id: str = "",
    ) -> AdjustmentResult:
        """Close ``position`` and open its replacement; never raises for venue failures."""
        if record.min_expire_days is None:
            return self._failure(position, REASON_DISABLED)
        try:
            currency, underlying = parse_instrument(position.instrument_name)
        except ValidationError as exc:
            return self._failure(position, REASON_BAD_INSTRUMENT, error=str(exc))

        try:
            candidate = self._select(position, record, currency, underlying, record.min_expire_days)
        except UpstreamUnavailable as exc:
            logger.warning("[%s] Instrument listing failed for %s: %s", request_id, currency, exc)
            return self._failure(position, REASON_UPSTREAM, error=str(exc))
        if candidate is None:
            return self._failure(position, REASON_NO_REPLACEMENT)
        new_name = candidate.instrument_name

        try:
            current_instrument = self._gateway.get_instrument(position.instrument_name)
            current_quote = self._gateway.get_quote(position.instrument_name)
        except UpstreamUnavailable as exc:
            return self._failure(position, REASON_UPSTREAM, new_instrument=new_name, error=str(exc))

        current_spread = spread_ratio(current_quote.best_bid, current_quote.best_ask)
        worst_spread = max(candidate.spread_ratio, current_spread)
        if worst_spread > self._spread_ratio_threshold:
            logger.info(
                "[%s] Spread too wide: %s=%.4f %s=%.4f threshold=%.4f",
                request_id,
                position.instrument_name,
                current_spread,
                new_name,
                candidate.spread_ratio,
                self._spread_ratio_threshold,
            )
            return self._failure(
                position,
                REASON_SPREAD,
                new_instrument=new_name,
                error=f"spread ratio {worst_spread:.4f} exceeds {self._spread_ratio_threshold:.4f}",
            )

        size = abs(position.size)
        position_side = OrderSide.BUY if position.size > 0 else OrderSide.SELL
        close_side = OrderSide.SELL if position_side == OrderSide.BUY else OrderSide.BUY
        close_leg = self._leg(current_instrument, current_quote, close_side, size)
        open_leg = self._leg(candidate.instrument, candidate.quote, position_side, size)
        if close_leg is None or open_leg is None:
            return self._failure(position, REASON_NO_PRICE, new_instrument=new_name)

        try:
            close_ack = self._place(credentials, close_leg, f"{request_id}_close")
        except Exception as exc:
            logger.warning("[%s] Close leg failed for %s: %r", request_id, position.instrument_name, exc)
            return self._failure(position, REASON_CLOSE_FAILED, new_instrument=new_name, error=str(exc))

        try:
            open_ack = self._place(credentials, open_leg, f"{request_id}_open")
        except Exception as exc:
            # The close leg is already live, so any open failure leaves the book half-rolled.
            inconsistency = InconsistentAdjustment(
                f"closed {position.instrument_name} but failed to open {new_name}: {exc}",
                closed_instrument=position.instrument_name,
                open_instrument=new_name,
            )
            logger.error("[%s] %s", request_id, inconsistency)
            return self._failure(
                position,
                REASON_INCONSISTENT,
                new_instrument=new_name,
                error=str(inconsistency),
                inconsistent=True,
                close_order_id=close_ack.order_id,
            )

        try:
            new_record = self._ledger.replace_record(
                record.id,
                DeltaTargetInput(
                    account_id=account_id,
                    instrument_name=new_name,
                    target_delta=record.target_delta,
                    record_type=RecordType.POSITION,
                    move_position_delta=record.move_position_delta,
                    min_expire_days=record.min_expire_days,
                    tv_id=record.tv_id,
                ),
            )
        except (DuplicateRecord, ValidationError) as exc:
            # Both legs are live on the venue; the ledger still points at the old instrument.
            logger.error("[%s] Ledger update failed after roll to %s: %s", request_id, new_name, exc)
            return AdjustmentResult(
                success=False,
                reason=REASON_LEDGER,
                old_instrument=position.instrument_name,
                new_instrument=new_name,
                error=str(exc),
                inconsistent=True,
                close_order_id=close_ack.order_id,
                open_order_id=open_ack.order_id,
            )

        logger.info(
            "[%s] Rolled %s -> %s size=%s record %s -> %s",
            request_id,
            position.instrument_name,
            new_name,
            size,
            record.id,
            new_record.id,
        )
        return AdjustmentResult(
            success=True,
            reason=REASON_ADJUSTED,
            old_instrument=position.instrument_name,
            new_instrument=new_name,
            close_order_id=close_ack.order_id,
            open_order_id=open_ack.order_id,
            new_record_id=new_record.id,
        )
