from __future__ import annotations

from decimal import Decimal

import pytest

from backend.db.enums import OrderSide
from hedging import adjustment_executor
from hedging.adjustment_executor import AdjustmentExecutor
from hedging.config import AccountConfig
from hedging.errors import DuplicateRecord
from hedging.gateway_contract import Credentials
from hedging.ledger import DeltaTargetLedger, DeltaTargetRecord
from hedging.simulated_gateway import SimulatedGateway
from tests.utils.market import FixedClock, option, position, position_input, quote

ACCOUNT = AccountConfig(name="acct-a", client_id="id", client_secret="secret")
CURRENT = "BTC-3JAN26-60000-C"
BEST = "BTC-9JAN26-65000-C"


def _seed(gateway: SimulatedGateway) -> None:
    for name, delta in (
        (CURRENT, 0.5),
        (BEST, 0.32),
        ("BTC-9JAN26-70000-C", 0.2),
        ("BTC-16JAN26-65000-C", 0.35),
        ("BTC-30JAN26-65000-C", 0.3),
        ("BTC-9JAN26-55000-P", -0.28),
        ("BTC-9JAN26-50000-P", -0.15),
    ):
        gateway.add_instrument(option(name), quote(name, delta))


def _setup(
    gateway: SimulatedGateway,
    ledger: DeltaTargetLedger,
    clock: FixedClock,
    *,
    name: str = CURRENT,
    size: str = "10",
    delta: float = 5.0,
    target: float = 0.3,
    min_expire_days: int | None = 5,
) -> tuple[AdjustmentExecutor, DeltaTargetRecord, Credentials]:
    _seed(gateway)
    pos = position(name, size, delta)
    gateway.set_position(ACCOUNT.name, pos)
    record = ledger.upsert_position(position_input(ACCOUNT.name, name, target, min_expire_days=min_expire_days, tv_id=42))
    executor = AdjustmentExecutor(gateway=gateway, ledger=ledger, clock=clock)
    return executor, record, gateway.authenticate(ACCOUNT)


def test_adjust_closes_current_opens_nearest_delta_and_moves_record(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials, request_id="req-1")

    assert result.success is True
    assert result.reason == adjustment_executor.REASON_ADJUSTED
    assert result.old_instrument == CURRENT
    assert result.new_instrument == BEST

    (close_account, close), (open_account, opened) = gateway.placed_orders
    assert close_account == open_account == ACCOUNT.name
    assert (close.instrument_name, close.direction, close.amount, close.price) == (
        CURRENT,
        OrderSide.SELL,
        Decimal("10.0"),
        Decimal("0.0108"),
    )
    assert (opened.instrument_name, opened.direction, opened.amount, opened.price) == (
        BEST,
        OrderSide.BUY,
        Decimal("10.0"),
        Decimal("0.0102"),
    )
    assert result.close_order_id == close.order_id
    assert result.open_order_id == opened.order_id

    assert ledger.get_record(record.id) is None
    moved = ledger.get_latest_record(ACCOUNT.name, BEST)
    assert moved is not None
    assert moved.id == result.new_record_id
    assert (moved.target_delta, moved.min_expire_days, moved.tv_id) == (0.3, 5, 42)


def test_short_position_rolls_with_buy_close_and_sell_open(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock, size="-10", delta=-5.0)

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "-10", -5.0), record, credentials)

    assert result.success is True
    assert [order.direction for _, order in gateway.placed_orders] == [OrderSide.BUY, OrderSide.SELL]
    assert [order.amount for _, order in gateway.placed_orders] == [Decimal("10.0"), Decimal("10.0")]


def test_negative_target_selects_a_put(gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock, target=-0.3)

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.success is True
    assert result.new_instrument == "BTC-9JAN26-55000-P"


def test_close_leg_failure_leaves_ledger_untouched(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)
    gateway.fail("place_order", CURRENT)

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.success is False
    assert result.reason == adjustment_executor.REASON_CLOSE_FAILED
    assert result.inconsistent is False
    assert gateway.placed_orders == []
    assert ledger.get_record(record.id) == record
    assert ledger.get_latest_record(ACCOUNT.name, BEST) is None


def test_open_leg_failure_is_reported_inconsistent(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)
    gateway.fail("place_order", BEST)

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.success is False
    assert result.reason == adjustment_executor.REASON_INCONSISTENT
    assert result.inconsistent is True
    assert result.close_order_id == gateway.placed_orders[0][1].order_id
    assert CURRENT in (result.error or "") and BEST in (result.error or "")
    assert ledger.get_record(record.id) == record


def test_open_leg_transport_error_is_still_reported_inconsistent(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)
    gateway.fail("place_order", BEST, ConnectionResetError(104, "Connection reset by peer"))

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.success is False
    assert result.reason == adjustment_executor.REASON_INCONSISTENT
    assert result.inconsistent is True
    assert [order.instrument_name for _, order in gateway.placed_orders] == [CURRENT]
    assert result.close_order_id == gateway.placed_orders[0][1].order_id
    assert "Connection reset by peer" in (result.error or "")
    assert ledger.get_record(record.id) == record


def test_close_leg_transport_error_is_a_plain_failure(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)
    gateway.fail("place_order", CURRENT, ConnectionResetError(104, "Connection reset by peer"))

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.success is False
    assert result.reason == adjustment_executor.REASON_CLOSE_FAILED
    assert result.inconsistent is False
    assert gateway.placed_orders == []
    assert ledger.get_record(record.id) == record


def test_wide_spread_places_no_orders(gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)
    gateway.set_quote(quote(CURRENT, 0.5, bid="0.0050", ask="0.0100"))

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.success is False
    assert result.reason == adjustment_executor.REASON_SPREAD
    assert result.new_instrument == BEST
    assert gateway.placed_orders == []


def test_no_replacement_past_expiry_cutoff(gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock, min_expire_days=60)

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.reason == adjustment_executor.REASON_NO_REPLACEMENT
    assert gateway.placed_orders == []


def test_disabled_and_unparseable_records_are_not_adjusted(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock, min_expire_days=None)
    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)
    assert result.reason == adjustment_executor.REASON_DISABLED

    perp = ledger.upsert_position(position_input(ACCOUNT.name, "BTC-PERPETUAL", 0.3))
    result = executor.adjust(ACCOUNT.name, position("BTC-PERPETUAL", "10", 5.0), perp, credentials)
    assert result.reason == adjustment_executor.REASON_BAD_INSTRUMENT
    assert gateway.placed_orders == []


def test_listing_failure_is_upstream_unavailable(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)
    gateway.fail("list_instruments", "BTC")

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.reason == adjustment_executor.REASON_UPSTREAM
    assert "list_instruments" in (result.error or "")


def test_current_quote_failure_is_upstream_unavailable(
    gateway: SimulatedGateway, ledger: DeltaTargetLedger, clock: FixedClock
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)
    gateway.fail("get_quote", CURRENT)

    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.reason == adjustment_executor.REASON_UPSTREAM
    assert result.new_instrument == BEST
    assert gateway.placed_orders == []


def test_ledger_failure_after_both_legs_is_inconsistent(
    gateway: SimulatedGateway,
    ledger: DeltaTargetLedger,
    clock: FixedClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    executor, record, credentials = _setup(gateway, ledger, clock)

    def _raise(*_args, **_kwargs):  # type: ignore[no-untyped-def]
        raise DuplicateRecord("clash")

    monkeypatch.setattr(ledger, "replace_record", _raise)
    result = executor.adjust(ACCOUNT.name, position(CURRENT, "10", 5.0), record, credentials)

    assert result.reason == adjustment_executor.REASON_LEDGER
    assert result.inconsistent is True
    assert result.close_order_id is not None and result.open_order_id is not None
    assert len(gateway.placed_orders) == 2
