from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backend.db.enums import OptionSide
from hedging.errors import ValidationError
from hedging.instruments import option_type_of, parse_instrument, parse_instrument_expiry


def test_parse_instrument_expiry_reads_ddmmmyy_at_0800_utc() -> None:
    assert parse_instrument_expiry("BTC-27JUN25-60000-C") == datetime(2025, 6, 27, 8, tzinfo=timezone.utc)
    assert parse_instrument_expiry("SOL_USDC-3jan26-150-P") == datetime(2026, 1, 3, 8, tzinfo=timezone.utc)
    assert parse_instrument_expiry("ETH-31DEC25") == datetime(2025, 12, 31, 8, tzinfo=timezone.utc)


def test_parse_instrument_expiry_rolls_day_overflow_forward() -> None:
    assert parse_instrument_expiry("BTC-29FEB25-60000-C") == datetime(2025, 3, 1, 8, tzinfo=timezone.utc)
    assert parse_instrument_expiry("BTC-31APR25-60000-C") == datetime(2025, 5, 1, 8, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "name",
    ["BTC-PERPETUAL", "BTC", "BTC-0JAN26-1-C", "BTC-32JAN26-1-C", "BTC-1XYZ26-1-C", "BTC-1JAN2026-1-C", ""],
)
def test_parse_instrument_expiry_returns_none_for_unparseable_names(name: str) -> None:
    assert parse_instrument_expiry(name) is None


def test_parse_instrument_currency_and_underlying() -> None:
    assert parse_instrument("BTC-27JUN25-60000-C") == ("BTC", "BTC")
    assert parse_instrument("SOL_USDC-27JUN25-150-P") == ("USDC", "SOL")

    with pytest.raises(ValidationError, match="Cannot parse"):
        parse_instrument("BTC-PERPETUAL")
    with pytest.raises(ValidationError):
        parse_instrument("_USDC-27JUN25-150-P")


def test_option_type_of() -> None:
    assert option_type_of("BTC-27JUN25-60000-C") == OptionSide.CALL
    assert option_type_of("BTC-27JUN25-60000-p") == OptionSide.PUT
    assert option_type_of("BTC-PERPETUAL") is None
