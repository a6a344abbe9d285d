"""Venue instrument-name parsing.

Option names look like ``BTC-27JUN25-60000-C`` (inverse, settled in the
underlying) or ``SOL_USDC-27JUN25-150-P`` (linear, settled in USDC). The
second dash-separated token encodes the expiry date; options expire at
08:00 UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import re
from typing import Optional

from backend.db.enums import OptionSide
from hedging.errors import ValidationError

EXPIRY_HOUR_UTC = 8

_MONTHS = {
    "JAN": 1,
    "FEB": 2,
    "MAR": 3,
    "APR": 4,
    "MAY": 5,
    "JUN": 6,
    "JUL": 7,
    "AUG": 8,
    "SEP": 9,
    "OCT": 10,
    "NOV": 11,
    "DEC": 12,
}

_EXPIRY_RE = re.compile(r"^(\d{1,2})([A-Z]{3})(\d{2})$")


def parse_instrument_expiry(instrument_name: str) -> Optional[datetime]:
    """Return the expiry encoded in an instrument name, or None.

    Days past the end of the month roll forward (``31APR25`` is 1 May),
    matching how the venue's own tooling treats such names.
    """
    parts = instrument_name.split("-")
    if len(parts) < 2:
        return None
    match = _EXPIRY_RE.match(parts[1].upper())
    if match is None:
        return None
    day = int(match.group(1))
    month = _MONTHS.get(match.group(2))
    if month is None or not 1 <= day <= 31:
        return None
    year = 2000 + int(match.group(3))
    first_of_month = datetime(year, month, 1, EXPIRY_HOUR_UTC, tzinfo=timezone.utc)
    return first_of_month + timedelta(days=day - 1)


def parse_instrument(instrument_name: str) -> tuple[str, str]:
    """Return ``(settlement_currency, underlying)`` for an option name."""
    if "_USDC-" in instrument_name:
        underlying = instrument_name.split("_USDC-", 1)[0]
        if not underlying:
            raise ValidationError(f"Cannot parse instrument name: {instrument_name}")
        return "USDC", underlying
    parts = instrument_name.split("-")
    if len(parts) >= 4 and parts[0]:
        return parts[0], parts[0]
    raise ValidationError(f"Cannot parse instrument name: {instrument_name}")


def option_type_of(instrument_name: str) -> Optional[OptionSide]:
    suffix = instrument_name.rsplit("-", 1)[-1].upper()
    if suffix == "C":
        return OptionSide.CALL
    if suffix == "P":
        return OptionSide.PUT
    return None
