"""Shared helpers for the hedging runtime."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import secrets


@dataclass(frozen=True)
class HedgerClock:
    """Wall clock in UTC; tests substitute a fixed subclass."""

    def now_utc(self) -> datetime:
        """Current time, timezone-aware UTC."""
        return datetime.now(tz=timezone.utc)


def utc_iso(ts: datetime) -> str:
    """RFC3339 UTC string with a Z suffix."""
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def ensure_utc(ts: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from SQLite."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def new_request_id(now: datetime) -> str:
    """Correlation id carried through one reconciliation pass."""
    return f"poll_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


def to_decimal(value: object) -> Decimal:
    """Convert venue numbers to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def decimal_to_str(value: Decimal) -> str:
    """Plain-notation decimal string without trailing zeros."""
    return format(value.normalize(), "f") if value != 0 else "0"
