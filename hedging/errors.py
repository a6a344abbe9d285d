"""Error taxonomy and structured outcome types for the hedging runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


class HedgerError(Exception):
    """Base class for hedging runtime errors."""


class ValidationError(HedgerError):
    """Input rejected before it reaches the ledger."""


class DuplicateRecord(HedgerError):
    """A uniqueness constraint of the ledger was violated."""


class UpstreamUnavailable(HedgerError):
    """A venue call failed or timed out."""


class InconsistentAdjustment(HedgerError):
    """One leg of a close/open roll succeeded and the other failed."""

    def __init__(self, message: str, *, closed_instrument: str, open_instrument: str) -> None:
        super().__init__(message)
        self.closed_instrument = closed_instrument
        self.open_instrument = open_instrument


@dataclass(frozen=True)
class AdjustmentResult:
    """Outcome of one roll attempt."""

    success: bool
    reason: str
    old_instrument: str
    new_instrument: Optional[str] = None
    error: Optional[str] = None
    inconsistent: bool = False
    close_order_id: Optional[str] = None
    open_order_id: Optional[str] = None
    new_record_id: Optional[int] = None


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one account's reconciliation pass."""

    account_id: str
    request_id: str
    success: bool
    reason: str
    error: Optional[str] = None
    positions: tuple[Mapping[str, Any], ...] = ()
    orders: tuple[Mapping[str, Any], ...] = ()
    adjustments: tuple[AdjustmentResult, ...] = ()
    promoted_record_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one maintenance sweep."""

    success: bool
    reason: str
    deleted_orders: int = 0
    deleted_expired_options: int = 0
    error: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)
