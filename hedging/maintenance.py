"""Daily purge of stale order records and records on expired instruments."""

from __future__ import annotations

import logging
import threading

from hedging.common import HedgerClock, utc_iso
from hedging.errors import SweepResult
from hedging.ledger import DeltaTargetLedger

logger = logging.getLogger(__name__)


class MaintenanceSweeper:
    """Idempotent ledger sweep; a second concurrent run is refused, not queued."""

    def __init__(self, ledger: DeltaTargetLedger, *, grace_days: int = 7, clock: HedgerClock | None = None) -> None:
        if grace_days < 0:
            raise ValueError("grace_days must be >= 0")
        self._ledger = ledger
        self._grace_days = grace_days
        self._clock = clock or HedgerClock()
        self._running = threading.Lock()

    @property
    def grace_days(self) -> int:
        return self._grace_days

    def run(self) -> SweepResult:
        if not self._running.acquire(blocking=False):
            logger.info("Maintenance sweep still running, skipping this run")
            return SweepResult(success=False, reason="already running")
        try:
            started_at = self._clock.now_utc()
            deleted_orders = self._ledger.delete_expired_orders(self._grace_days)
            deleted_options = self._ledger.delete_expired_option_records(self._grace_days)
            finished_at = self._clock.now_utc()
        finally:
            self._running.release()
        logger.info(
            "Maintenance sweep removed %s order record(s) and %s expired-option record(s)",
            deleted_orders,
            deleted_options,
        )
        return SweepResult(
            success=True,
            reason="completed",
            deleted_orders=deleted_orders,
            deleted_expired_options=deleted_options,
            details={
                "grace_days": self._grace_days,
                "started_at": utc_iso(started_at),
                "finished_at": utc_iso(finished_at),
            },
        )
