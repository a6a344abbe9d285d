"""Outward-facing operations for webhook handlers and operator tooling."""

from __future__ import annotations

from dataclasses import asdict
import logging
from typing import Any, Mapping, Optional, Sequence

from hedging.common import HedgerClock, new_request_id
from hedging.errors import CycleResult, SweepResult
from hedging.ledger import (
    AccountDeltaSummary,
    DeltaTargetInput,
    DeltaTargetLedger,
    DeltaTargetRecord,
    InstrumentDeltaSummary,
    LedgerStats,
    RecordPatch,
    RecordQuery,
)
from hedging.reconciliation_poller import ReconciliationPoller
from hedging.scheduler import ReconciliationScheduler, SchedulerStatus

logger = logging.getLogger(__name__)


def _as_input(payload: DeltaTargetInput | Mapping[str, Any]) -> DeltaTargetInput:
    if isinstance(payload, DeltaTargetInput):
        return payload
    return DeltaTargetInput.from_mapping(payload)


def _as_patch(patch: RecordPatch | Mapping[str, Any]) -> RecordPatch:
    if isinstance(patch, RecordPatch):
        return patch
    return RecordPatch.from_mapping(patch)


class DeltaTargetService:
    """Facade over the ledger and scheduler; holds no state of its own."""

    def __init__(
        self,
        *,
        ledger: DeltaTargetLedger,
        poller: ReconciliationPoller,
        scheduler: ReconciliationScheduler,
        clock: HedgerClock | None = None,
    ) -> None:
        self._ledger = ledger
        self._poller = poller
        self._scheduler = scheduler
        self._clock = clock or HedgerClock()

    # ---- delta targets ----------------------------------------------

    def upsert_delta_target(self, payload: DeltaTargetInput | Mapping[str, Any]) -> DeltaTargetRecord:
        return self._ledger.upsert_record(_as_input(payload))

    def batch_upsert_delta_targets(
        self, payloads: Sequence[DeltaTargetInput | Mapping[str, Any]]
    ) -> list[DeltaTargetRecord]:
        return self._ledger.batch_upsert([_as_input(payload) for payload in payloads])

    def get_delta_target(self, record_id: int) -> Optional[DeltaTargetRecord]:
        return self._ledger.get_record(record_id)

    def list_delta_targets(self, query: RecordQuery | None = None) -> list[DeltaTargetRecord]:
        return self._ledger.get_records(query)

    def update_delta_target(
        self, record_id: int, patch: RecordPatch | Mapping[str, Any]
    ) -> Optional[DeltaTargetRecord]:
        return self._ledger.update_record(record_id, _as_patch(patch))

    def delete_delta_target(self, record_id: int) -> bool:
        return self._ledger.delete_record(record_id)

    def delete_delta_targets(self, query: RecordQuery) -> int:
        return self._ledger.delete_records(query)

    # ---- reconciliation ---------------------------------------------

    def _skipped(self, account_ids: Sequence[str]) -> list[CycleResult]:
        request_id = new_request_id(self._clock.now_utc())
        return [
            CycleResult(
                account_id=account_id,
                request_id=request_id,
                success=False,
                reason="cycle already running",
            )
            for account_id in account_ids
        ]

    def trigger_reconciliation(self, account_id: str | None = None) -> list[CycleResult]:
        """Run a position pass now; refused per account while a timer pass is in flight."""
        run = self._scheduler.trigger_positions(account_id)
        if not run.fired:
            logger.info("Manual reconciliation skipped: a position pass is already running")
            return self._skipped([account_id] if account_id else list(self._poller.account_ids))
        return list(run.result)

    def trigger_order_reconciliation(self) -> list[CycleResult]:
        run = self._scheduler.trigger_orders()
        if not run.fired:
            return self._skipped(list(self._poller.account_ids))
        return list(run.result)

    def run_maintenance_sweep(self) -> SweepResult:
        run = self._scheduler.trigger_maintenance()
        if not run.fired:
            return SweepResult(success=False, reason="already running")
        return run.result

    def get_scheduler_status(self) -> SchedulerStatus:
        return self._scheduler.status()

    # ---- reporting ----------------------------------------------------

    def get_stats(self) -> LedgerStats:
        return self._ledger.get_stats()

    def get_account_summary(self, account_id: str | None = None) -> list[AccountDeltaSummary]:
        return self._ledger.get_account_summary(account_id)

    def get_instrument_summary(self, instrument_name: str | None = None) -> list[InstrumentDeltaSummary]:
        return self._ledger.get_instrument_summary(instrument_name)

    def export_delta_targets(self, query: RecordQuery | None = None) -> str:
        return self._ledger.export_data(query)


def summarize_cycles(results: Sequence[CycleResult]) -> dict[str, Any]:
    """Compact JSON-able view of a pass."""
    return {
        "accounts": len(results),
        "failed": sum(1 for result in results if not result.success),
        "adjustments": sum(len(result.adjustments) for result in results),
        "results": [asdict(result) for result in results],
    }


def status_payload(status: SchedulerStatus) -> dict[str, Any]:
    return asdict(status)
