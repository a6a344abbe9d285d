"""Delta-target reconciliation runtime: ledger, selection, rolling and scheduling."""

from hedging.adjustment_executor import AdjustmentExecutor
from hedging.config import AccountConfig, HedgerConfig, load_accounts, load_hedger_config
from hedging.errors import (
    AdjustmentResult,
    CycleResult,
    DuplicateRecord,
    HedgerError,
    InconsistentAdjustment,
    SweepResult,
    UpstreamUnavailable,
    ValidationError,
)
from hedging.gateway_contract import MarketDataGateway
from hedging.ledger import DeltaTargetInput, DeltaTargetLedger, DeltaTargetRecord, RecordPatch, RecordQuery
from hedging.maintenance import MaintenanceSweeper
from hedging.option_selector import ReplacementCandidate, select_replacement
from hedging.reconciliation_poller import ReconciliationPoller, drift_triggered
from hedging.scheduler import ReconciliationScheduler, SchedulerStatus
from hedging.service import DeltaTargetService

__all__ = [
    "AccountConfig",
    "AdjustmentExecutor",
    "AdjustmentResult",
    "CycleResult",
    "DeltaTargetInput",
    "DeltaTargetLedger",
    "DeltaTargetRecord",
    "DeltaTargetService",
    "DuplicateRecord",
    "HedgerConfig",
    "HedgerError",
    "InconsistentAdjustment",
    "MaintenanceSweeper",
    "MarketDataGateway",
    "ReconciliationPoller",
    "ReconciliationScheduler",
    "RecordPatch",
    "RecordQuery",
    "ReplacementCandidate",
    "SchedulerStatus",
    "SweepResult",
    "UpstreamUnavailable",
    "ValidationError",
    "drift_triggered",
    "load_accounts",
    "load_hedger_config",
    "select_replacement",
]
