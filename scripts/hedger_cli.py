#!/usr/bin/env python3
"""Delta-target reconciliation operator CLI and process entry point."""

from __future__ import annotations

import argparse
from dataclasses import asdict, dataclass
import json
import logging
from pathlib import Path
import signal
import sys
import time
from typing import Any, Optional, Sequence

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sqlalchemy import Engine

from backend.db.enums import RecordType
from backend.db.migrate import upgrade_to_head
from backend.db.session import create_ledger_engine, create_session_factory
from hedging.adjustment_executor import AdjustmentExecutor
from hedging.common import HedgerClock
from hedging.config import AccountConfig, HedgerConfig, enabled_accounts, load_accounts, load_hedger_config
from hedging.deribit_gateway import DeribitGateway
from hedging.errors import HedgerError
from hedging.gateway_contract import MarketDataGateway
from hedging.ledger import UNSET, DeltaTargetInput, DeltaTargetLedger, RecordPatch, RecordQuery
from hedging.maintenance import MaintenanceSweeper
from hedging.notifier import LoggingNotifier
from hedging.reconciliation_poller import ReconciliationPoller
from hedging.scheduler import ReconciliationScheduler
from hedging.service import DeltaTargetService, status_payload, summarize_cycles
from hedging.simulated_gateway import SimulatedGateway, seed_demo_market

logger = logging.getLogger("hedger_cli")

SIMULATED_ACCOUNT = AccountConfig(name="simulated", client_id="simulated", client_secret="simulated")


@dataclass(frozen=True)
class Runtime:
    """Everything the commands need, constructed once."""

    config: HedgerConfig
    engine: Engine
    ledger: DeltaTargetLedger
    gateway: MarketDataGateway
    scheduler: ReconciliationScheduler
    service: DeltaTargetService


def _build_gateway(cfg: HedgerConfig, clock: HedgerClock) -> MarketDataGateway:
    if cfg.use_simulated_gateway:
        gateway = SimulatedGateway(clock=clock)
        seed_demo_market(gateway, clock.now_utc())
        logger.info("Using simulated gateway")
        return gateway
    logger.info("Using venue gateway at %s", cfg.venue_base_url)
    return DeribitGateway(base_url=cfg.venue_base_url, timeout_seconds=cfg.gateway_timeout_seconds, clock=clock)


def _accounts(cfg: HedgerConfig) -> tuple[AccountConfig, ...]:
    accounts = enabled_accounts(load_accounts(cfg.accounts_file))
    if not accounts and cfg.use_simulated_gateway:
        return (SIMULATED_ACCOUNT,)
    if not accounts:
        logger.warning("No enabled accounts in %s", cfg.accounts_file)
    return accounts


def build_runtime(cfg: HedgerConfig, *, migrate: bool = True) -> Runtime:
    clock = HedgerClock()
    engine = create_ledger_engine(cfg.database_url)
    if migrate:
        upgrade_to_head(engine)
    ledger = DeltaTargetLedger(create_session_factory(engine), clock=clock)
    gateway = _build_gateway(cfg, clock)
    executor = AdjustmentExecutor(
        gateway=gateway,
        ledger=ledger,
        clock=clock,
        spread_ratio_threshold=cfg.spread_ratio_threshold,
        smart_price_ratio=cfg.smart_price_ratio,
    )
    poller = ReconciliationPoller(
        gateway=gateway,
        ledger=ledger,
        executor=executor,
        notifier=LoggingNotifier(),
        accounts=_accounts(cfg),
        clock=clock,
    )
    sweeper = MaintenanceSweeper(ledger, grace_days=cfg.order_grace_days, clock=clock)
    scheduler = ReconciliationScheduler(
        poller=poller,
        sweeper=sweeper,
        position_interval_minutes=cfg.position_poll_minutes,
        order_interval_minutes=cfg.order_poll_minutes,
        maintenance_interval_hours=cfg.maintenance_interval_hours,
        clock=clock,
    )
    service = DeltaTargetService(ledger=ledger, poller=poller, scheduler=scheduler, clock=clock)
    return Runtime(config=cfg, engine=engine, ledger=ledger, gateway=gateway, scheduler=scheduler, service=service)


def _print(payload: Any) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _query_from_args(args: argparse.Namespace) -> RecordQuery:
    return RecordQuery(
        account_id=args.account,
        instrument_name=args.instrument,
        order_id=args.order_id,
        tv_id=args.tv_id,
        record_type=RecordType(args.record_type) if args.record_type else None,
    )


def _add_query_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account", default=None)
    parser.add_argument("--instrument", default=None)
    parser.add_argument("--order-id", default=None)
    parser.add_argument("--tv-id", type=int, default=None)
    parser.add_argument("--record-type", choices=[item.value for item in RecordType], default=None)


def _run_daemon(runtime: Runtime, max_seconds: Optional[float]) -> int:
    scheduler = runtime.scheduler
    if not runtime.config.auto_start:
        logger.info("HEDGER_AUTO_START is off; not starting timers")
        _print(status_payload(scheduler.status()))
        return 0

    def _request_stop(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, stopping", signum)
        scheduler.stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    scheduler.start()
    deadline = None if max_seconds is None else time.monotonic() + max_seconds
    try:
        while scheduler.active:
            if deadline is not None and time.monotonic() >= deadline:
                break
            scheduler.wait(1.0)
    finally:
        scheduler.stop()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delta-target reconciliation CLI")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("migrate", help="Apply ledger migrations")

    daemon_cmd = subparsers.add_parser("daemon", help="Run the timers until interrupted")
    daemon_cmd.add_argument("--max-seconds", type=float, default=None)

    run_once = subparsers.add_parser("run-once", help="Run one position pass (and order pass)")
    run_once.add_argument("--account", default=None)
    run_once.add_argument("--orders", action="store_true", help="Also run the open-order pass")

    subparsers.add_parser("sweep", help="Run the maintenance sweep now")
    subparsers.add_parser("status", help="Show scheduler status")

    list_cmd = subparsers.add_parser("list", help="List delta-target records")
    _add_query_args(list_cmd)

    upsert = subparsers.add_parser("upsert", help="Create or refresh a delta-target record")
    upsert.add_argument("--account", required=True)
    upsert.add_argument("--instrument", required=True)
    upsert.add_argument("--target-delta", type=float, required=True)
    upsert.add_argument("--record-type", choices=[item.value for item in RecordType], default=RecordType.POSITION.value)
    upsert.add_argument("--order-id", default=None)
    upsert.add_argument("--move-position-delta", type=float, default=0.0)
    upsert.add_argument("--min-expire-days", type=int, default=None)
    upsert.add_argument("--tv-id", type=int, default=None)

    update = subparsers.add_parser("update", help="Patch a delta-target record")
    update.add_argument("record_id", type=int)
    update.add_argument("--instrument", default=None)
    update.add_argument("--target-delta", type=float, default=None)
    update.add_argument("--move-position-delta", type=float, default=None)
    update.add_argument("--min-expire-days", type=int, default=None)
    update.add_argument("--disable-adjustment", action="store_true", help="Set min_expire_days to null")
    update.add_argument("--tv-id", type=int, default=None)

    delete = subparsers.add_parser("delete", help="Delete a record by id, or every record matching filters")
    delete.add_argument("record_id", type=int, nargs="?", default=None)
    _add_query_args(delete)

    stats = subparsers.add_parser("stats", help="Ledger statistics and summaries")
    stats.add_argument("--account", default=None)
    stats.add_argument("--instrument", default=None)

    export = subparsers.add_parser("export", help="Export records as JSON")
    _add_query_args(export)
    export.add_argument("--output", type=Path, default=None)

    return parser


def _dispatch(args: argparse.Namespace, runtime: Runtime) -> int:
    service = runtime.service

    if args.command == "migrate":
        _print({"revision": upgrade_to_head(runtime.engine)})
        return 0

    if args.command == "daemon":
        return _run_daemon(runtime, args.max_seconds)

    if args.command == "run-once":
        payload = {"positions": summarize_cycles(service.trigger_reconciliation(args.account))}
        if args.orders:
            payload["orders"] = summarize_cycles(service.trigger_order_reconciliation())
        _print(payload)
        return 0 if payload["positions"]["failed"] == 0 else 1

    if args.command == "sweep":
        result = service.run_maintenance_sweep()
        _print(asdict(result))
        return 0 if result.success else 1

    if args.command == "status":
        _print(status_payload(service.get_scheduler_status()))
        return 0

    if args.command == "list":
        _print([record.as_payload() for record in service.list_delta_targets(_query_from_args(args))])
        return 0

    if args.command == "upsert":
        record = service.upsert_delta_target(
            DeltaTargetInput(
                account_id=args.account,
                instrument_name=args.instrument,
                target_delta=args.target_delta,
                record_type=RecordType(args.record_type),
                order_id=args.order_id,
                move_position_delta=args.move_position_delta,
                min_expire_days=args.min_expire_days,
                tv_id=args.tv_id,
            )
        )
        _print(record.as_payload())
        return 0

    if args.command == "update":
        min_expire_days = None if args.disable_adjustment else (args.min_expire_days if args.min_expire_days is not None else UNSET)
        patch = RecordPatch(
            instrument_name=args.instrument if args.instrument is not None else UNSET,
            target_delta=args.target_delta if args.target_delta is not None else UNSET,
            move_position_delta=args.move_position_delta if args.move_position_delta is not None else UNSET,
            min_expire_days=min_expire_days,
            tv_id=args.tv_id if args.tv_id is not None else UNSET,
        )
        record = service.update_delta_target(args.record_id, patch)
        if record is None:
            _print({"found": False, "record_id": args.record_id})
            return 1
        _print(record.as_payload())
        return 0

    if args.command == "delete":
        if args.record_id is not None:
            deleted = service.delete_delta_target(args.record_id)
            _print({"deleted": deleted, "record_id": args.record_id})
            return 0 if deleted else 1
        _print({"deleted_count": service.delete_delta_targets(_query_from_args(args))})
        return 0

    if args.command == "stats":
        _print(
            {
                "stats": asdict(service.get_stats()),
                "accounts": [asdict(item) for item in service.get_account_summary(args.account)],
                "instruments": [asdict(item) for item in service.get_instrument_summary(args.instrument)],
            }
        )
        return 0

    if args.command == "export":
        document = service.export_delta_targets(_query_from_args(args))
        if args.output is not None:
            args.output.parent.mkdir(parents=True, exist_ok=True)
            args.output.write_text(document, encoding="utf-8")
            _print({"output": str(args.output)})
        else:
            print(document)
        return 0

    raise SystemExit(f"Unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = load_hedger_config()
    runtime = build_runtime(cfg, migrate=True)
    try:
        return _dispatch(args, runtime)
    except HedgerError as exc:
        _print({"error": type(exc).__name__, "message": str(exc)})
        return 2
    finally:
        runtime.scheduler.stop()
        runtime.engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
