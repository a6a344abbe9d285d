"""Per-account reconciliation of live positions and orders against the ledger."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from backend.db.enums import RecordType
from hedging.adjustment_executor import AdjustmentExecutor
from hedging.common import HedgerClock, new_request_id
from hedging.config import AccountConfig
from hedging.errors import AdjustmentResult, CycleResult, UpstreamUnavailable
from hedging.gateway_contract import Credentials, MarketDataGateway, OpenOrder, Position
from hedging.ledger import DeltaTargetInput, DeltaTargetLedger, DeltaTargetRecord, RecordQuery
from hedging.notifier import (
    Notifier,
    format_adjustment_failure,
    format_adjustment_start,
    format_adjustment_success,
    format_cycle_failure,
    safe_notify,
)

logger = logging.getLogger(__name__)

ShouldContinue = Callable[[], bool]


def drift_triggered(target_delta: float, per_unit_delta: float) -> bool:
    """Roll when the observed per-unit delta is larger in magnitude than the target."""
    return abs(target_delta) < abs(per_unit_delta)


class ReconciliationPoller:
    """Runs position and order passes one account at a time."""

    def __init__(
        self,
        *,
        gateway: MarketDataGateway,
        ledger: DeltaTargetLedger,
        executor: AdjustmentExecutor,
        notifier: Notifier,
        accounts: Sequence[AccountConfig],
        clock: HedgerClock | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._executor = executor
        self._notifier = notifier
        self._accounts = {account.name: account for account in accounts if account.enabled}
        self._clock = clock or HedgerClock()

    @property
    def account_ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._accounts))

    def _resolve(self, account: AccountConfig | str) -> Optional[AccountConfig]:
        if isinstance(account, AccountConfig):
            return account
        return self._accounts.get(account)

    def _failed(self, account_id: str, request_id: str, reason: str, error: str) -> CycleResult:
        logger.warning("[%s] Cycle failed for account=%s: %s (%s)", request_id, account_id, reason, error)
        safe_notify(
            self._notifier,
            account_id,
            "Reconciliation cycle failed",
            format_cycle_failure(account_id, request_id, f"{reason}: {error}", self._clock.now_utc()),
        )
        return CycleResult(account_id=account_id, request_id=request_id, success=False, reason=reason, error=error)

    def _authenticate(self, account: AccountConfig, request_id: str) -> Credentials | CycleResult:
        try:
            return self._gateway.authenticate(account)
        except Exception as exc:
            return self._failed(account.name, request_id, "authentication failed", str(exc))

    # ---- positions ----------------------------------------------------

    def _adjust_position(
        self,
        account_id: str,
        position: Position,
        record: DeltaTargetRecord,
        credentials: Credentials,
        request_id: str,
    ) -> AdjustmentResult:
        safe_notify(
            self._notifier,
            account_id,
            f"Delta adjustment started: {position.instrument_name}",
            format_adjustment_start(account_id, position, record, request_id, self._clock.now_utc()),
        )
        try:
            result = self._executor.adjust(account_id, position, record, credentials, request_id=request_id)
        except SQLAlchemyError:
            raise
        except Exception as exc:
            # Isolated per position; only ledger storage errors escape.
            logger.exception("[%s] Unexpected error adjusting %s", request_id, position.instrument_name)
            result = AdjustmentResult(
                success=False,
                reason="unexpected error",
                old_instrument=position.instrument_name,
                error=str(exc),
            )
        if result.success:
            safe_notify(
                self._notifier,
                account_id,
                f"Delta adjustment succeeded: {result.old_instrument} -> {result.new_instrument}",
                format_adjustment_success(account_id, position, record, result, request_id, self._clock.now_utc()),
            )
        else:
            safe_notify(
                self._notifier,
                account_id,
                f"Delta adjustment failed: {position.instrument_name} ({result.reason})",
                format_adjustment_failure(account_id, position, record, result, request_id, self._clock.now_utc()),
            )
        return result

    def _reconcile_positions(self, account: AccountConfig, request_id: str) -> CycleResult:
        credentials = self._authenticate(account, request_id)
        if isinstance(credentials, CycleResult):
            return credentials
        try:
            positions = self._gateway.get_positions(credentials, "any", "option")
        except Exception as exc:
            return self._failed(account.name, request_id, "position fetch failed", str(exc))

        live = [position for position in positions if position.size != 0]
        logger.info("[%s] account=%s open option positions=%s", request_id, account.name, len(live))

        adjustments: list[AdjustmentResult] = []
        for position in live:
            record = self._ledger.get_latest_record(account.name, position.instrument_name, RecordType.POSITION)
            if record is None or not record.adjustment_enabled:
                continue
            per_unit = position.per_unit_delta()
            if not drift_triggered(record.target_delta, per_unit):
                logger.info(
                    "[%s] %s within target: per_unit=%.4f target=%.4f",
                    request_id,
                    position.instrument_name,
                    per_unit,
                    record.target_delta,
                )
                continue
            logger.info(
                "[%s] Drift on %s: per_unit=%.4f target=%.4f record=%s",
                request_id,
                position.instrument_name,
                per_unit,
                record.target_delta,
                record.id,
            )
            adjustments.append(self._adjust_position(account.name, position, record, credentials, request_id))

        inconsistent = [result for result in adjustments if result.inconsistent]
        failed = [result for result in adjustments if not result.success]
        if inconsistent:
            success, reason = False, "inconsistent adjustment"
        elif failed:
            success, reason = True, f"completed with {len(failed)} failed adjustment(s)"
        else:
            success, reason = True, "completed"
        return CycleResult(
            account_id=account.name,
            request_id=request_id,
            success=success,
            reason=reason,
            error="; ".join(result.error for result in inconsistent if result.error) or None,
            positions=tuple(position.as_payload() for position in live),
            adjustments=tuple(adjustments),
        )

    def poll_account(self, account: AccountConfig | str, *, request_id: str | None = None) -> CycleResult:
        """One position pass for one account.

        Venue and adjustment failures come back as a failed result; ledger
        storage errors propagate.
        """
        request_id = request_id or new_request_id(self._clock.now_utc())
        resolved = self._resolve(account)
        account_id = account if isinstance(account, str) else account.name
        if resolved is None:
            return CycleResult(
                account_id=account_id,
                request_id=request_id,
                success=False,
                reason="unknown account",
                error=f"account {account_id} is not configured or disabled",
            )
        try:
            return self._reconcile_positions(resolved, request_id)
        except SQLAlchemyError:
            # Ledger storage errors propagate to the caller.
            raise
        except Exception as exc:
            logger.exception("[%s] Unexpected error reconciling account=%s", request_id, account_id)
            return self._failed(account_id, request_id, "unexpected error", str(exc))

    # ---- orders -------------------------------------------------------

    def _promote_filled_orders(
        self,
        account: AccountConfig,
        credentials: Credentials,
        open_ids: set[str],
        request_id: str,
    ) -> list[int]:
        stale = [
            record
            for record in self._ledger.get_records(RecordQuery(account_id=account.name, record_type=RecordType.ORDER))
            if record.order_id not in open_ids
        ]
        if not stale:
            return []
        held = {
            position.instrument_name
            for position in self._gateway.get_positions(credentials, "any", "option")
            if position.size != 0
        }
        promoted: list[int] = []
        for record in stale:
            if record.instrument_name not in held:
                continue
            replacement = self._ledger.replace_record(
                record.id,
                DeltaTargetInput(
                    account_id=record.account_id,
                    instrument_name=record.instrument_name,
                    target_delta=record.target_delta,
                    record_type=RecordType.POSITION,
                    move_position_delta=record.move_position_delta,
                    min_expire_days=record.min_expire_days,
                    tv_id=record.tv_id,
                ),
            )
            logger.info(
                "[%s] Order %s no longer open; record %s promoted to position record %s",
                request_id,
                record.order_id,
                record.id,
                replacement.id,
            )
            promoted.append(replacement.id)
        return promoted

    def _order_payload(self, order: OpenOrder) -> dict:
        payload = order.as_payload()
        record = self._ledger.get_record_by_order_id(order.order_id)
        payload["record_id"] = None if record is None else record.id
        return payload

    def _reconcile_orders(self, account: AccountConfig, request_id: str) -> CycleResult:
        credentials = self._authenticate(account, request_id)
        if isinstance(credentials, CycleResult):
            return credentials
        try:
            orders = self._gateway.get_open_orders(credentials, "any", "option")
        except Exception as exc:
            return self._failed(account.name, request_id, "order fetch failed", str(exc))

        live = [order for order in orders if order.amount != 0]
        logger.info("[%s] account=%s open option orders=%s", request_id, account.name, len(live))
        try:
            promoted = self._promote_filled_orders(account, credentials, {order.order_id for order in live}, request_id)
        except UpstreamUnavailable as exc:
            logger.warning("[%s] Order promotion skipped for account=%s: %s", request_id, account.name, exc)
            promoted = []
        return CycleResult(
            account_id=account.name,
            request_id=request_id,
            success=True,
            reason="completed",
            orders=tuple(self._order_payload(order) for order in live),
            promoted_record_ids=tuple(promoted),
        )

    def poll_account_orders(self, account: AccountConfig | str, *, request_id: str | None = None) -> CycleResult:
        """One open-order pass for one account."""
        request_id = request_id or new_request_id(self._clock.now_utc())
        resolved = self._resolve(account)
        account_id = account if isinstance(account, str) else account.name
        if resolved is None:
            return CycleResult(
                account_id=account_id,
                request_id=request_id,
                success=False,
                reason="unknown account",
                error=f"account {account_id} is not configured or disabled",
            )
        try:
            return self._reconcile_orders(resolved, request_id)
        except SQLAlchemyError:
            raise
        except Exception as exc:
            logger.exception("[%s] Unexpected error polling orders for account=%s", request_id, account_id)
            return self._failed(account_id, request_id, "unexpected error", str(exc))

    # ---- all accounts -------------------------------------------------

    def _run_all(
        self,
        poll: Callable[..., CycleResult],
        label: str,
        should_continue: ShouldContinue | None,
    ) -> list[CycleResult]:
        request_id = new_request_id(self._clock.now_utc())
        logger.info("[%s] Starting %s pass over %s account(s)", request_id, label, len(self._accounts))
        results: list[CycleResult] = []
        for account_id in self.account_ids:
            if should_continue is not None and not should_continue():
                logger.info("[%s] Stop requested; %s pass ends before account=%s", request_id, label, account_id)
                break
            results.append(poll(self._accounts[account_id], request_id=request_id))
        failed = sum(1 for result in results if not result.success)
        logger.info("[%s] Finished %s pass: %s account(s), %s failed", request_id, label, len(results), failed)
        return results

    def poll_all_accounts(self, *, should_continue: ShouldContinue | None = None) -> list[CycleResult]:
        """Position pass over every enabled account, sequentially."""
        return self._run_all(self.poll_account, "position", should_continue)

    def poll_all_orders(self, *, should_continue: ShouldContinue | None = None) -> list[CycleResult]:
        return self._run_all(self.poll_account_orders, "order", should_continue)
