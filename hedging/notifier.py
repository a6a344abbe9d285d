"""Outbound notification capability and message formatting."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Protocol

from hedging.common import utc_iso
from hedging.errors import AdjustmentResult
from hedging.gateway_contract import Position
from hedging.ledger import DeltaTargetRecord

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Narrow notify capability; transport is the implementer's concern."""

    def notify(self, account_id: str, title: str, body: str) -> None:
        """Deliver one message for an account."""


class LoggingNotifier:
    """Notifier that writes messages to the log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def notify(self, account_id: str, title: str, body: str) -> None:
        logger.log(self._level, "[notify account=%s] %s\n%s", account_id, title, body)


def safe_notify(notifier: Notifier, account_id: str, title: str, body: str) -> None:
    """Deliver a message; delivery failures are logged, not raised."""
    try:
        notifier.notify(account_id, title, body)
    except Exception:
        logger.exception("Notification delivery failed for account=%s title=%s", account_id, title)


def _common_lines(
    account_id: str,
    position: Position,
    record: DeltaTargetRecord,
    request_id: str,
    at: datetime,
) -> list[str]:
    return [
        f"- **Account**: {account_id}",
        f"- **Instrument**: {position.instrument_name}",
        f"- **Size**: {position.size}",
        f"- **Position delta**: {position.delta}",
        f"- **Per-unit delta**: {position.per_unit_delta():.4f}",
        f"- **Target delta**: {record.target_delta}",
        f"- **Record id**: {record.id}",
        f"- **Request id**: {request_id}",
        f"- **Time**: {utc_iso(at)}",
    ]


def format_adjustment_start(
    account_id: str,
    position: Position,
    record: DeltaTargetRecord,
    request_id: str,
    at: datetime,
) -> str:
    lines = ["### Delta adjustment started", ""]
    lines.extend(_common_lines(account_id, position, record, request_id, at))
    return "\n".join(lines)


def format_adjustment_success(
    account_id: str,
    position: Position,
    record: DeltaTargetRecord,
    result: AdjustmentResult,
    request_id: str,
    at: datetime,
) -> str:
    lines = ["### Delta adjustment succeeded", ""]
    lines.extend(_common_lines(account_id, position, record, request_id, at))
    lines.extend(
        [
            f"- **Closed**: {result.old_instrument} (order {result.close_order_id})",
            f"- **Opened**: {result.new_instrument} (order {result.open_order_id})",
            f"- **New record id**: {result.new_record_id}",
        ]
    )
    return "\n".join(lines)


def format_adjustment_failure(
    account_id: str,
    position: Position,
    record: DeltaTargetRecord,
    result: AdjustmentResult,
    request_id: str,
    at: datetime,
) -> str:
    title = "### Delta adjustment INCONSISTENT" if result.inconsistent else "### Delta adjustment failed"
    lines = [title, ""]
    lines.extend(_common_lines(account_id, position, record, request_id, at))
    lines.append(f"- **Reason**: {result.reason}")
    if result.new_instrument:
        lines.append(f"- **Attempted replacement**: {result.new_instrument}")
    if result.error:
        lines.append(f"- **Error**: {result.error}")
    if result.inconsistent:
        lines.append("- **Action required**: venue exposure no longer matches the ledger")
    return "\n".join(lines)


def format_cycle_failure(account_id: str, request_id: str, error: str, at: datetime) -> str:
    return "\n".join(
        [
            "### Reconciliation cycle failed",
            "",
            f"- **Account**: {account_id}",
            f"- **Request id**: {request_id}",
            f"- **Error**: {error}",
            f"- **Time**: {utc_iso(at)}",
        ]
    )
