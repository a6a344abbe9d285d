"""Environment-backed configuration for the hedging runtime."""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
from pathlib import Path
from typing import Optional

DERIBIT_TEST_BASE_URL = "https://test.deribit.com/api/v2"
DERIBIT_PROD_BASE_URL = "https://www.deribit.com/api/v2"


@dataclass(frozen=True)
class AccountConfig:
    """One venue account the poller reconciles."""

    name: str
    client_id: str
    client_secret: str
    enabled: bool = True
    grant_type: str = "client_credentials"
    scope: Optional[str] = None


@dataclass(frozen=True)
class HedgerConfig:
    """Canonical configuration surface for the hedging runtime."""

    database_url: str
    accounts_file: Path
    use_simulated_gateway: bool
    use_test_environment: bool
    venue_base_url: str
    position_poll_minutes: int
    order_poll_minutes: int
    maintenance_interval_hours: int
    order_grace_days: int
    spread_ratio_threshold: float
    default_min_expire_days: int
    gateway_timeout_seconds: float
    smart_price_ratio: float
    auto_start: bool


def _read_env(name: str, default: str | None = None) -> str:
    value = os.getenv(name, default)
    if value is None or value.strip() == "":
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value.strip()


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise RuntimeError(f"Invalid boolean value for {name}: {raw}")


def _read_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid integer value for {name}: {raw}") from exc
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}: {raw}")
    return value


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid float value for {name}: {raw}") from exc
    if value <= 0:
        raise RuntimeError(f"{name} must be positive: {raw}")
    return value


def load_hedger_config() -> HedgerConfig:
    """Load and validate hedging configuration from environment."""
    use_test_environment = _read_bool("HEDGER_USE_TEST_ENVIRONMENT", True)
    default_base_url = DERIBIT_TEST_BASE_URL if use_test_environment else DERIBIT_PROD_BASE_URL

    smart_price_ratio = _read_float("HEDGER_SMART_PRICE_RATIO", 0.2)
    if smart_price_ratio >= 1:
        raise RuntimeError(f"HEDGER_SMART_PRICE_RATIO must be below 1: {smart_price_ratio}")

    return HedgerConfig(
        database_url=_read_env("HEDGER_DATABASE_URL", "sqlite:///data/delta_records.db"),
        accounts_file=Path(_read_env("HEDGER_ACCOUNTS_FILE", "./config/accounts.json")).resolve(),
        use_simulated_gateway=_read_bool("HEDGER_USE_SIMULATED_GATEWAY", False),
        use_test_environment=use_test_environment,
        venue_base_url=_read_env("HEDGER_VENUE_BASE_URL", default_base_url).rstrip("/"),
        position_poll_minutes=_read_int("HEDGER_POSITION_POLL_MINUTES", 15),
        order_poll_minutes=_read_int("HEDGER_ORDER_POLL_MINUTES", 5),
        maintenance_interval_hours=_read_int("HEDGER_MAINTENANCE_INTERVAL_HOURS", 24),
        order_grace_days=_read_int("HEDGER_ORDER_GRACE_DAYS", 7),
        spread_ratio_threshold=_read_float("HEDGER_SPREAD_RATIO_THRESHOLD", 0.15),
        default_min_expire_days=_read_int("HEDGER_DEFAULT_MIN_EXPIRE_DAYS", 7),
        gateway_timeout_seconds=_read_float("HEDGER_GATEWAY_TIMEOUT_SECONDS", 10.0),
        smart_price_ratio=smart_price_ratio,
        auto_start=_read_bool("HEDGER_AUTO_START", True),
    )


def load_accounts(path: Path) -> tuple[AccountConfig, ...]:
    """Load the accounts file; an absent file means no accounts."""
    if not path.exists():
        return ()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Accounts file is not valid JSON: {path}") from exc
    if isinstance(payload, dict):
        payload = payload.get("accounts")
    if not isinstance(payload, list):
        raise RuntimeError(f"Accounts file must hold a JSON list: {path}")

    accounts: list[AccountConfig] = []
    seen: set[str] = set()
    for index, row in enumerate(payload):
        if not isinstance(row, dict):
            raise RuntimeError(f"Account entry #{index} must be an object")
        missing = [key for key in ("name", "client_id", "client_secret") if not str(row.get(key, "")).strip()]
        if missing:
            raise RuntimeError(f"Account entry #{index} missing fields: {', '.join(missing)}")
        name = str(row["name"]).strip()
        if name in seen:
            raise RuntimeError(f"Duplicate account name in accounts file: {name}")
        seen.add(name)
        enabled = row.get("enabled", True)
        if not isinstance(enabled, bool):
            raise RuntimeError(f"Account {name}: enabled must be a boolean")
        accounts.append(
            AccountConfig(
                name=name,
                client_id=str(row["client_id"]).strip(),
                client_secret=str(row["client_secret"]).strip(),
                enabled=enabled,
                grant_type=str(row.get("grant_type") or "client_credentials"),
                scope=row.get("scope"),
            )
        )
    return tuple(accounts)


def enabled_accounts(accounts: tuple[AccountConfig, ...]) -> tuple[AccountConfig, ...]:
    return tuple(account for account in accounts if account.enabled)
