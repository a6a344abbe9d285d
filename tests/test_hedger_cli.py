"""Unit tests for scripts/hedger_cli.py."""

from __future__ import annotations

import importlib.util
import json
from pathlib import Path
import sys
from typing import Any

import pytest


ROOT = Path(__file__).resolve().parents[1]
SCRIPT_PATH = ROOT / "scripts" / "hedger_cli.py"


def _load_cli_module(module_name: str) -> Any:
    spec = importlib.util.spec_from_file_location(module_name, SCRIPT_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def cli(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Any:
    monkeypatch.setenv("HEDGER_DATABASE_URL", f"sqlite:///{tmp_path / 'ledger.db'}")
    monkeypatch.setenv("HEDGER_ACCOUNTS_FILE", str(tmp_path / "missing-accounts.json"))
    monkeypatch.setenv("HEDGER_USE_SIMULATED_GATEWAY", "true")
    monkeypatch.delenv("HEDGER_AUTO_START", raising=False)
    return _load_cli_module("hedger_cli_under_test")


def _run(cli: Any, capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, Any]:
    code = cli.main(list(argv))
    out = capsys.readouterr().out.strip()
    return code, json.loads(out) if out else None


def test_record_lifecycle_through_cli(cli: Any, capsys: pytest.CaptureFixture[str], tmp_path: Path) -> None:
    code, created = _run(
        cli,
        capsys,
        "upsert",
        "--account",
        "simulated",
        "--instrument",
        "BTC-30JAN26-60000-C",
        "--target-delta",
        "0.3",
        "--min-expire-days",
        "5",
    )
    assert code == 0
    assert created["record_type"] == "position"
    assert created["min_expire_days"] == 5

    code, listed = _run(cli, capsys, "list", "--account", "simulated")
    assert code == 0
    assert [row["id"] for row in listed] == [created["id"]]

    code, updated = _run(cli, capsys, "update", str(created["id"]), "--disable-adjustment")
    assert code == 0
    assert updated["min_expire_days"] is None
    assert updated["target_delta"] == 0.3

    code, missing = _run(cli, capsys, "update", "999", "--target-delta", "0.1")
    assert code == 1
    assert missing == {"found": False, "record_id": 999}

    code, stats = _run(cli, capsys, "stats")
    assert code == 0
    assert stats["stats"]["total_records"] == 1
    assert stats["accounts"][0]["account_id"] == "simulated"

    output = tmp_path / "exports" / "records.json"
    code, written = _run(cli, capsys, "export", "--output", str(output))
    assert code == 0
    assert written == {"output": str(output)}
    assert len(json.loads(output.read_text(encoding="utf-8"))["records"]) == 1

    code, deleted = _run(cli, capsys, "delete", str(created["id"]))
    assert (code, deleted) == (0, {"deleted": True, "record_id": created["id"]})
    code, deleted = _run(cli, capsys, "delete", str(created["id"]))
    assert code == 1


def test_validation_errors_are_reported_as_json(cli: Any, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(
        cli, capsys, "upsert", "--account", "simulated", "--instrument", "BTC-30JAN26-60000-C", "--target-delta", "1.5"
    )
    assert code == 2
    assert payload["error"] == "ValidationError"


def test_bulk_delete_by_filter(cli: Any, capsys: pytest.CaptureFixture[str]) -> None:
    for instrument in ("BTC-30JAN26-60000-C", "BTC-30JAN26-65000-C"):
        _run(cli, capsys, "upsert", "--account", "simulated", "--instrument", instrument, "--target-delta", "0.2")

    code, payload = _run(cli, capsys, "delete", "--account", "simulated")
    assert (code, payload) == (0, {"deleted_count": 2})


def test_run_once_sweep_and_status(cli: Any, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(cli, capsys, "run-once", "--orders")
    assert code == 0
    assert payload["positions"]["accounts"] == 1
    assert payload["positions"]["results"][0]["account_id"] == "simulated"
    assert payload["orders"]["failed"] == 0

    code, sweep = _run(cli, capsys, "sweep")
    assert code == 0
    assert sweep["success"] is True

    code, status = _run(cli, capsys, "status")
    assert code == 0
    assert status["active"] is False
    assert status["intervals"]["positions"] == 900.0


def test_daemon_without_auto_start_prints_status(
    cli: Any, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("HEDGER_AUTO_START", "false")
    code, status = _run(cli, capsys, "daemon")
    assert code == 0
    assert status["active"] is False


def test_migrate_reports_head_revision(cli: Any, capsys: pytest.CaptureFixture[str]) -> None:
    code, payload = _run(cli, capsys, "migrate")
    assert code == 0
    assert payload["revision"]
