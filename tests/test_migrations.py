from __future__ import annotations

from sqlalchemy import Engine, inspect, text

from backend.db.migrate import current_revision, head_revision, upgrade_to_head
from backend.db.session import create_ledger_engine, create_session_factory
from hedging.ledger import DeltaTargetLedger, RecordQuery
from tests.utils.market import FixedClock, NOW, position_input

HEAD = "0002_delta_record_tv_id_and_expiry"

LEGACY_0001_TABLE = """
CREATE TABLE delta_record (
    id INTEGER NOT NULL PRIMARY KEY,
    account_id TEXT NOT NULL,
    instrument_name TEXT NOT NULL,
    order_id TEXT,
    target_delta FLOAT NOT NULL,
    move_position_delta FLOAT NOT NULL DEFAULT 0,
    min_expire_days INTEGER NOT NULL,
    record_type VARCHAR(16) NOT NULL,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
)
"""

LEGACY_DELTA_RECORDS_TABLE = """
CREATE TABLE delta_records (
    id INTEGER NOT NULL PRIMARY KEY,
    account_id TEXT NOT NULL,
    instrument_name TEXT NOT NULL,
    order_id TEXT,
    target_delta FLOAT NOT NULL,
    min_expire_days INTEGER,
    record_type VARCHAR(16) NOT NULL,
    created_at DATETIME
)
"""


def _columns(engine: Engine) -> dict[str, dict]:
    return {column["name"]: column for column in inspect(engine).get_columns("delta_record")}


def _index_names(engine: Engine) -> set[str]:
    return {index["name"] for index in inspect(engine).get_indexes("delta_record")}


def test_fresh_store_migrates_to_head(engine: Engine) -> None:
    assert head_revision() == HEAD
    assert current_revision(engine) == HEAD

    columns = _columns(engine)
    assert "tv_id" in columns
    assert columns["min_expire_days"]["nullable"] is True
    assert columns["order_id"]["nullable"] is True
    assert {
        "uq_delta_record_position",
        "uq_delta_record_order_id",
        "ix_delta_record_account_id",
        "ix_delta_record_instrument_name",
        "ix_delta_record_tv_id",
        "ix_delta_record_record_type",
    } <= _index_names(engine)


def test_rerunning_upgrade_is_a_no_op_and_keeps_rows(engine: Engine) -> None:
    ledger = DeltaTargetLedger(create_session_factory(engine), clock=FixedClock(NOW))
    record = ledger.upsert_position(position_input("acct-a", "BTC-30JAN26-60000-C", 0.3))

    assert upgrade_to_head(engine) == HEAD
    assert upgrade_to_head(engine) == HEAD
    assert ledger.get_record(record.id) == record


def test_unversioned_store_with_original_shape_is_upgraded_in_place() -> None:
    engine = create_ledger_engine("sqlite://")
    try:
        with engine.begin() as conn:
            conn.execute(text(LEGACY_0001_TABLE))
            conn.execute(
                text(
                    "INSERT INTO delta_record (account_id, instrument_name, target_delta, min_expire_days, "
                    "record_type, created_at, updated_at) VALUES ('acct-a', 'BTC-30JAN26-60000-C', 0.3, 5, "
                    "'position', '2026-01-01 12:00:00.000000', '2026-01-01 12:00:00.000000')"
                )
            )

        assert current_revision(engine) is None
        assert upgrade_to_head(engine) == HEAD
        assert "tv_id" in _columns(engine)
        assert _columns(engine)["min_expire_days"]["nullable"] is True

        ledger = DeltaTargetLedger(create_session_factory(engine), clock=FixedClock(NOW))
        rows = ledger.get_records()
        assert len(rows) == 1
        assert rows[0].min_expire_days == 5
        assert rows[0].created_at == NOW

        disabled = ledger.upsert_position(position_input("acct-a", "BTC-30JAN26-70000-C", 0.3, min_expire_days=None))
        assert disabled.min_expire_days is None
    finally:
        engine.dispose()


def test_legacy_delta_records_table_is_adopted_and_dropped() -> None:
    engine = create_ledger_engine("sqlite://")
    try:
        with engine.begin() as conn:
            conn.execute(text(LEGACY_DELTA_RECORDS_TABLE))
            conn.execute(
                text(
                    "INSERT INTO delta_records (account_id, instrument_name, order_id, target_delta, "
                    "min_expire_days, record_type, created_at) VALUES "
                    "('acct-a', 'BTC-30JAN26-60000-C', NULL, 0.3, 5, 'position', '2025-12-01 10:00:00.000000'), "
                    "('acct-a', 'BTC-30JAN26-60000-C', 'ord-9', 0.2, NULL, 'order', NULL)"
                )
            )

        assert upgrade_to_head(engine) == HEAD
        assert not inspect(engine).has_table("delta_records")

        ledger = DeltaTargetLedger(create_session_factory(engine), clock=FixedClock(NOW))
        rows = ledger.get_records(RecordQuery(account_id="acct-a"))
        assert len(rows) == 2
        by_type = {row.record_type.value: row for row in rows}
        assert by_type["position"].min_expire_days == 5
        assert by_type["position"].move_position_delta == 0.0
        assert by_type["order"].order_id == "ord-9"
        assert by_type["order"].min_expire_days is None
    finally:
        engine.dispose()


def _table_sql(engine: Engine) -> str:
    with engine.connect() as conn:
        return conn.execute(text("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = 'delta_record'")).scalar_one()


def test_fresh_store_never_reuses_deleted_ids(engine: Engine) -> None:
    assert "AUTOINCREMENT" in _table_sql(engine).upper()


def test_table_without_autoincrement_is_rebuilt_and_stops_reusing_ids() -> None:
    engine = create_ledger_engine("sqlite://")
    try:
        with engine.begin() as conn:
            conn.execute(text(LEGACY_0001_TABLE.replace("min_expire_days INTEGER NOT NULL", "min_expire_days INTEGER")))
            conn.execute(text("ALTER TABLE delta_record ADD COLUMN tv_id BIGINT"))
            conn.execute(
                text(
                    "INSERT INTO delta_record (account_id, instrument_name, target_delta, min_expire_days, "
                    "record_type, created_at, updated_at) VALUES "
                    "('acct-a', 'BTC-30JAN26-60000-C', 0.3, 5, 'position', "
                    "'2026-01-01 12:00:00.000000', '2026-01-01 12:00:00.000000'), "
                    "('acct-a', 'BTC-30JAN26-65000-C', 0.3, NULL, 'position', "
                    "'2026-01-01 12:00:00.000000', '2026-01-01 12:00:00.000000')"
                )
            )
        assert "AUTOINCREMENT" not in _table_sql(engine).upper()

        assert upgrade_to_head(engine) == HEAD
        assert "AUTOINCREMENT" in _table_sql(engine).upper()

        ledger = DeltaTargetLedger(create_session_factory(engine), clock=FixedClock(NOW))
        rows = ledger.get_records()
        assert sorted(row.id for row in rows) == [1, 2]

        assert ledger.delete_record(2)
        created = ledger.upsert_position(position_input("acct-a", "BTC-30JAN26-70000-C", 0.3))
        assert created.id == 3
    finally:
        engine.dispose()
