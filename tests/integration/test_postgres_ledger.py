"""DB-backed integration tests for the ledger on PostgreSQL."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import Engine, inspect

from backend.db.migrate import current_revision, upgrade_to_head
from backend.db.session import create_session_factory
from hedging.errors import DuplicateRecord
from hedging.ledger import DeltaTargetLedger, RecordQuery
from tests.utils.market import NOW, FixedClock, order_input, position_input


@pytest.fixture
def pg_ledger(pg_engine: Engine) -> DeltaTargetLedger:
    upgrade_to_head(pg_engine)
    return DeltaTargetLedger(create_session_factory(pg_engine), clock=FixedClock(NOW))


def test_migrations_build_the_ledger_table(pg_engine: Engine) -> None:
    revision = upgrade_to_head(pg_engine)
    assert revision is not None
    assert upgrade_to_head(pg_engine) == revision
    assert current_revision(pg_engine) == revision

    inspector = inspect(pg_engine)
    assert "delta_record" in inspector.get_table_names()
    columns = {column["name"] for column in inspector.get_columns("delta_record")}
    assert {"account_id", "instrument_name", "order_id", "target_delta", "min_expire_days", "record_type"} <= columns


def test_round_trip_keeps_utc_timestamps(pg_ledger: DeltaTargetLedger) -> None:
    record = pg_ledger.upsert_position(position_input("acct-a", "BTC-30JAN26-60000-C", 0.3))
    fetched = pg_ledger.get_record(record.id)

    assert fetched == record
    assert fetched is not None and fetched.created_at == NOW


def test_concurrent_upserts_converge_on_one_row(pg_ledger: DeltaTargetLedger) -> None:
    def _upsert(index: int) -> int:
        return pg_ledger.upsert_position(
            position_input("acct-a", "BTC-30JAN26-60000-C", round(0.1 + index * 0.01, 2))
        ).id

    with ThreadPoolExecutor(max_workers=4) as pool:
        ids = set(pool.map(_upsert, range(8)))

    assert len(ids) == 1
    assert len(pg_ledger.get_records(RecordQuery(account_id="acct-a"))) == 1


def test_order_id_uniqueness_is_enforced(pg_ledger: DeltaTargetLedger) -> None:
    pg_ledger.upsert_record(order_input("acct-a", "BTC-30JAN26-60000-C", "ord-1", 0.3))
    with pytest.raises(DuplicateRecord):
        pg_ledger.upsert_record(order_input("acct-b", "BTC-30JAN26-60000-C", "ord-1", 0.3))
