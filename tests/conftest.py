"""Pytest fixtures shared across unit and integration tests."""

from __future__ import annotations

import os
from typing import Any, Iterator

import psycopg
import pytest
from sqlalchemy import Engine

from backend.db.migrate import upgrade_to_head
from backend.db.session import create_ledger_engine, create_session_factory
from hedging.ledger import DeltaTargetLedger
from hedging.simulated_gateway import SimulatedGateway
from tests.utils.market import NOW, FixedClock


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def engine() -> Iterator[Engine]:
    """In-memory SQLite ledger migrated through the real Alembic runner."""
    engine = create_ledger_engine("sqlite://")
    upgrade_to_head(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def ledger(engine: Engine, clock: FixedClock) -> DeltaTargetLedger:
    return DeltaTargetLedger(create_session_factory(engine), clock=clock)


@pytest.fixture
def gateway(clock: FixedClock) -> SimulatedGateway:
    return SimulatedGateway(clock=clock)


def _pg_params() -> dict[str, str] | None:
    params = {
        "host": os.getenv("TEST_DB_HOST"),
        "port": os.getenv("TEST_DB_PORT"),
        "dbname": os.getenv("TEST_DB_NAME"),
        "user": os.getenv("TEST_DB_USER"),
        "password": os.getenv("TEST_DB_PASSWORD"),
    }
    if not all(params.values()):
        return None
    return params  # type: ignore[return-value]


@pytest.fixture(scope="session")
def pg_conn() -> Any:
    """Session-scoped psycopg connection for integration tests."""
    params = _pg_params()
    if params is None:
        pytest.skip("Integration DB env vars are missing; set TEST_DB_HOST/PORT/NAME/USER/PASSWORD")

    conn = psycopg.connect(autocommit=True, **params)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def pg_engine(pg_conn: Any) -> Iterator[Engine]:
    """Fresh PostgreSQL ledger schema for one test."""
    with pg_conn.cursor() as cur:
        cur.execute("DROP TABLE IF EXISTS delta_record")
        cur.execute("DROP TABLE IF EXISTS delta_records")
        cur.execute("DROP TABLE IF EXISTS alembic_version")
    params = _pg_params()
    assert params is not None
    url = (
        f"postgresql+psycopg://{params['user']}:{params['password']}"
        f"@{params['host']}:{params['port']}/{params['dbname']}"
    )
    engine = create_ledger_engine(url)
    try:
        yield engine
    finally:
        engine.dispose()
