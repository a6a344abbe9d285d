"""Initial delta-target ledger table."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0001_delta_record_table"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

TABLE_NAME = "delta_record"

_CONSTRAINTS = """
        CONSTRAINT ck_delta_record_target_delta_range CHECK (target_delta >= -1 AND target_delta <= 1),
        CONSTRAINT ck_delta_record_move_position_delta_range CHECK (move_position_delta >= -1 AND move_position_delta <= 1),
        CONSTRAINT ck_delta_record_min_expire_days_pos CHECK (min_expire_days > 0),
        CONSTRAINT ck_delta_record_record_type CHECK (record_type IN ('position', 'order')),
        CONSTRAINT ck_delta_record_account_id_not_blank CHECK (length(trim(account_id)) > 0),
        CONSTRAINT ck_delta_record_instrument_name_not_blank CHECK (length(trim(instrument_name)) > 0)
"""

# SQLite AUTOINCREMENT keeps ids of deleted rows from being handed out again.
TABLE_DDL: dict[str, str] = {
    "sqlite": f"""
    CREATE TABLE delta_record (
        id INTEGER NOT NULL CONSTRAINT pk_delta_record PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL,
        instrument_name TEXT NOT NULL,
        order_id TEXT,
        target_delta FLOAT NOT NULL,
        move_position_delta FLOAT NOT NULL DEFAULT 0,
        min_expire_days INTEGER NOT NULL,
        record_type VARCHAR(16) NOT NULL,
        created_at DATETIME NOT NULL,
        updated_at DATETIME NOT NULL,
        {_CONSTRAINTS}
    );
    """,
    "postgresql": f"""
    CREATE TABLE delta_record (
        id BIGINT GENERATED BY DEFAULT AS IDENTITY CONSTRAINT pk_delta_record PRIMARY KEY,
        account_id TEXT NOT NULL,
        instrument_name TEXT NOT NULL,
        order_id TEXT,
        target_delta DOUBLE PRECISION NOT NULL,
        move_position_delta DOUBLE PRECISION NOT NULL DEFAULT 0,
        min_expire_days INTEGER NOT NULL,
        record_type VARCHAR(16) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        {_CONSTRAINTS}
    );
    """,
}

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS ix_delta_record_account_id ON delta_record (account_id);",
    "CREATE INDEX IF NOT EXISTS ix_delta_record_instrument_name ON delta_record (instrument_name);",
    "CREATE INDEX IF NOT EXISTS ix_delta_record_record_type ON delta_record (record_type);",
    "CREATE INDEX IF NOT EXISTS ix_delta_record_account_instrument ON delta_record (account_id, instrument_name);",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_delta_record_position ON delta_record (account_id, instrument_name) WHERE record_type = 'position';",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_delta_record_order_id ON delta_record (order_id) WHERE order_id IS NOT NULL;",
)


def _execute_all(statements: Sequence[str]) -> None:
    """Execute an ordered sequence of SQL statements."""

    for statement in statements:
        try:
            op.execute(statement)
        except Exception:
            logger.exception("Migration statement failed.")
            raise


def _table_ddl(dialect_name: str) -> str:
    try:
        return TABLE_DDL[dialect_name]
    except KeyError as exc:
        raise RuntimeError(f"Unsupported ledger dialect: {dialect_name}") from exc


def upgrade() -> None:
    """Create the ledger table and its indexes unless they already exist."""

    bind = op.get_bind()
    if sa.inspect(bind).has_table(TABLE_NAME):
        logger.info("Table %s already present, skipping create.", TABLE_NAME)
    else:
        _execute_all((_table_ddl(bind.dialect.name),))
    _execute_all(INDEX_DDL)
    logger.info("Completed delta_record table migration upgrade.")


def downgrade() -> None:
    """Drop the ledger table."""

    _execute_all(
        (
            "DROP INDEX IF EXISTS uq_delta_record_order_id;",
            "DROP INDEX IF EXISTS uq_delta_record_position;",
            "DROP INDEX IF EXISTS ix_delta_record_account_instrument;",
            "DROP INDEX IF EXISTS ix_delta_record_record_type;",
            "DROP INDEX IF EXISTS ix_delta_record_instrument_name;",
            "DROP INDEX IF EXISTS ix_delta_record_account_id;",
            "DROP TABLE IF EXISTS delta_record;",
        )
    )
