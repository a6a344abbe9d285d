"""Add tv_id, make min_expire_days nullable, adopt the legacy delta_records table."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

logger = logging.getLogger(__name__)

# revision identifiers, used by Alembic.
revision: str = "0002_delta_record_tv_id_and_expiry"
down_revision: str | None = "0001_delta_record_table"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

TABLE_NAME = "delta_record"
LEGACY_TABLE_NAME = "delta_records"

COLUMNS: tuple[str, ...] = (
    "account_id",
    "instrument_name",
    "order_id",
    "target_delta",
    "move_position_delta",
    "min_expire_days",
    "tv_id",
    "record_type",
    "created_at",
    "updated_at",
)

SQLITE_REBUILD_DDL = """
CREATE TABLE delta_record__rebuild (
    id INTEGER NOT NULL CONSTRAINT pk_delta_record PRIMARY KEY AUTOINCREMENT,
    account_id TEXT NOT NULL,
    instrument_name TEXT NOT NULL,
    order_id TEXT,
    target_delta FLOAT NOT NULL,
    move_position_delta FLOAT NOT NULL DEFAULT 0,
    min_expire_days INTEGER,
    tv_id BIGINT,
    record_type VARCHAR(16) NOT NULL,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    CONSTRAINT ck_delta_record_target_delta_range CHECK (target_delta >= -1 AND target_delta <= 1),
    CONSTRAINT ck_delta_record_move_position_delta_range CHECK (move_position_delta >= -1 AND move_position_delta <= 1),
    CONSTRAINT ck_delta_record_min_expire_days_pos CHECK (min_expire_days IS NULL OR min_expire_days > 0),
    CONSTRAINT ck_delta_record_record_type CHECK (record_type IN ('position', 'order')),
    CONSTRAINT ck_delta_record_account_id_not_blank CHECK (length(trim(account_id)) > 0),
    CONSTRAINT ck_delta_record_instrument_name_not_blank CHECK (length(trim(instrument_name)) > 0)
);
"""

POSTGRES_RELAX_DDL: tuple[str, ...] = (
    "ALTER TABLE delta_record ALTER COLUMN min_expire_days DROP NOT NULL;",
    "ALTER TABLE delta_record DROP CONSTRAINT IF EXISTS ck_delta_record_min_expire_days_pos;",
    "ALTER TABLE delta_record ADD CONSTRAINT ck_delta_record_min_expire_days_pos CHECK (min_expire_days IS NULL OR min_expire_days > 0);",
)

INDEX_DDL: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS ix_delta_record_account_id ON delta_record (account_id);",
    "CREATE INDEX IF NOT EXISTS ix_delta_record_instrument_name ON delta_record (instrument_name);",
    "CREATE INDEX IF NOT EXISTS ix_delta_record_record_type ON delta_record (record_type);",
    "CREATE INDEX IF NOT EXISTS ix_delta_record_account_instrument ON delta_record (account_id, instrument_name);",
    "CREATE INDEX IF NOT EXISTS ix_delta_record_tv_id ON delta_record (tv_id);",
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


def _columns(bind: sa.Connection, table_name: str) -> dict[str, dict]:
    return {column["name"]: column for column in sa.inspect(bind).get_columns(table_name)}


def _sqlite_has_autoincrement(bind: sa.Connection) -> bool:
    ddl = bind.execute(
        sa.text("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = :name"),
        {"name": TABLE_NAME},
    ).scalar()
    return ddl is not None and "AUTOINCREMENT" in ddl.upper()


def _sqlite_rebuild(existing_columns: Sequence[str]) -> None:
    copied = [name for name in ("id", *COLUMNS) if name in existing_columns]
    column_list = ", ".join(copied)
    _execute_all(
        (
            "DROP TABLE IF EXISTS delta_record__rebuild;",
            SQLITE_REBUILD_DDL,
            f"INSERT INTO delta_record__rebuild ({column_list}) SELECT {column_list} FROM delta_record;",
            "DROP TABLE delta_record;",
            "ALTER TABLE delta_record__rebuild RENAME TO delta_record;",
        )
    )


def _adopt_legacy_table(bind: sa.Connection) -> None:
    legacy_columns = _columns(bind, LEGACY_TABLE_NAME)
    select_list = []
    for name in COLUMNS:
        if name in ("created_at", "updated_at"):
            select_list.append(f"COALESCE(l.{name}, CURRENT_TIMESTAMP)" if name in legacy_columns else "CURRENT_TIMESTAMP")
        elif name == "move_position_delta":
            select_list.append(f"COALESCE(l.{name}, 0)" if name in legacy_columns else "0")
        elif name in legacy_columns:
            select_list.append(f"l.{name}")
        else:
            select_list.append("NULL")
    _execute_all(
        (
            f"""
            INSERT INTO delta_record ({", ".join(COLUMNS)})
            SELECT {", ".join(select_list)}
            FROM {LEGACY_TABLE_NAME} l
            WHERE NOT EXISTS (
                SELECT 1 FROM delta_record d
                WHERE d.account_id = l.account_id
                  AND d.instrument_name = l.instrument_name
                  AND d.record_type = l.record_type
                  AND (d.order_id = l.order_id OR (d.order_id IS NULL AND l.order_id IS NULL))
            );
            """,
            f"DROP TABLE {LEGACY_TABLE_NAME};",
        )
    )
    logger.info("Adopted legacy %s rows into %s.", LEGACY_TABLE_NAME, TABLE_NAME)


def upgrade() -> None:
    """Bring delta_record to the tv_id / nullable-expiry shape, inspecting first."""

    bind = op.get_bind()
    columns = _columns(bind, TABLE_NAME)

    if "tv_id" not in columns:
        _execute_all(("ALTER TABLE delta_record ADD COLUMN tv_id BIGINT;",))
        columns = _columns(bind, TABLE_NAME)

    if bind.dialect.name == "sqlite":
        # Earlier releases created the table without AUTOINCREMENT, which lets SQLite reuse deleted ids.
        if not columns["min_expire_days"]["nullable"] or not _sqlite_has_autoincrement(bind):
            _sqlite_rebuild(tuple(columns))
    elif not columns["min_expire_days"]["nullable"]:
        _execute_all(POSTGRES_RELAX_DDL)

    _execute_all(INDEX_DDL)

    if sa.inspect(bind).has_table(LEGACY_TABLE_NAME):
        _adopt_legacy_table(bind)

    logger.info("Completed delta_record tv_id/expiry migration upgrade.")


def downgrade() -> None:
    """Drop tv_id; min_expire_days stays nullable because rows may already hold NULL."""

    _execute_all(
        (
            "DROP INDEX IF EXISTS ix_delta_record_tv_id;",
            "ALTER TABLE delta_record DROP COLUMN tv_id;",
        )
    )
