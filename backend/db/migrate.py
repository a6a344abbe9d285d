"""Programmatic Alembic runner used at process startup and by the CLI."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def build_alembic_config(connection: Connection | None = None) -> Config:
    """Alembic config pointing at the bundled migrations, optionally bound to a connection."""
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    if connection is not None:
        config.attributes["connection"] = connection
    return config


def current_revision(engine: Engine) -> str | None:
    """Return the revision recorded in the database, or None for an unversioned store."""
    with engine.connect() as connection:
        context = MigrationContext.configure(connection)
        return context.get_current_revision()


def head_revision() -> str | None:
    """Return the newest bundled revision."""
    return ScriptDirectory.from_config(build_alembic_config()).get_current_head()


def upgrade_to_head(engine: Engine) -> str | None:
    """Apply pending migrations in one transaction and return the resulting revision.

    Every revision inspects the live schema before acting, so running this
    against an already-migrated or hand-created store is a no-op.
    """
    before = current_revision(engine)
    with engine.begin() as connection:
        command.upgrade(build_alembic_config(connection), "head")
    after = current_revision(engine)
    if before != after:
        logger.info("Ledger schema migrated from %s to %s", before, after)
    else:
        logger.info("Ledger schema already at %s", after)
    return after
