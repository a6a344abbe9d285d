"""Alembic environment for the delta-target ledger."""

from __future__ import annotations

import logging
import os

from alembic import context
from sqlalchemy import create_engine

from backend.db.base import metadata
from backend.db import models  # noqa: F401  (registers tables on metadata)

logger = logging.getLogger(__name__)

config = context.config
target_metadata = metadata


def _database_url() -> str:
    url = config.get_main_option("sqlalchemy.url") or os.getenv("HEDGER_DATABASE_URL")
    if not url:
        raise RuntimeError("No ledger URL: set sqlalchemy.url or HEDGER_DATABASE_URL")
    return url


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a live connection."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run against the connection handed over by the caller, or a fresh engine."""
    connection = config.attributes.get("connection")
    if connection is not None:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()
        return

    engine = create_engine(_database_url())
    with engine.connect() as fresh_connection:
        context.configure(
            connection=fresh_connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
