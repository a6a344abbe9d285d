"""Model module imports for SQLAlchemy metadata registration."""

from __future__ import annotations

import logging

from backend.db.models.delta_record import DeltaRecord

logger = logging.getLogger(__name__)

__all__ = [
    "DeltaRecord",
]
