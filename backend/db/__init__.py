"""Persistence for the delta-target ledger: ORM model, engine helpers and migrations."""

from __future__ import annotations

import logging

from backend.db.base import Base, metadata
from backend.db.models import DeltaRecord

logger = logging.getLogger(__name__)

__all__ = ["Base", "DeltaRecord", "metadata"]
