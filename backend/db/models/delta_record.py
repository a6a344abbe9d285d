"""Delta-target record model definition."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    PrimaryKeyConstraint,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import RecordType, record_type_enum

logger = logging.getLogger(__name__)

TABLE_NAME = "delta_record"


class DeltaRecord(Base):
    """Hedging intent for one account/instrument position or one open order."""

    __tablename__ = TABLE_NAME
    __table_args__ = (
        PrimaryKeyConstraint("id", name="pk_delta_record"),
        CheckConstraint(
            "target_delta >= -1 AND target_delta <= 1",
            name="target_delta_range",
        ),
        CheckConstraint(
            "move_position_delta >= -1 AND move_position_delta <= 1",
            name="move_position_delta_range",
        ),
        CheckConstraint(
            "min_expire_days IS NULL OR min_expire_days > 0",
            name="min_expire_days_pos",
        ),
        CheckConstraint(
            "record_type IN ('position', 'order')",
            name="record_type",
        ),
        CheckConstraint(
            "length(trim(account_id)) > 0",
            name="account_id_not_blank",
        ),
        CheckConstraint(
            "length(trim(instrument_name)) > 0",
            name="instrument_name_not_blank",
        ),
        Index(
            "uq_delta_record_position",
            "account_id",
            "instrument_name",
            unique=True,
            sqlite_where=text("record_type = 'position'"),
            postgresql_where=text("record_type = 'position'"),
        ),
        Index(
            "uq_delta_record_order_id",
            "order_id",
            unique=True,
            sqlite_where=text("order_id IS NOT NULL"),
            postgresql_where=text("order_id IS NOT NULL"),
        ),
        Index("ix_delta_record_account_id", "account_id"),
        Index("ix_delta_record_instrument_name", "instrument_name"),
        Index("ix_delta_record_tv_id", "tv_id"),
        Index("ix_delta_record_record_type", "record_type"),
        Index("ix_delta_record_account_instrument", "account_id", "instrument_name"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    instrument_name: Mapped[str] = mapped_column(Text, nullable=False)
    order_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    target_delta: Mapped[float] = mapped_column(Float, nullable=False)
    move_position_delta: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        server_default=text("0"),
    )
    min_expire_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tv_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    record_type: Mapped[RecordType] = mapped_column(record_type_enum, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
