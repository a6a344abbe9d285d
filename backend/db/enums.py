"""Enum contracts shared by the ledger schema and the runtime."""

from __future__ import annotations

import enum
import logging

from sqlalchemy import Enum as SAEnum

logger = logging.getLogger(__name__)


class RecordType(str, enum.Enum):
    """What a delta-target record tracks."""

    POSITION = "position"
    ORDER = "order"


class OptionSide(str, enum.Enum):
    """Option type used when selecting a replacement instrument."""

    CALL = "call"
    PUT = "put"


class OrderSide(str, enum.Enum):
    """Order side as understood by the venue."""

    BUY = "buy"
    SELL = "sell"


class OrderType(str, enum.Enum):
    """Order type as understood by the venue."""

    LIMIT = "limit"
    MARKET = "market"


# Stored as plain text with a CHECK constraint so the same schema serves
# SQLite and PostgreSQL.
record_type_enum = SAEnum(
    RecordType,
    name="delta_record_type",
    native_enum=False,
    create_constraint=False,
    length=16,
    values_callable=lambda members: [member.value for member in members],
)
