"""Durable delta-target ledger backed by the ``delta_record`` table.

The ledger is the only writer of hedging intent. Every public write runs in
one database transaction and returns immutable ``DeltaTargetRecord`` values,
so callers never hold live ORM objects across sessions.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
import json
import logging
import math
import threading
from typing import Any, Iterator, Mapping, Optional, Sequence

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from backend.db.enums import RecordType
from backend.db.models import DeltaRecord
from hedging.common import HedgerClock, ensure_utc, utc_iso
from hedging.errors import DuplicateRecord, ValidationError
from hedging.instruments import parse_instrument_expiry

logger = logging.getLogger(__name__)

_UPSERT_ATTEMPTS = 2


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass(frozen=True)
class DeltaTargetRecord:
    """Immutable view of one ledger row."""

    id: int
    account_id: str
    instrument_name: str
    order_id: Optional[str]
    target_delta: float
    move_position_delta: float
    min_expire_days: Optional[int]
    tv_id: Optional[int]
    record_type: RecordType
    created_at: datetime
    updated_at: datetime

    @property
    def adjustment_enabled(self) -> bool:
        return self.min_expire_days is not None

    def as_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["record_type"] = self.record_type.value
        payload["created_at"] = utc_iso(self.created_at)
        payload["updated_at"] = utc_iso(self.updated_at)
        return payload


@dataclass(frozen=True)
class DeltaTargetInput:
    """Directive accepted by create/upsert."""

    account_id: str
    instrument_name: str
    target_delta: float
    record_type: RecordType = RecordType.POSITION
    order_id: Optional[str] = None
    move_position_delta: float = 0.0
    min_expire_days: Optional[int] = None
    tv_id: Optional[int] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "DeltaTargetInput":
        unknown = set(payload) - {item.name for item in fields(cls)}
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        for key in ("account_id", "instrument_name", "target_delta"):
            if payload.get(key) is None:
                raise ValidationError(f"Missing required field: {key}")
        return cls(
            account_id=str(payload["account_id"]),
            instrument_name=str(payload["instrument_name"]),
            target_delta=payload["target_delta"],
            record_type=_coerce_record_type(payload.get("record_type", RecordType.POSITION)),
            order_id=payload.get("order_id"),
            move_position_delta=payload.get("move_position_delta", 0.0),
            min_expire_days=payload.get("min_expire_days"),
            tv_id=payload.get("tv_id"),
        )


@dataclass(frozen=True)
class RecordPatch:
    """Partial update; fields left as UNSET are not touched."""

    instrument_name: Any = UNSET
    order_id: Any = UNSET
    target_delta: Any = UNSET
    move_position_delta: Any = UNSET
    min_expire_days: Any = UNSET
    tv_id: Any = UNSET
    record_type: Any = UNSET

    def changes(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self) if getattr(self, item.name) is not UNSET}

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "RecordPatch":
        unknown = set(payload) - {item.name for item in fields(cls)}
        if unknown:
            raise ValidationError(f"Fields not updatable: {', '.join(sorted(unknown))}")
        values = dict(payload)
        if "record_type" in values:
            values["record_type"] = _coerce_record_type(values["record_type"])
        return cls(**values)


@dataclass(frozen=True)
class RecordQuery:
    """Equality filters; all None means every row."""

    account_id: Optional[str] = None
    instrument_name: Optional[str] = None
    order_id: Optional[str] = None
    tv_id: Optional[int] = None
    record_type: Optional[RecordType] = None

    def is_empty(self) -> bool:
        return all(getattr(self, item.name) is None for item in fields(self))


@dataclass(frozen=True)
class LedgerStats:
    total_records: int
    position_records: int
    order_records: int
    accounts: tuple[str, ...]
    instruments: tuple[str, ...]


@dataclass(frozen=True)
class AccountDeltaSummary:
    account_id: str
    total_delta: float
    position_delta: float
    order_delta: float
    record_count: int


@dataclass(frozen=True)
class InstrumentDeltaSummary:
    instrument_name: str
    total_delta: float
    position_delta: float
    order_delta: float
    record_count: int
    accounts: tuple[str, ...]


def _coerce_record_type(value: Any) -> RecordType:
    if isinstance(value, RecordType):
        return value
    try:
        return RecordType(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"record_type must be 'position' or 'order': {value!r}") from exc


def _validate_unit_interval(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{name} must be a number: {value!r}")
    if not math.isfinite(value) or value < -1 or value > 1:
        raise ValidationError(f"{name} must be within [-1, 1]: {value!r}")
    return float(value)


def _validate_min_expire_days(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"min_expire_days must be an integer or null: {value!r}")
    if value <= 0:
        raise ValidationError(f"min_expire_days must be > 0: {value!r}")
    return value


def _validate_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value.strip()


def _validate_fields(values: dict[str, Any]) -> dict[str, Any]:
    """Validate a full set of column values; returns the normalized copy."""
    cleaned = dict(values)
    cleaned["account_id"] = _validate_text("account_id", values["account_id"])
    cleaned["instrument_name"] = _validate_text("instrument_name", values["instrument_name"])
    cleaned["target_delta"] = _validate_unit_interval("target_delta", values["target_delta"])
    cleaned["move_position_delta"] = _validate_unit_interval("move_position_delta", values["move_position_delta"])
    cleaned["min_expire_days"] = _validate_min_expire_days(values["min_expire_days"])
    cleaned["record_type"] = _coerce_record_type(values["record_type"])
    order_id = values.get("order_id")
    if order_id is not None:
        order_id = _validate_text("order_id", order_id)
    cleaned["order_id"] = order_id
    if cleaned["record_type"] == RecordType.ORDER and order_id is None:
        raise ValidationError("order records require an order_id")
    tv_id = values.get("tv_id")
    if tv_id is not None and (isinstance(tv_id, bool) or not isinstance(tv_id, int)):
        raise ValidationError(f"tv_id must be an integer or null: {tv_id!r}")
    return cleaned


def _input_values(record: DeltaTargetInput) -> dict[str, Any]:
    return _validate_fields(
        {
            "account_id": record.account_id,
            "instrument_name": record.instrument_name,
            "order_id": record.order_id,
            "target_delta": record.target_delta,
            "move_position_delta": record.move_position_delta,
            "min_expire_days": record.min_expire_days,
            "tv_id": record.tv_id,
            "record_type": record.record_type,
        }
    )


def _to_record(row: DeltaRecord) -> DeltaTargetRecord:
    return DeltaTargetRecord(
        id=int(row.id),
        account_id=row.account_id,
        instrument_name=row.instrument_name,
        order_id=row.order_id,
        target_delta=float(row.target_delta),
        move_position_delta=float(row.move_position_delta),
        min_expire_days=row.min_expire_days,
        tv_id=row.tv_id,
        record_type=RecordType(row.record_type),
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


def _apply_query(statement: Any, query: RecordQuery) -> Any:
    if query.account_id is not None:
        statement = statement.where(DeltaRecord.account_id == query.account_id)
    if query.instrument_name is not None:
        statement = statement.where(DeltaRecord.instrument_name == query.instrument_name)
    if query.order_id is not None:
        statement = statement.where(DeltaRecord.order_id == query.order_id)
    if query.tv_id is not None:
        statement = statement.where(DeltaRecord.tv_id == query.tv_id)
    if query.record_type is not None:
        statement = statement.where(DeltaRecord.record_type == _coerce_record_type(query.record_type))
    return statement


class DeltaTargetLedger:
    """Transactional store of delta-target records."""

    def __init__(self, session_factory: sessionmaker[Session], *, clock: HedgerClock | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or HedgerClock()
        # Serializes writers in this process; the unique indexes cover other processes.
        self._write_lock = threading.RLock()

    @contextmanager
    def _write_session(self) -> Iterator[Session]:
        with self._write_lock:
            with self._session_factory() as session:
                with session.begin():
                    yield session

    @contextmanager
    def _read_session(self) -> Iterator[Session]:
        with self._session_factory() as session:
            yield session

    def _now(self) -> datetime:
        return self._clock.now_utc()

    # ---- reads -------------------------------------------------------

    def get_record(self, record_id: int) -> Optional[DeltaTargetRecord]:
        with self._read_session() as session:
            row = session.get(DeltaRecord, record_id)
            return None if row is None else _to_record(row)

    def get_records(self, query: RecordQuery | None = None) -> list[DeltaTargetRecord]:
        """Matching records, newest first."""
        statement = _apply_query(select(DeltaRecord), query or RecordQuery())
        statement = statement.order_by(DeltaRecord.created_at.desc(), DeltaRecord.id.desc())
        with self._read_session() as session:
            return [_to_record(row) for row in session.scalars(statement)]

    def get_records_for(self, account_id: str, instrument_name: str | None = None) -> list[DeltaTargetRecord]:
        return self.get_records(RecordQuery(account_id=account_id, instrument_name=instrument_name))

    def get_record_by_order_id(self, order_id: str) -> Optional[DeltaTargetRecord]:
        with self._read_session() as session:
            row = session.scalars(select(DeltaRecord).where(DeltaRecord.order_id == order_id)).first()
            return None if row is None else _to_record(row)

    def get_latest_record(
        self,
        account_id: str,
        instrument_name: str,
        record_type: RecordType | None = RecordType.POSITION,
    ) -> Optional[DeltaTargetRecord]:
        """Most recently created record for the pair; ties resolve to the highest id."""
        statement = _apply_query(
            select(DeltaRecord),
            RecordQuery(account_id=account_id, instrument_name=instrument_name, record_type=record_type),
        )
        statement = statement.order_by(DeltaRecord.created_at.desc(), DeltaRecord.id.desc()).limit(1)
        with self._read_session() as session:
            row = session.scalars(statement).first()
            return None if row is None else _to_record(row)

    # ---- writes ------------------------------------------------------

    def _insert(self, session: Session, values: dict[str, Any]) -> DeltaRecord:
        now = self._now()
        row = DeltaRecord(**values, created_at=now, updated_at=now)
        session.add(row)
        session.flush()
        return row

    def _find_position(self, session: Session, account_id: str, instrument_name: str) -> Optional[DeltaRecord]:
        return session.scalars(
            select(DeltaRecord).where(
                DeltaRecord.account_id == account_id,
                DeltaRecord.instrument_name == instrument_name,
                DeltaRecord.record_type == RecordType.POSITION,
            )
        ).first()

    def _find_by_order_id(self, session: Session, order_id: str) -> Optional[DeltaRecord]:
        return session.scalars(select(DeltaRecord).where(DeltaRecord.order_id == order_id)).first()

    def _refresh_targets(self, row: DeltaRecord, values: dict[str, Any]) -> None:
        row.target_delta = values["target_delta"]
        row.move_position_delta = values["move_position_delta"]
        row.min_expire_days = values["min_expire_days"]
        row.tv_id = values["tv_id"]
        row.updated_at = self._now()

    def _upsert_in(self, session: Session, values: dict[str, Any]) -> DeltaRecord:
        if values["record_type"] == RecordType.POSITION:
            existing = self._find_position(session, values["account_id"], values["instrument_name"])
            if existing is not None:
                self._refresh_targets(existing, values)
                session.flush()
                return existing
            return self._insert(session, values)

        existing = self._find_by_order_id(session, values["order_id"])
        if existing is None:
            return self._insert(session, values)
        if existing.record_type != RecordType.ORDER or existing.account_id != values["account_id"]:
            raise DuplicateRecord(f"order_id {values['order_id']} already tracked by record {existing.id}")
        existing.instrument_name = values["instrument_name"]
        self._refresh_targets(existing, values)
        session.flush()
        return existing

    def create_record(self, record: DeltaTargetInput) -> DeltaTargetRecord:
        """Plain insert; a clash with an existing key raises DuplicateRecord."""
        values = _input_values(record)
        try:
            with self._write_session() as session:
                row = self._insert(session, values)
                created = _to_record(row)
        except IntegrityError as exc:
            raise DuplicateRecord(
                f"Record already exists: {values['account_id']}/{values['instrument_name']}/{values['order_id'] or 'position'}"
            ) from exc
        logger.info(
            "Created delta record id=%s %s/%s type=%s target=%s",
            created.id,
            created.account_id,
            created.instrument_name,
            created.record_type.value,
            created.target_delta,
        )
        return created

    def upsert_record(self, record: DeltaTargetInput) -> DeltaTargetRecord:
        """Insert, or refresh targets in place on the position key or order id."""
        return self.batch_upsert((record,))[0]

    def upsert_position(self, record: DeltaTargetInput) -> DeltaTargetRecord:
        if record.record_type != RecordType.POSITION:
            raise ValidationError("upsert_position requires record_type=position")
        return self.upsert_record(record)

    def batch_upsert(self, records: Sequence[DeltaTargetInput]) -> list[DeltaTargetRecord]:
        """Upsert every input in one transaction; any failure rolls back all of them."""
        values_list = [_input_values(record) for record in records]
        if not values_list:
            return []
        for attempt in range(1, _UPSERT_ATTEMPTS + 1):
            try:
                with self._write_session() as session:
                    # Snapshot after each input; a later input may refresh the same row.
                    results = [_to_record(self._upsert_in(session, values)) for values in values_list]
            except IntegrityError as exc:
                # Another process inserted the same key between our read and write.
                if attempt == _UPSERT_ATTEMPTS:
                    raise DuplicateRecord(f"Upsert conflicted with a concurrent writer: {exc.orig}") from exc
                logger.warning("Upsert conflict, retrying (attempt %s)", attempt)
                continue
            logger.info("Upserted %s delta record(s)", len(results))
            return results
        raise AssertionError("unreachable")

    def update_record(self, record_id: int, patch: RecordPatch) -> Optional[DeltaTargetRecord]:
        """Apply a partial update; returns None when the id does not exist."""
        changes = patch.changes()
        if not changes:
            raise ValidationError("Update patch is empty")
        try:
            with self._write_session() as session:
                row = session.get(DeltaRecord, record_id)
                if row is None:
                    return None
                merged = _validate_fields(
                    {
                        "account_id": row.account_id,
                        "instrument_name": changes.get("instrument_name", row.instrument_name),
                        "order_id": changes.get("order_id", row.order_id),
                        "target_delta": changes.get("target_delta", row.target_delta),
                        "move_position_delta": changes.get("move_position_delta", row.move_position_delta),
                        "min_expire_days": changes.get("min_expire_days", row.min_expire_days),
                        "tv_id": changes.get("tv_id", row.tv_id),
                        "record_type": changes.get("record_type", row.record_type),
                    }
                )
                for key in changes:
                    setattr(row, key, merged[key])
                row.updated_at = self._now()
                session.flush()
                updated = _to_record(row)
        except IntegrityError as exc:
            raise DuplicateRecord(f"Update of record {record_id} violates a uniqueness constraint") from exc
        logger.info("Updated delta record id=%s fields=%s", record_id, sorted(changes))
        return updated

    def replace_record(self, old_record_id: int, replacement: DeltaTargetInput) -> DeltaTargetRecord:
        """Delete one record and upsert its successor atomically."""
        values = _input_values(replacement)
        try:
            with self._write_session() as session:
                old = session.get(DeltaRecord, old_record_id)
                if old is not None:
                    session.delete(old)
                    session.flush()
                row = self._upsert_in(session, values)
                result = _to_record(row)
        except IntegrityError as exc:
            raise DuplicateRecord(f"Replacement of record {old_record_id} violates a uniqueness constraint") from exc
        logger.info(
            "Replaced delta record id=%s with id=%s (%s)",
            old_record_id,
            result.id,
            result.instrument_name,
        )
        return result

    def delete_record(self, record_id: int) -> bool:
        with self._write_session() as session:
            result = session.execute(delete(DeltaRecord).where(DeltaRecord.id == record_id))
            deleted = result.rowcount > 0
        if deleted:
            logger.info("Deleted delta record id=%s", record_id)
        return deleted

    def delete_records(self, query: RecordQuery) -> int:
        """Delete every match; an empty query is refused rather than wiping the table."""
        if query.is_empty():
            raise ValidationError("Refusing to delete with an empty query")
        with self._write_session() as session:
            result = session.execute(_apply_query(delete(DeltaRecord), query))
            count = int(result.rowcount or 0)
        logger.info("Deleted %s delta record(s) matching %s", count, query)
        return count

    def delete_expired_orders(self, grace_days: int = 7) -> int:
        """Purge order records created more than grace_days ago."""
        if grace_days < 0:
            raise ValidationError("grace_days must be >= 0")
        cutoff = self._now() - timedelta(days=grace_days)
        with self._write_session() as session:
            result = session.execute(
                delete(DeltaRecord).where(
                    DeltaRecord.record_type == RecordType.ORDER,
                    DeltaRecord.created_at < cutoff,
                )
            )
            count = int(result.rowcount or 0)
        logger.info("Purged %s expired order record(s) older than %s day(s)", count, grace_days)
        return count

    def delete_expired_option_records(self, grace_days: int = 7) -> int:
        """Purge records whose instrument expired more than grace_days ago."""
        if grace_days < 0:
            raise ValidationError("grace_days must be >= 0")
        cutoff = self._now() - timedelta(days=grace_days)
        with self._write_session() as session:
            rows = session.execute(select(DeltaRecord.id, DeltaRecord.instrument_name)).all()
            expired_ids = []
            for record_id, instrument_name in rows:
                expiry = parse_instrument_expiry(instrument_name)
                if expiry is not None and expiry < cutoff:
                    expired_ids.append(record_id)
            if expired_ids:
                session.execute(delete(DeltaRecord).where(DeltaRecord.id.in_(expired_ids)))
        logger.info("Purged %s record(s) on instruments expired before %s", len(expired_ids), utc_iso(cutoff))
        return len(expired_ids)

    # ---- reporting ---------------------------------------------------

    def get_stats(self) -> LedgerStats:
        with self._read_session() as session:
            counts = dict(
                session.execute(select(DeltaRecord.record_type, func.count()).group_by(DeltaRecord.record_type)).all()
            )
            accounts = session.scalars(
                select(DeltaRecord.account_id).distinct().order_by(DeltaRecord.account_id)
            ).all()
            instruments = session.scalars(
                select(DeltaRecord.instrument_name).distinct().order_by(DeltaRecord.instrument_name)
            ).all()
        positions = int(counts.get(RecordType.POSITION, 0))
        orders = int(counts.get(RecordType.ORDER, 0))
        return LedgerStats(
            total_records=positions + orders,
            position_records=positions,
            order_records=orders,
            accounts=tuple(accounts),
            instruments=tuple(instruments),
        )

    @staticmethod
    def _delta_columns() -> tuple[Any, ...]:
        return (
            func.coalesce(func.sum(DeltaRecord.target_delta), 0.0),
            func.coalesce(
                func.sum(case((DeltaRecord.record_type == RecordType.POSITION, DeltaRecord.target_delta), else_=0.0)),
                0.0,
            ),
            func.coalesce(
                func.sum(case((DeltaRecord.record_type == RecordType.ORDER, DeltaRecord.target_delta), else_=0.0)),
                0.0,
            ),
            func.count(),
        )

    def get_account_summary(self, account_id: str | None = None) -> list[AccountDeltaSummary]:
        statement = select(DeltaRecord.account_id, *self._delta_columns())
        if account_id is not None:
            statement = statement.where(DeltaRecord.account_id == account_id)
        statement = statement.group_by(DeltaRecord.account_id).order_by(DeltaRecord.account_id)
        with self._read_session() as session:
            rows = session.execute(statement).all()
        return [
            AccountDeltaSummary(
                account_id=row[0],
                total_delta=float(row[1]),
                position_delta=float(row[2]),
                order_delta=float(row[3]),
                record_count=int(row[4]),
            )
            for row in rows
        ]

    def get_instrument_summary(self, instrument_name: str | None = None) -> list[InstrumentDeltaSummary]:
        statement = select(DeltaRecord.instrument_name, *self._delta_columns())
        accounts_statement = select(DeltaRecord.instrument_name, DeltaRecord.account_id).distinct()
        if instrument_name is not None:
            statement = statement.where(DeltaRecord.instrument_name == instrument_name)
            accounts_statement = accounts_statement.where(DeltaRecord.instrument_name == instrument_name)
        statement = statement.group_by(DeltaRecord.instrument_name).order_by(DeltaRecord.instrument_name)
        with self._read_session() as session:
            rows = session.execute(statement).all()
            account_rows = session.execute(accounts_statement).all()
        accounts_by_instrument: dict[str, list[str]] = {}
        for name, account in account_rows:
            accounts_by_instrument.setdefault(name, []).append(account)
        return [
            InstrumentDeltaSummary(
                instrument_name=row[0],
                total_delta=float(row[1]),
                position_delta=float(row[2]),
                order_delta=float(row[3]),
                record_count=int(row[4]),
                accounts=tuple(sorted(accounts_by_instrument.get(row[0], ()))),
            )
            for row in rows
        ]

    def export_data(self, query: RecordQuery | None = None) -> str:
        """JSON document with export time, stats and the matching records."""
        records = self.get_records(query)
        stats = self.get_stats()
        return json.dumps(
            {
                "export_time": utc_iso(self._now()),
                "stats": asdict(stats),
                "records": [record.as_payload() for record in records],
            },
            indent=2,
            sort_keys=True,
        )
