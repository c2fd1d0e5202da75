"""
store/sql.py — SQLAlchemy-backed schedule store (SQLite by default).

Tables:
  extraction  one row per fecha (unique)
  clase       child rows, fecha denormalized for range queries

replace_by_date runs in three steps under a per-date lock:
  1. delete old classes + old extraction and insert the new extraction (one transaction)
  2. insert each class in its own transaction, logging rows that fail
  3. return what was stored
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from timp_relay.core.errors import StorageError
from timp_relay.core.protocol import COUNTER_FIELDS, ScheduleData

from .base import ClassRecord, DateLocks, Extraction, ScheduleStore, StoreStats, instructor_key

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ExtractionRow(Base):
    __tablename__ = "extraction"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    fecha: Mapped[date] = mapped_column(Date, nullable=False, unique=True)
    url: Mapped[Optional[str]] = mapped_column(Text)
    timestamp: Mapped[Optional[str]] = mapped_column(String(64))
    source: Mapped[Optional[str]] = mapped_column(String(32))
    source_id: Mapped[Optional[str]] = mapped_column(String(36))
    total_clases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class ClassRow(Base):
    __tablename__ = "clase"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    extraction_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("extraction.id", ondelete="CASCADE"), nullable=False, index=True
    )
    fecha: Mapped[date] = mapped_column(Date, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nombre: Mapped[str] = mapped_column(Text, default="")
    hora_inicio: Mapped[str] = mapped_column(String(16), default="")
    hora_fin: Mapped[str] = mapped_column(String(16), default="")
    instructor: Mapped[str] = mapped_column(Text, default="")
    instructor_key: Mapped[str] = mapped_column(Text, default="")
    reservadas: Mapped[int] = mapped_column(Integer, default=0)
    asistidas: Mapped[int] = mapped_column(Integer, default=0)
    no_show: Mapped[int] = mapped_column(Integer, default=0)
    salida_anticipada: Mapped[int] = mapped_column(Integer, default=0)
    confirmadas: Mapped[int] = mapped_column(Integer, default=0)
    canceladas: Mapped[int] = mapped_column(Integer, default=0)
    ausentes: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_clase_fecha_position", "fecha", "position"),
        Index("ix_clase_instructor_key", "instructor_key"),
        *(CheckConstraint(f"{name} >= 0", name=f"ck_clase_{name}_non_negative") for name in COUNTER_FIELDS),
    )


def _to_record(row: ClassRow) -> ClassRecord:
    return ClassRecord(
        id=row.id,
        extraction_id=row.extraction_id,
        fecha=row.fecha,
        position=row.position,
        nombre=row.nombre,
        hora_inicio=row.hora_inicio,
        hora_fin=row.hora_fin,
        instructor=row.instructor,
        **{name: getattr(row, name) for name in COUNTER_FIELDS},
    )


def _to_extraction(row: ExtractionRow, classes: list[ClassRecord]) -> Extraction:
    received_at = row.received_at
    if received_at.tzinfo is None:
        # SQLite drops the offset; everything we write is UTC
        received_at = received_at.replace(tzinfo=timezone.utc)
    return Extraction(
        id=row.id,
        fecha=row.fecha,
        received_at=received_at,
        total_clases=row.total_clases,
        url=row.url,
        timestamp=row.timestamp,
        source=row.source,
        source_id=row.source_id,
        clases=classes,
    )


def create_sql_engine(url: str, echo: bool = False) -> Engine:
    kwargs: dict = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class SqlScheduleStore(ScheduleStore):
    def __init__(self, url: str = "sqlite:///timp_relay.db", echo: bool = False, engine: Optional[Engine] = None):
        self.engine = engine or create_sql_engine(url, echo=echo)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._locks = DateLocks()
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not initialise schedule tables: {e}") from e
        log.info(f"Schedule store ready ({self.engine.url.render_as_string(hide_password=True)})")

    # ── Writes ────────────────────────────────────────────────────────

    def replace_by_date(
        self,
        data: ScheduleData,
        source: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> Extraction:
        with self._locks.hold(data.fecha), self._sessions() as session:
            try:
                with session.begin():
                    previous = session.scalar(select(ExtractionRow).where(ExtractionRow.fecha == data.fecha))
                    if previous is not None:
                        removed = session.execute(
                            delete(ClassRow).where(ClassRow.extraction_id == previous.id)
                        ).rowcount
                        session.delete(previous)
                        session.flush()
                        log.info(f"Superseding extraction {previous.id} for {data.fecha} ({removed} classes removed)")
                    row = ExtractionRow(
                        id=str(uuid.uuid4()),
                        fecha=data.fecha,
                        url=data.url,
                        timestamp=data.timestamp,
                        source=source,
                        source_id=source_id,
                        total_clases=data.declared_total,
                        received_at=datetime.now(timezone.utc),
                    )
                    session.add(row)
            except SQLAlchemyError as e:
                log.error(f"Could not store extraction for {data.fecha}: {e}")
                raise StorageError(f"Could not store extraction for {data.fecha}") from e

            # later per-row rollbacks expire `row`, so detach its values now
            extraction = _to_extraction(row, [])
            for position, clase in enumerate(data.clases):
                class_row = ClassRow(
                    id=str(uuid.uuid4()),
                    extraction_id=extraction.id,
                    fecha=data.fecha,
                    position=position,
                    nombre=clase.nombre,
                    hora_inicio=clase.hora_inicio,
                    hora_fin=clase.hora_fin,
                    instructor=clase.instructor,
                    instructor_key=instructor_key(clase.instructor),
                    **{name: getattr(clase, name) for name in COUNTER_FIELDS},
                )
                try:
                    with session.begin():
                        session.add(class_row)
                except SQLAlchemyError as e:
                    log.warning(f"Skipped class #{position} '{clase.nombre}' for {data.fecha}: {e.__class__.__name__}: {e}")
                    continue
                extraction.clases.append(_to_record(class_row))

        log.info(f"Stored extraction {extraction.id} for {data.fecha}: {len(extraction.clases)}/{len(data.clases)} classes")
        return extraction

    # ── Reads ─────────────────────────────────────────────────────────

    def _read(self, fn):
        try:
            with self._sessions() as session:
                return fn(session)
        except SQLAlchemyError as e:
            raise StorageError(f"Schedule query failed: {e}") from e

    @staticmethod
    def _classes_for(session: Session, extraction_ids: list[str]) -> dict[str, list[ClassRecord]]:
        grouped: dict[str, list[ClassRecord]] = {eid: [] for eid in extraction_ids}
        if not extraction_ids:
            return grouped
        rows = session.scalars(
            select(ClassRow)
            .where(ClassRow.extraction_id.in_(extraction_ids))
            .order_by(ClassRow.position)
        )
        for row in rows:
            grouped[row.extraction_id].append(_to_record(row))
        return grouped

    def get_extraction(self, fecha: date) -> Optional[Extraction]:
        def query(session: Session):
            row = session.scalar(select(ExtractionRow).where(ExtractionRow.fecha == fecha))
            if row is None:
                return None
            return _to_extraction(row, self._classes_for(session, [row.id])[row.id])
        return self._read(query)

    def classes_by_date(self, fecha: date) -> list[ClassRecord]:
        return self._read(lambda session: [
            _to_record(row)
            for row in session.scalars(
                select(ClassRow).where(ClassRow.fecha == fecha).order_by(ClassRow.position)
            )
        ])

    def classes_by_instructor(self, instructor: str) -> list[ClassRecord]:
        key = instructor_key(instructor)
        return self._read(lambda session: [
            _to_record(row)
            for row in session.scalars(
                select(ClassRow)
                .where(ClassRow.instructor_key == key)
                .order_by(ClassRow.fecha, ClassRow.position)
            )
        ])

    def classes_by_date_range(self, start: date, end: date) -> list[ClassRecord]:
        return self._read(lambda session: [
            _to_record(row)
            for row in session.scalars(
                select(ClassRow)
                .where(ClassRow.fecha >= start, ClassRow.fecha <= end)
                .order_by(ClassRow.fecha, ClassRow.position)
            )
        ])

    def recent_extractions(self, limit: int = 10) -> list[Extraction]:
        def query(session: Session):
            rows = list(session.scalars(
                select(ExtractionRow).order_by(ExtractionRow.received_at.desc()).limit(limit)
            ))
            classes = self._classes_for(session, [row.id for row in rows])
            return [_to_extraction(row, classes[row.id]) for row in rows]
        return self._read(query)

    def aggregate_stats(self) -> StoreStats:
        def query(session: Session):
            extractions, first_date, last_date = session.execute(
                select(func.count(ExtractionRow.id), func.min(ExtractionRow.fecha), func.max(ExtractionRow.fecha))
            ).one()
            counters = session.execute(
                select(
                    func.count(ClassRow.id),
                    func.count(func.distinct(func.nullif(ClassRow.instructor, ""))),
                    *(func.coalesce(func.sum(getattr(ClassRow, name)), 0) for name in COUNTER_FIELDS),
                )
            ).one()
            return StoreStats(
                total_extractions=extractions,
                total_classes=counters[0],
                instructors=counters[1],
                first_date=first_date,
                last_date=last_date,
                totals={name: int(value) for name, value in zip(COUNTER_FIELDS, counters[2:])},
            )
        return self._read(query)

    def close(self) -> None:
        self.engine.dispose()
