"""
store/memory.py — In-process schedule store with a retention cap.

Keeps at most `max_extractions` dates; when a new date pushes past the cap
the extraction received longest ago is evicted. Nothing survives a restart.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Optional

from timp_relay.core.protocol import COUNTER_FIELDS, ScheduleData

from .base import ClassRecord, DateLocks, Extraction, ScheduleStore, StoreStats, instructor_key

log = logging.getLogger(__name__)


class MemoryScheduleStore(ScheduleStore):
    def __init__(self, max_extractions: int = 100):
        if max_extractions < 1:
            raise ValueError("max_extractions must be at least 1")
        self.max_extractions = max_extractions
        self._locks = DateLocks()
        self._mutex = threading.RLock()
        # fecha → Extraction, oldest received first
        self._extractions: OrderedDict[date, Extraction] = OrderedDict()

    def replace_by_date(
        self,
        data: ScheduleData,
        source: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> Extraction:
        with self._locks.hold(data.fecha):
            extraction = Extraction(
                id=str(uuid.uuid4()),
                fecha=data.fecha,
                received_at=datetime.now(timezone.utc),
                total_clases=data.declared_total,
                url=data.url,
                timestamp=data.timestamp,
                source=source,
                source_id=source_id,
            )
            for position, clase in enumerate(data.clases):
                counters = {name: getattr(clase, name) for name in COUNTER_FIELDS}
                negative = [name for name, value in counters.items() if value < 0]
                if negative:
                    log.warning(f"Skipped class #{position} '{clase.nombre}' for {data.fecha}: negative {', '.join(negative)}")
                    continue
                extraction.clases.append(ClassRecord(
                    id=str(uuid.uuid4()),
                    extraction_id=extraction.id,
                    fecha=data.fecha,
                    position=position,
                    nombre=clase.nombre,
                    hora_inicio=clase.hora_inicio,
                    hora_fin=clase.hora_fin,
                    instructor=clase.instructor,
                    **counters,
                ))

            with self._mutex:
                previous = self._extractions.pop(data.fecha, None)
                if previous is not None:
                    log.info(f"Superseding extraction {previous.id} for {data.fecha} ({len(previous.clases)} classes removed)")
                self._extractions[data.fecha] = extraction
                while len(self._extractions) > self.max_extractions:
                    evicted_date, evicted = self._extractions.popitem(last=False)
                    log.debug(f"Retention cap reached, evicted extraction {evicted.id} for {evicted_date}")

        log.info(f"Stored extraction {extraction.id} for {data.fecha}: {len(extraction.clases)}/{len(data.clases)} classes")
        return self._copy(extraction)

    @staticmethod
    def _copy(extraction: Extraction) -> Extraction:
        return replace(extraction, clases=[replace(c) for c in extraction.clases])

    def _all(self) -> list[Extraction]:
        with self._mutex:
            return list(self._extractions.values())

    def get_extraction(self, fecha: date) -> Optional[Extraction]:
        with self._mutex:
            extraction = self._extractions.get(fecha)
        return self._copy(extraction) if extraction else None

    def classes_by_date(self, fecha: date) -> list[ClassRecord]:
        extraction = self.get_extraction(fecha)
        return extraction.clases if extraction else []

    def classes_by_instructor(self, instructor: str) -> list[ClassRecord]:
        key = instructor_key(instructor)
        return [
            replace(c)
            for e in sorted(self._all(), key=lambda e: e.fecha)
            for c in e.clases
            if instructor_key(c.instructor) == key
        ]

    def classes_by_date_range(self, start: date, end: date) -> list[ClassRecord]:
        return [
            replace(c)
            for e in sorted(self._all(), key=lambda e: e.fecha)
            if start <= e.fecha <= end
            for c in e.clases
        ]

    def recent_extractions(self, limit: int = 10) -> list[Extraction]:
        newest_first = sorted(self._all(), key=lambda e: e.received_at, reverse=True)
        return [self._copy(e) for e in newest_first[:limit]]

    def aggregate_stats(self) -> StoreStats:
        extractions = self._all()
        stats = StoreStats(total_extractions=len(extractions))
        instructors: set[str] = set()
        for extraction in extractions:
            stats.total_classes += len(extraction.clases)
            for clase in extraction.clases:
                if clase.instructor:
                    instructors.add(clase.instructor)
                for name in COUNTER_FIELDS:
                    stats.totals[name] += getattr(clase, name)
        stats.instructors = len(instructors)
        if extractions:
            stats.first_date = min(e.fecha for e in extractions)
            stats.last_date = max(e.fecha for e in extractions)
        return stats
