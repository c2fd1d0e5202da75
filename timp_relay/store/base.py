"""
store/base.py — Schedule store contract and the records it returns.

One Extraction per calendar date. replace_by_date() destructively supersedes
whatever was stored for that date; reads never mutate.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Iterator, Optional

from timp_relay.core.protocol import COUNTER_FIELDS, ScheduleData


@dataclass
class ClassRecord:
    id: str
    extraction_id: str
    fecha: date
    position: int
    nombre: str = ""
    hora_inicio: str = ""
    hora_fin: str = ""
    instructor: str = ""
    reservadas: int = 0
    asistidas: int = 0
    no_show: int = 0
    salida_anticipada: int = 0
    confirmadas: int = 0
    canceladas: int = 0
    ausentes: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "extractionId": self.extraction_id,
            "fecha": self.fecha.isoformat(),
            "nombre": self.nombre,
            "horaInicio": self.hora_inicio,
            "horaFin": self.hora_fin,
            "instructor": self.instructor,
            "reservadas": self.reservadas,
            "asistidas": self.asistidas,
            "noShow": self.no_show,
            "salidaAnticipada": self.salida_anticipada,
            "confirmadas": self.confirmadas,
            "canceladas": self.canceladas,
            "ausentes": self.ausentes,
        }


@dataclass
class Extraction:
    id: str
    fecha: date
    received_at: datetime
    total_clases: int
    url: Optional[str] = None
    timestamp: Optional[str] = None
    source: Optional[str] = None
    source_id: Optional[str] = None
    clases: list[ClassRecord] = field(default_factory=list)

    def to_dict(self, include_classes: bool = True) -> dict:
        data = {
            "id": self.id,
            "fecha": self.fecha.isoformat(),
            "url": self.url,
            "timestamp": self.timestamp,
            "source": self.source,
            "sourceId": self.source_id,
            "totalClases": self.total_clases,
            "receivedAt": self.received_at.isoformat(),
        }
        if include_classes:
            data["clases"] = [c.to_dict() for c in self.clases]
        return data


@dataclass
class StoreStats:
    total_extractions: int = 0
    total_classes: int = 0
    instructors: int = 0
    first_date: Optional[date] = None
    last_date: Optional[date] = None
    totals: dict[str, int] = field(default_factory=lambda: {name: 0 for name in COUNTER_FIELDS})

    def to_dict(self) -> dict:
        data = asdict(self)
        data["first_date"] = self.first_date.isoformat() if self.first_date else None
        data["last_date"] = self.last_date.isoformat() if self.last_date else None
        return data


class DateLocks:
    """Per-date critical sections for the delete-then-insert sequence.

    A date's lock lives only while someone holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[date, threading.Lock] = {}
        self._users: dict[date, int] = {}

    @contextmanager
    def hold(self, fecha: date) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(fecha, threading.Lock())
            self._users[fecha] = self._users.get(fecha, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[fecha] -= 1
                if not self._users[fecha]:
                    del self._users[fecha]
                    del self._locks[fecha]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def instructor_key(name: str) -> str:
    """Normalized form used for case-insensitive instructor lookups."""
    return name.strip().casefold()


class ScheduleStore(ABC):
    """Overwrite-by-date persistence for extractions and their classes."""

    @abstractmethod
    def replace_by_date(
        self,
        data: ScheduleData,
        source: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> Extraction:
        """
        Supersede any stored extraction for data.fecha with this one.

        Raises StorageError if the extraction row itself cannot be written.
        Individual class rows that fail are logged and left out of the result.
        """

    @abstractmethod
    def get_extraction(self, fecha: date) -> Optional[Extraction]: ...

    @abstractmethod
    def classes_by_date(self, fecha: date) -> list[ClassRecord]: ...

    @abstractmethod
    def classes_by_instructor(self, instructor: str) -> list[ClassRecord]: ...

    @abstractmethod
    def classes_by_date_range(self, start: date, end: date) -> list[ClassRecord]: ...

    @abstractmethod
    def recent_extractions(self, limit: int = 10) -> list[Extraction]: ...

    @abstractmethod
    def aggregate_stats(self) -> StoreStats: ...

    def close(self) -> None:
        pass
