"""store — Overwrite-by-date schedule persistence."""
from __future__ import annotations

from typing import TYPE_CHECKING

from .base import ClassRecord, Extraction, ScheduleStore, StoreStats
from .memory import MemoryScheduleStore
from .sql import SqlScheduleStore

if TYPE_CHECKING:
    from timp_relay.config import StoreSettings


def create_store(settings: "StoreSettings") -> ScheduleStore:
    if settings.backend == "memory":
        return MemoryScheduleStore(max_extractions=settings.max_extractions)
    return SqlScheduleStore(url=settings.url, echo=settings.echo)


__all__ = [
    "ClassRecord",
    "Extraction",
    "MemoryScheduleStore",
    "ScheduleStore",
    "SqlScheduleStore",
    "StoreStats",
    "create_store",
]
