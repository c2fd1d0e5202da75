"""
api/server.py — FastAPI app: relay WebSockets + read-only schedule API.

WebSocket:
  /ws/extension, /ws/dashboard, /ws   (see api/gateway.py)

REST:
  GET  /api/health                      liveness + uptime
  GET  /api/stats                       connected clients + store aggregates
  GET  /api/schedules?limit=N           most recently received extractions
  GET  /api/schedules/today             today's extraction (UTC date)
  GET  /api/schedules/range?start&end   classes between two dates (inclusive)
  GET  /api/schedules/{fecha}           one date's extraction
  GET  /api/instructors/{name}/classes  every stored class for an instructor
  POST /api/extract                     ask every extension to extract now
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from timp_relay import __version__
from timp_relay.config import Settings, get_settings
from timp_relay.core import ConnectionRegistry, MessageRouter, Role, StorageError
from timp_relay.core.protocol import utc_now_iso
from timp_relay.store import ScheduleStore, create_store

from .gateway import RealtimeGateway

log = logging.getLogger(__name__)


class ExtractBody(BaseModel):
    request_id: Optional[str] = Field(None, alias="requestId")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    log.info(f"timp-relay API starting on {settings.api.host}:{settings.api.port}")
    yield
    log.info("timp-relay API shutting down.")
    app.state.store.close()


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ScheduleStore] = None,
    registry: Optional[ConnectionRegistry] = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or create_store(settings.store)
    registry = registry or ConnectionRegistry()
    router = MessageRouter(registry, store)
    gateway = RealtimeGateway(registry, router)

    app = FastAPI(
        title="timp-relay",
        description="Schedule extraction relay between browser extensions and dashboards",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.router = router
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def query(fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except StorageError as e:
            log.error(f"Store query failed: {e}")
            raise HTTPException(status_code=503, detail="Schedule store unavailable")

    # ─────────────────────────────────────────────────────────────────
    # System
    # ─────────────────────────────────────────────────────────────────

    @app.get("/api/health", tags=["System"])
    async def health(request: Request):
        return {
            "status": "ok",
            "timestamp": utc_now_iso(),
            "uptime": round(time.monotonic() - request.app.state.started_at, 3),
            "version": __version__,
        }

    @app.get("/api/stats", tags=["System"])
    async def stats():
        store_stats = await query(store.aggregate_stats)
        return {
            "success": True,
            "stats": {
                "extensiones_conectadas": registry.count(Role.PRODUCER),
                "dashboards_conectados": registry.count(Role.OBSERVER),
                "sin_clasificar": registry.count(Role.UNCLASSIFIED),
                "total_horarios_guardados": store_stats.total_extractions,
                "store": store_stats.to_dict(),
                "timestamp": utc_now_iso(),
            },
        }

    # ─────────────────────────────────────────────────────────────────
    # Schedules (read-only)
    # ─────────────────────────────────────────────────────────────────

    @app.get("/api/schedules", tags=["Schedules"])
    async def recent_schedules(limit: int = Query(10, ge=1, le=500)):
        extractions = await query(store.recent_extractions, limit)
        return {
            "success": True,
            "count": len(extractions),
            "data": [e.to_dict() for e in extractions],
        }

    @app.get("/api/schedules/today", tags=["Schedules"])
    async def today_schedule():
        today = datetime.now(timezone.utc).date()
        extraction = await query(store.get_extraction, today)
        return {
            "success": True,
            "fecha": today.isoformat(),
            "count": len(extraction.clases) if extraction else 0,
            "data": extraction.to_dict() if extraction else None,
        }

    @app.get("/api/schedules/range", tags=["Schedules"])
    async def schedules_in_range(start: date, end: date):
        if start > end:
            raise HTTPException(status_code=422, detail="start must not be after end")
        classes = await query(store.classes_by_date_range, start, end)
        return {
            "success": True,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "count": len(classes),
            "data": [c.to_dict() for c in classes],
        }

    @app.get("/api/schedules/{fecha}", tags=["Schedules"])
    async def schedule_for_date(fecha: date):
        extraction = await query(store.get_extraction, fecha)
        if extraction is None:
            raise HTTPException(status_code=404, detail=f"No schedule stored for {fecha.isoformat()}")
        return {
            "success": True,
            "count": len(extraction.clases),
            "data": extraction.to_dict(),
        }

    @app.get("/api/instructors/{name}/classes", tags=["Schedules"])
    async def instructor_classes(name: str):
        classes = await query(store.classes_by_instructor, name)
        return {
            "success": True,
            "instructor": name,
            "count": len(classes),
            "data": [c.to_dict() for c in classes],
        }

    # ─────────────────────────────────────────────────────────────────
    # Manual extraction
    # ─────────────────────────────────────────────────────────────────

    @app.post("/api/extract", tags=["Relay"])
    async def extract(body: Optional[ExtractBody] = None):
        """Relay an extract_request to every connected extension."""
        request_id, delivered = await router.request_extraction(body.request_id if body else None)
        return {
            "success": True,
            "message": "Extract request sent" if delivered else "No extension connected",
            "requestId": request_id,
            "delivered": delivered,
        }

    # ─────────────────────────────────────────────────────────────────
    # WebSocket relay
    # ─────────────────────────────────────────────────────────────────

    @app.websocket("/ws/extension")
    async def extension_ws(websocket: WebSocket):
        await gateway.serve(websocket, Role.PRODUCER.value)

    @app.websocket("/ws/dashboard")
    async def dashboard_ws(websocket: WebSocket):
        await gateway.serve(websocket, Role.OBSERVER.value)

    @app.websocket("/ws")
    async def generic_ws(websocket: WebSocket):
        await gateway.serve(websocket)

    if settings.api.static_dir:
        if settings.api.static_dir.is_dir():
            app.mount("/", StaticFiles(directory=settings.api.static_dir, html=True), name="dashboard")
        else:
            log.warning(f"Dashboard directory {settings.api.static_dir} not found — not serving static files")

    return app
