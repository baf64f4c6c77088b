#!/usr/bin/env python3
"""FastAPI application for the territory conquest engine."""

import asyncio
import contextlib
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from spatial.route import RoutePoint
from spatial.sync import Viewport
from territory.config import TerritoryConfig
from territory.engine import TerritoryEngine, create_store
from territory.exceptions import InvalidRouteError, TerritoryException
from territory.logging import configure_logging, get_logger
from territory.models import Activity, ActivityType, ensure_utc, utc_now

logger = get_logger(__name__)

# Global engine instance
engine: Optional[TerritoryEngine] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    global engine

    config = TerritoryConfig()
    configure_logging(config.log_level)
    logger.info("api.starting", backend=config.store_backend)

    engine = TerritoryEngine(create_store(config), config)
    await engine.initialize()

    yield

    logger.info("api.stopping")
    if engine:
        await engine.shutdown()
        engine = None


app = FastAPI(
    title="Territory",
    description="GPS route to grid cell conquest engine with live spatial sync",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _engine() -> TerritoryEngine:
    if not engine:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


# Request/Response Models
class RoutePointModel(BaseModel):
    latitude: float
    longitude: float
    timestamp: Optional[datetime] = None
    altitude: Optional[float] = None


class ActivityRequest(BaseModel):
    """A completed activity submitted for territory processing."""

    id: str
    user_id: str
    activity_type: ActivityType = ActivityType.RUN
    start_date: datetime
    end_date: datetime
    route: list[RoutePointModel] = Field(default_factory=list)

    def to_activity(self) -> Activity:
        return Activity(
            id=self.id,
            user_id=self.user_id,
            activity_type=self.activity_type,
            start_date=ensure_utc(self.start_date),
            end_date=ensure_utc(self.end_date),
            route=[
                RoutePoint(p.latitude, p.longitude, p.timestamp, p.altitude) for p in self.route
            ],
        )


class EngineStatus(BaseModel):
    initialized: bool
    backend: str
    sessions: int
    shard_subscriptions: int
    handlers: int
    pending_labels: int


# REST Endpoints
@app.get("/api")
async def api_info():
    """API information endpoint."""
    return {"name": "territory", "version": "0.1.0", "status": "running"}


@app.get("/status", response_model=EngineStatus)
async def get_status():
    return EngineStatus(**_engine().get_status())


@app.post("/activities")
async def submit_activity(request: ActivityRequest):
    """Resolve an activity route and apply it to the ownership ledger."""
    current = _engine()

    try:
        outcome = await current.complete_activity(request.to_activity())
    except InvalidRouteError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    body = outcome.to_dict()
    if outcome.result is not None:
        body["events"] = [event.to_dict() for event in outcome.result.events]
    return body


@app.get("/cells")
async def get_cells(
    ids: Optional[str] = None,
    min_lat: Optional[float] = None,
    min_lon: Optional[float] = None,
    max_lat: Optional[float] = None,
    max_lon: Optional[float] = None,
    lat: Optional[float] = None,
    lon: Optional[float] = None,
    radius: Optional[float] = None,
):
    """Look up cells by comma separated ids, bounding box, or radius around a point."""
    current = _engine()

    if ids:
        records = await current.sync.lookup_cells(i for i in ids.split(",") if i)
        cells = [records[cell_id].to_dict() for cell_id in sorted(records)]
    elif None not in (min_lat, min_lon, max_lat, max_lon):
        records = await current.store.query_bbox(min_lat, min_lon, max_lat, max_lon)
        cells = [record.to_dict() for record in records]
    elif None not in (lat, lon, radius):
        nearby = await current.sync.find_nearby(lat, lon, radius)
        cells = [{**record.to_dict(), "distance_meters": round(d, 1)} for record, d in nearby]
    else:
        raise HTTPException(status_code=400, detail="Provide ids, a bounding box, or lat/lon/radius")

    return {"count": len(cells), "cells": cells}


@app.get("/cells/{cell_id}/history")
async def get_cell_history(cell_id: str):
    current = _engine()
    record = await current.store.get_record(cell_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Cell {cell_id} not found")

    history = await current.store.get_history(cell_id)
    return {
        "cell": record.to_dict(),
        "count": len(history),
        "history": [entry.to_dict() for entry in history],
    }


@app.get("/users/{user_id}/cells")
async def get_user_cells(user_id: str, include_expired: bool = False):
    records = await _engine().sync.fetch_owner_cells(user_id, include_expired=include_expired)
    return {"count": len(records), "cells": [record.to_dict() for record in records]}


@app.get("/users/{user_id}/vengeance")
async def get_user_vengeance(user_id: str):
    now = utc_now()
    targets = await _engine().store.get_vengeance_targets(user_id)
    live = [target.to_dict() for target in targets if not target.is_expired(now)]
    return {"count": len(live), "targets": live}


@app.get("/users/{user_id}/rivalries")
async def get_user_rivalries(user_id: str):
    rivalries = await _engine().store.get_rivalries(user_id)
    return {"count": len(rivalries), "rivalries": [r.to_dict() for r in rivalries]}


@app.post("/admin/reconcile")
async def reconcile():
    report = await _engine().reconciler.run_full_sweep()
    return report.to_dict()


def _viewport_from_message(message: dict) -> Viewport:
    if "min_lat" in message:
        return Viewport.from_bounds(
            float(message["min_lat"]),
            float(message["min_lon"]),
            float(message["max_lat"]),
            float(message["max_lon"]),
        )
    return Viewport(
        center_lat=float(message["center_lat"]),
        center_lon=float(message["center_lon"]),
        lat_span=float(message["lat_span"]),
        lon_span=float(message["lon_span"]),
    )


# WebSocket endpoint for live cell views
@app.websocket("/ws/observe")
async def websocket_observe(websocket: WebSocket, user_id: Optional[str] = None):
    """Stream cell changes for the client's viewport and its vengeance targets.

    Client messages:
        {"type": "viewport", "min_lat": .., "min_lon": .., "max_lat": .., "max_lon": ..}
        {"type": "proactive", "latitude": .., "longitude": ..}
    """
    await websocket.accept()

    if not engine:
        await websocket.close(code=1011, reason="Engine not initialized")
        return

    outgoing: asyncio.Queue = asyncio.Queue()
    session = await engine.sync.open_session(user_id=user_id)

    session.on_change(
        lambda group, changes: outgoing.put_nowait(
            {"type": "cells", "group": group, "changes": [c.to_dict() for c in changes]}
        )
    )
    session.on_vengeance(
        lambda targets: outgoing.put_nowait(
            {"type": "vengeance", "targets": [t.to_dict() for t in targets]}
        )
    )

    async def sender():
        while True:
            await websocket.send_json(await outgoing.get())

    sender_task = asyncio.create_task(sender())
    logger.info("ws.observer_connected", session_id=session.session_id, user_id=user_id)

    try:
        while True:
            raw = await websocket.receive_text()

            try:
                message = json.loads(raw)
                if not isinstance(message, dict):
                    raise ValueError("Message must be a JSON object")
                kind = message.get("type")

                if kind == "viewport":
                    resubscribed = await session.update_viewport(_viewport_from_message(message))
                    synced = await session.wait_for_first_snapshot()
                    outgoing.put_nowait(
                        {"type": "viewport_ack", "resubscribed": resubscribed, "synced": synced}
                    )
                elif kind == "proactive":
                    await session.update_proactive(
                        float(message["latitude"]), float(message["longitude"])
                    )
                else:
                    outgoing.put_nowait({"type": "error", "detail": f"Unknown message: {kind}"})
            except (KeyError, TypeError, ValueError, TerritoryException) as e:
                outgoing.put_nowait({"type": "error", "detail": str(e)})

    except WebSocketDisconnect:
        logger.info("ws.observer_disconnected", session_id=session.session_id)
    finally:
        sender_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await sender_task
        if engine:
            await engine.sync.close_session(session.session_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
