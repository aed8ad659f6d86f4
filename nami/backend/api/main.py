"""
api/main.py

FastAPI application: REST pulls under /api and the snapshot push channel
at /ws.

WebSocket protocol:
    server → client  snapshot JSON on connect, then one per broadcast tick
    client → server  "ping"    → "pong"
                     "refresh" → details cache dropped, {"type": "refreshed"}
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.websockets import WebSocketDisconnect

from ..aggregator import SnapshotAggregator
from ..config import settings
from .broadcast import BroadcastHub
from .routes import telemetry as telemetry_router
from .serializers import ServerInfoResponse

logger = logging.getLogger(__name__)

VERSION = "2.1.0"

_aggregator: SnapshotAggregator | None = None
_hub: BroadcastHub | None = None


def set_aggregator(aggregator: SnapshotAggregator) -> None:
    global _aggregator
    _aggregator = aggregator


def get_aggregator() -> SnapshotAggregator:
    if _aggregator is None:
        raise RuntimeError("Aggregator not initialised — call set_aggregator() first")
    return _aggregator


def set_hub(hub: BroadcastHub) -> None:
    global _hub
    _hub = hub


def get_hub() -> BroadcastHub:
    if _hub is None:
        raise RuntimeError("BroadcastHub not initialised — call set_hub() first")
    return _hub


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("FastAPI startup")
        yield
        logger.info("FastAPI shutdown")

    app = FastAPI(
        title="Nami — Network Monitor",
        version=VERSION,
        description="Live interface, connection and per-process bandwidth telemetry",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(telemetry_router.router, prefix="/api")

    @app.get("/", response_model=ServerInfoResponse)
    async def index() -> ServerInfoResponse:
        return ServerInfoResponse(
            message=f"Nami Network Monitor Server v{VERSION}",
            version=VERSION,
            clients=get_hub().connection_count,
            bandwidthEnabled=get_aggregator().bandwidth_active(),
            endpoints={
                "websocket": "/ws",
                "interfaces": "/api/interfaces",
                "processes": "/api/processes",
                "bandwidth": "/api/bandwidth",
                "refresh": "/api/refresh",
            },
        )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "clients": get_hub().connection_count}

    @app.websocket("/ws")
    async def ws_snapshots(websocket: WebSocket):
        hub = get_hub()
        await websocket.accept()
        await hub.join(websocket)
        try:
            while True:
                message = await websocket.receive_text()
                if message == "ping":
                    await websocket.send_text("pong")
                elif message == "refresh":
                    get_aggregator().refresh_details()
                    await websocket.send_text(json.dumps({"type": "refreshed"}))
        except WebSocketDisconnect:
            pass
        finally:
            hub.leave(websocket)

    return app
