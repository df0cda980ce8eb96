"""FastAPI application exposing the voting session over a websocket."""

from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from .config import BackendSettings, load_settings
from .engine import VotingRoundEngine
from .gateway import SessionGateway
from .rooms import RoomLifecycleManager
from .security import generate_connection_id
from .store import SessionStore, create_store

log = structlog.get_logger(__name__)


class RoomWebSocketHub:
    """Holds the live sockets; the gateway addresses them by connection id."""

    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = generate_connection_id()
        self._connections[connection_id] = websocket
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def send(self, connection_id: str, message: dict[str, Any]) -> None:
        websocket = self._connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.send_json(message)
        except (RuntimeError, WebSocketDisconnect):
            log.warning("stale_connection_dropped", connection_id=connection_id)
            self.disconnect(connection_id)


def create_app(store: SessionStore | None = None, settings: BackendSettings | None = None) -> FastAPI:
    app = FastAPI(title="Planning Poker API", version="0.1.0")
    local_settings = settings if settings is not None else load_settings()
    session_store = store if store is not None else create_store()

    lifecycle = RoomLifecycleManager(
        session_store,
        max_room_name_length=local_settings.max_room_name_length,
        max_participant_name_length=local_settings.max_participant_name_length,
    )
    engine = VotingRoundEngine(session_store)
    websocket_hub = RoomWebSocketHub()
    gateway = SessionGateway(lifecycle=lifecycle, engine=engine, transport=websocket_hub)

    app.state.settings = local_settings
    app.state.websocket_hub = websocket_hub
    app.state.gateway = gateway

    @app.get("/api/stats")
    def get_stats() -> dict[str, Any]:
        stats = gateway.connection_stats()
        stats["openSockets"] = websocket_hub.connection_count
        stats["roomCount"] = session_store.room_count()
        stats["activeRoomCount"] = session_store.active_room_count()
        return stats

    @app.websocket("/ws")
    async def session_ws(websocket: WebSocket) -> None:
        connection_id = await websocket_hub.connect(websocket)
        log.info("connection_opened", connection_id=connection_id)
        try:
            while True:
                try:
                    message = json.loads(await websocket.receive_text())
                except (KeyError, ValueError):
                    # KeyError: binary frame, no "text" key
                    message = None
                await gateway.handle(connection_id, message)
        except WebSocketDisconnect:
            log.info("connection_closed", connection_id=connection_id)
        finally:
            websocket_hub.disconnect(connection_id)
            await gateway.connection_closed(connection_id)

    return app


app = create_app()
