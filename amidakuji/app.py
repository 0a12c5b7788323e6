"""FastAPI surface: the WebSocket channel plus the HTTP polling fallback."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from amidakuji.config import Settings
from amidakuji.events import ErrorMessage, dump
from amidakuji.hub import SyncHub
from amidakuji.store import SqliteStateStore, StateStore, StoreError

logger = logging.getLogger(__name__)


def _open_store(path: Path) -> StateStore | None:
    """Open the SQLite store, setting an unreadable file aside.

    Returns ``None`` (serve from memory only) if even a fresh file can't be opened.
    """
    try:
        return SqliteStateStore(path)
    except StoreError as exc:
        logger.error("Session store unusable, starting empty: %s", exc)
    for suffix in ("", "-wal", "-shm"):
        damaged = path.with_name(path.name + suffix)
        if damaged.exists():
            damaged.replace(damaged.with_name(damaged.name + ".corrupt"))
    try:
        return SqliteStateStore(path)
    except StoreError as exc:
        logger.error("No session store, serving from memory only: %s", exc)
        return None


def create_app(settings: Settings | None = None, store: StateStore | None = None) -> FastAPI:
    """Build the app around one hub. Without a *store*, SQLite at ``settings.db_path`` is used."""
    settings = settings or Settings.from_env()
    if store is None:
        store = _open_store(settings.db_path)

    hub = SyncHub(
        store=store,
        rail_count=settings.rail_count,
        flush_interval=settings.flush_interval,
        outbox_size=settings.outbox_size,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await hub.start()
        logger.info("Hub ready: %d rails", settings.rail_count)
        try:
            yield
        finally:
            await hub.stop()
            logger.info("Hub stopped")

    app = FastAPI(title="Amidakuji", lifespan=lifespan)
    app.state.hub = hub
    app.state.settings = settings

    @app.get("/state")
    async def get_state() -> JSONResponse:
        data = hub.snapshot().to_dict()
        data["rails"] = settings.rail_count
        return JSONResponse(data)

    @app.get("/health")
    async def health() -> JSONResponse:
        stats = hub.stats()
        return JSONResponse({
            "status": "ok",
            "connections": stats.connections,
            "accepted": stats.accepted,
            "rejected": stats.rejected,
            "persistence_failures": stats.persistence_failures,
        })

    @app.post("/events")
    async def post_event(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            error = dump(ErrorMessage(code="invalid-message", message="Body must be JSON."))
            return JSONResponse({"replies": [error], "state": hub.snapshot().to_dict()}, status_code=400)
        replies = await hub.receive(None, payload)
        status = 400 if any(r["type"] == "error" for r in replies) else 200
        return JSONResponse(
            {"replies": replies, "state": hub.snapshot().to_dict()},
            status_code=status,
        )

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        handle = await hub.connect(websocket)
        try:
            while True:
                try:
                    payload = await websocket.receive_json()
                except WebSocketDisconnect:
                    break
                except json.JSONDecodeError:
                    await hub.receive(handle, None)
                    continue
                await hub.receive(handle, payload)
        finally:
            await hub.disconnect(handle)

    return app
