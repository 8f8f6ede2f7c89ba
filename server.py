from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from imposter.config import settings
from imposter.gateway import ConnectionGateway, WebSocketConnection
from imposter.registry import RoomRegistry

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

REGISTRY = RoomRegistry(settings)
GATEWAY = ConnectionGateway(REGISTRY, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Imposter room server starting on %s:%d", settings.host, settings.port)
    yield
    for session in REGISTRY:
        session.close()
    logger.info("Imposter room server shutting down.")


app = FastAPI(title="Imposter", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

BASE_DIR = Path(__file__).resolve().parent
WEB_DIR = BASE_DIR / "web"
if WEB_DIR.exists():
    app.mount("/static", StaticFiles(directory=str(WEB_DIR), html=True), name="static")


@app.get("/")
async def root():
    return {"ok": True, "hint": "Connect to /ws and send create-room or join-room."}


@app.get("/api/health")
async def health():
    return {"ok": True, "rooms": len(REGISTRY)}


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    conn = WebSocketConnection(websocket=ws)
    await GATEWAY.connect(conn)
    try:
        while True:
            msg = await ws.receive_text()
            try:
                data = json.loads(msg)
            except json.JSONDecodeError:
                logger.warning("malformed frame from %s", conn.id)
                continue
            if not isinstance(data, dict):
                logger.warning("non-object frame from %s", conn.id)
                continue
            await GATEWAY.handle_message(conn, data)
    except WebSocketDisconnect:
        pass
    finally:
        await GATEWAY.disconnect(conn)


if __name__ == "__main__":
    uvicorn.run("server:app", host=settings.host, port=settings.port)
