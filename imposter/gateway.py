"""
Connection gateway: binds client channels to room sessions.

Inbound frames are ``{"type": <event>, ...payload}``. Room entry and exit
(create, join, leave, disconnect) are handled here; game events are passed
to the room's ``RoomSession`` and chat/voice frames are relayed through it.
"""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import WebSocket

from .config import Settings, settings as default_settings
from .models import Connection
from .registry import RoomRegistry
from .session import Event, GameError, Outcome, RoomSession

logger = logging.getLogger(__name__)

GAME_EVENTS = {e.value: e for e in Event}

VOICE_SIGNALS = {
    "voice-offer": "offer",
    "voice-answer": "answer",
    "voice-ice-candidate": "candidate",
}


@dataclass(eq=False)
class WebSocketConnection:
    websocket: WebSocket
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    async def send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(message, ensure_ascii=False))


class ConnectionGateway:
    def __init__(self, registry: RoomRegistry, settings: Optional[Settings] = None) -> None:
        self.registry = registry
        self.settings = settings or default_settings
        # connection id -> room code
        self._bindings: Dict[str, str] = {}

    async def _reply(self, conn: Connection, msg: Dict[str, Any]) -> None:
        try:
            await conn.send(msg)
        except Exception as exc:
            logger.warning("send to %s failed: %s", conn.id, exc)

    async def _error(self, conn: Connection, message: str) -> None:
        await self._reply(conn, {"type": "room-error", "message": message})

    def session_for(self, conn: Connection) -> Optional[RoomSession]:
        code = self._bindings.get(conn.id)
        if code is None:
            return None
        session = self.registry.find_room(code)
        if session is None or not session.is_member(conn.id):
            # Room gone or player kicked
            self._bindings.pop(conn.id, None)
            return None
        return session

    def _clean_name(self, raw: Any) -> str:
        if not isinstance(raw, str):
            return ""
        return raw.strip()[: self.settings.name_max_length]

    async def connect(self, conn: Connection) -> None:
        await self._reply(conn, {"type": "hello", "connection_id": conn.id})

    async def disconnect(self, conn: Connection) -> None:
        await self._leave(conn)

    async def _leave(self, conn: Connection) -> None:
        code = self._bindings.pop(conn.id, None)
        if code is None:
            return
        session = self.registry.find_room(code)
        if session is None:
            return
        await session.remove_player(conn.id)
        self.registry.remove_if_empty(code)

    async def create_room(self, conn: Connection, player_name: Any) -> Optional[RoomSession]:
        if self.session_for(conn) is not None:
            await self._error(conn, "Leave your current room first.")
            return None
        name = self._clean_name(player_name)
        if not name:
            await self._error(conn, "Enter your name.")
            return None
        session = self.registry.create_room(conn.id, name)
        self._bindings[conn.id] = session.code
        await session.welcome(conn, created=True)
        return session

    async def join_room(self, conn: Connection, room_code: Any, player_name: Any) -> Optional[RoomSession]:
        if self.session_for(conn) is not None:
            await self._error(conn, "Leave your current room first.")
            return None
        name = self._clean_name(player_name)
        if not name:
            await self._error(conn, "Enter your name.")
            return None
        if not isinstance(room_code, str) or not room_code.strip():
            await self._error(conn, "Enter a room code.")
            return None
        session = self.registry.find_room(room_code)
        if session is None:
            await self._error(conn, "Room not found.")
            return None
        try:
            await session.join(conn, name)
        except GameError as exc:
            await self._error(conn, str(exc))
            return None
        self._bindings[conn.id] = session.code
        return session

    async def handle_message(self, conn: Connection, data: Dict[str, Any]) -> Optional[Outcome]:
        """Dispatch one inbound frame. Returns the session outcome for game events."""
        kind = data.get("type")
        if not isinstance(kind, str):
            logger.warning("frame without type from %s", conn.id)
            return None

        if kind == "ping":
            await self._reply(conn, {"type": "pong"})
            return None
        if kind == "create-room":
            await self.create_room(conn, data.get("player_name"))
            return None
        if kind == "join-room":
            await self.join_room(conn, data.get("room_code"), data.get("player_name"))
            return None

        session = self.session_for(conn)
        if session is None:
            logger.debug("%s from %s outside any room", kind, conn.id)
            return None

        if kind == "leave-room":
            await self._leave(conn)
        elif kind in GAME_EVENTS:
            return await session.handle(conn.id, GAME_EVENTS[kind], data)
        elif kind == "chat-message":
            await session.relay_chat(conn.id, data.get("message"))
        elif kind == "voice-join":
            await session.voice_join(conn.id)
        elif kind == "voice-leave":
            await session.voice_leave(conn.id)
        elif kind in VOICE_SIGNALS:
            await session.voice_signal(conn.id, kind, data.get("target_id"), data.get(VOICE_SIGNALS[kind]))
        elif kind == "voice-mute-status":
            await session.voice_mute(conn.id, data.get("muted"))
        else:
            logger.warning("unknown message type %r from %s", kind, conn.id)
        return None
