"""Shared fixtures and utilities for Imposter tests."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
from httpx import AsyncClient, ASGITransport

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from imposter.config import Settings
from imposter.gateway import ConnectionGateway
from imposter.models import Phase, Player
from imposter.registry import RoomRegistry
from imposter.session import Event, RoomSession
from server import app


class FakeConnection:
    """In-memory client channel that records every frame sent to it."""

    def __init__(self, id: str) -> None:
        self.id = id
        self.sent: List[Dict[str, Any]] = []

    async def send(self, message: Dict[str, Any]) -> None:
        self.sent.append(message)

    def of_type(self, kind: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == kind]

    def last(self, kind: str) -> Optional[Dict[str, Any]]:
        found = self.of_type(kind)
        return found[-1] if found else None

    def clear(self) -> None:
        self.sent.clear()


class BrokenConnection(FakeConnection):
    async def send(self, message: Dict[str, Any]) -> None:
        raise ConnectionError("socket closed")


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, elimination_delay=0)


@pytest.fixture
def registry(settings: Settings) -> RoomRegistry:
    return RoomRegistry(settings)


@pytest.fixture
def gateway(registry: RoomRegistry, settings: Settings) -> ConnectionGateway:
    return ConnectionGateway(registry, settings)


async def open_room(
    gateway: ConnectionGateway,
    host: str = "Ann",
    names: Sequence[str] = ("Bob", "Cara", "Dee"),
) -> Tuple[RoomSession, FakeConnection, Dict[str, FakeConnection]]:
    """Create a room hosted by ``host`` and join every name in ``names``."""
    host_conn = FakeConnection(f"c-{host}")
    session = await gateway.create_room(host_conn, host)
    conns: Dict[str, FakeConnection] = {}
    for name in names:
        conn = FakeConnection(f"c-{name}")
        await gateway.join_room(conn, session.code, name)
        conns[name] = conn
    return session, host_conn, conns


async def start_game(
    session: RoomSession,
    host: FakeConnection,
    normal: str = "Apple",
    imposter: str = "Banana",
):
    return await session.handle(host.id, Event.START_GAME, {"normal_word": normal, "imposter_word": imposter})


def set_imposters(session: RoomSession, *names: str) -> None:
    """Overwrite the random role assignment (for testing specific scenarios)."""
    for p in session.room.participants():
        p.is_imposter = p.name in names


async def all_see_words(session: RoomSession, conns: Dict[str, FakeConnection]) -> None:
    for conn in conns.values():
        await session.handle(conn.id, Event.WORD_SEEN)


async def all_give_hints(session: RoomSession, conns: Dict[str, FakeConnection]) -> None:
    for name, conn in conns.items():
        player = session.room.get_player(conn.id)
        if player is not None and not player.eliminated:
            await session.handle(conn.id, Event.HINT_GIVEN)


async def reach_voting(
    session: RoomSession,
    host: FakeConnection,
    conns: Dict[str, FakeConnection],
    imposters: Sequence[str] = (),
) -> None:
    """Drive a fresh lobby room to the voting phase of round 1."""
    await start_game(session, host)
    if imposters:
        set_imposters(session, *imposters)
    await all_see_words(session, conns)
    await all_give_hints(session, conns)
    await session.handle(host.id, Event.START_DISCUSSION)
    await session.handle(host.id, Event.START_VOTING)
    assert session.room.phase == Phase.VOTING


async def vote(session: RoomSession, conn: FakeConnection, target: str):
    return await session.handle(conn.id, Event.SUBMIT_VOTE, {"voted_for": target})


async def settle() -> None:
    """Let deferred round advances run."""
    await asyncio.sleep(0.01)


def get_player(session: RoomSession, name: str) -> Player:
    player = session.room.find_by_name(name)
    assert player is not None
    return player


@pytest.fixture
async def client():
    """Async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
