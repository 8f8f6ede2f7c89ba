from __future__ import annotations

import logging
import random
from typing import Dict, Iterator, Optional

from .config import Settings, settings as default_settings
from .models import Player, Room, RoomSettings
from .session import RoomSession

logger = logging.getLogger(__name__)

# No 0/O or 1/I
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class RoomRegistry:
    """Live rooms keyed by code. One instance per process, passed to the gateway."""

    def __init__(self, settings: Optional[Settings] = None, rng: Optional[random.Random] = None) -> None:
        self.settings = settings or default_settings
        self.rng = rng or random.Random()
        self._sessions: Dict[str, RoomSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, code: object) -> bool:
        return code in self._sessions

    def __iter__(self) -> Iterator[RoomSession]:
        return iter(list(self._sessions.values()))

    def generate_code(self) -> str:
        while True:
            code = "".join(self.rng.choice(ROOM_CODE_ALPHABET) for _ in range(self.settings.room_code_length))
            if code not in self._sessions:
                return code

    def create_room(self, host_id: str, host_name: str) -> RoomSession:
        code = self.generate_code()
        room = Room(
            code=code,
            host_id=host_id,
            players=[Player(connection_id=host_id, name=host_name)],
            settings=RoomSettings(),
        )
        session = RoomSession(room, settings=self.settings, rng=self.rng)
        self._sessions[code] = session
        logger.info("[Room %s] created by %s", code, host_name)
        return session

    def find_room(self, code: Optional[str]) -> Optional[RoomSession]:
        if not isinstance(code, str):
            return None
        return self._sessions.get(code.strip().upper())

    def remove_if_empty(self, code: str) -> bool:
        session = self._sessions.get(code)
        if session is None or session.room.players:
            return False
        del self._sessions[code]
        session.close()
        logger.info("[Room %s] destroyed", code)
        return True
