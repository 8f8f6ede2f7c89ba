from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set


class Phase(str, Enum):
    LOBBY = "lobby"
    DISTRIBUTE = "distribute"
    HINTS = "hints"
    DISCUSSION = "discussion"
    VOTING = "voting"
    ELIMINATION = "elimination"
    GAME_OVER = "gameover"


class Winner(str, Enum):
    PEOPLE = "people"
    IMPOSTERS = "imposters"


class TieMethod(str, Enum):
    REVOTE = "revote"
    RANDOM = "random"
    SKIP = "skip"


class Connection(Protocol):
    """One client channel. ``send`` delivers a single JSON-able message."""

    id: str

    async def send(self, message: Dict[str, Any]) -> None: ...


@dataclass
class Player:
    connection_id: str
    name: str
    is_imposter: bool = False
    eliminated: bool = False


# (min, max, default) per field
SETTING_RANGES = {
    "timer_duration": (30, 300, 120),
    "imposter_count": (0, 5, 0),
    "max_rounds": (0, 20, 0),
    "hint_timer": (0, 120, 0),
}


@dataclass
class RoomSettings:
    timer_duration: int = 120
    imposter_count: int = 0  # 0 = auto
    max_rounds: int = 0  # 0 = unlimited
    hint_timer: int = 0  # 0 = off

    def update(self, partial: Dict[str, Any]) -> None:
        """Apply a partial update, clamping each value into its range.

        Unknown keys and non-numeric values are ignored field by field.
        """
        for key, (low, high, _default) in SETTING_RANGES.items():
            if key not in partial:
                continue
            value = partial[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                continue
            setattr(self, key, max(low, min(high, int(value))))

    def to_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class Words:
    normal: str = ""
    imposter: str = ""


@dataclass
class Room:
    code: str
    host_id: str
    players: List[Player] = field(default_factory=list)
    settings: RoomSettings = field(default_factory=RoomSettings)
    phase: Phase = Phase.LOBBY
    words: Words = field(default_factory=Words)
    round: int = 0
    votes: Dict[str, str] = field(default_factory=dict)
    candidates: List[str] = field(default_factory=list)
    is_revote: bool = False
    tied_players: List[str] = field(default_factory=list)
    last_results: List[List[Any]] = field(default_factory=list)
    word_seen: Set[str] = field(default_factory=set)
    hints_given: List[str] = field(default_factory=list)
    voice_participants: List[str] = field(default_factory=list)
    winner: Optional[Winner] = None
    # Bumped on every phase change; deferred callbacks compare against it
    epoch: int = 0
    closed: bool = False

    def get_player(self, connection_id: str) -> Optional[Player]:
        for p in self.players:
            if p.connection_id == connection_id:
                return p
        return None

    def find_by_name(self, name: str) -> Optional[Player]:
        for p in self.players:
            if p.name == name:
                return p
        return None

    def name_taken(self, name: str) -> bool:
        folded = name.casefold()
        return any(p.name.casefold() == folded for p in self.players)

    @property
    def host(self) -> Optional[Player]:
        return self.get_player(self.host_id)

    def participants(self) -> List[Player]:
        return [p for p in self.players if p.connection_id != self.host_id]

    def active_players(self) -> List[Player]:
        return [p for p in self.participants() if not p.eliminated]

    def active_names(self) -> List[str]:
        return [p.name for p in self.active_players()]

    def roster(self) -> Dict[str, Any]:
        host = self.host
        return {
            "players": [{"name": p.name, "is_host": p.connection_id == self.host_id} for p in self.players],
            "host": host.name if host else None,
        }
