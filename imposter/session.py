"""
Room session: the server-authoritative state machine for one room.

Every inbound event runs under the room lock from guard to last broadcast,
so clients never observe a half-applied transition. Which events are legal
in which phase, and who may send them, lives in ``TRANSITIONS`` and
``PERMISSIONS``; handlers only deal with payload validation and effects.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import Settings, settings as default_settings
from .models import Connection, Phase, Player, Room, TieMethod, Winner
from .rules import Tally, assign_roles, check_winner, tally_votes

logger = logging.getLogger(__name__)


class GameError(ValueError):
    """Validation failure reported privately to the sender."""


class Outcome(str, Enum):
    OK = "ok"
    REJECTED = "rejected"
    UNAUTHORIZED = "unauthorized"
    INVALID_TRANSITION = "invalid_transition"


class Event(str, Enum):
    UPDATE_SETTINGS = "update-settings"
    START_GAME = "start-game"
    WORD_SEEN = "word-seen"
    HINT_GIVEN = "hint-given"
    START_DISCUSSION = "start-discussion"
    START_VOTING = "start-voting"
    SUBMIT_VOTE = "submit-vote"
    TIE_RESOLUTION = "tie-resolution"
    PLAY_AGAIN = "play-again"
    KICK_PLAYER = "kick-player"


class Actor(str, Enum):
    HOST = "host"
    PARTICIPANT = "participant"
    ACTIVE = "active"


IN_GAME = frozenset({Phase.DISTRIBUTE, Phase.HINTS, Phase.DISCUSSION, Phase.VOTING, Phase.ELIMINATION})

TRANSITIONS: Dict[Event, frozenset] = {
    Event.UPDATE_SETTINGS: frozenset(Phase),
    Event.START_GAME: frozenset({Phase.LOBBY}),
    Event.WORD_SEEN: frozenset({Phase.DISTRIBUTE}),
    Event.HINT_GIVEN: frozenset({Phase.HINTS}),
    Event.START_DISCUSSION: frozenset({Phase.HINTS}),
    Event.START_VOTING: frozenset({Phase.DISCUSSION}),
    Event.SUBMIT_VOTE: frozenset({Phase.VOTING}),
    Event.TIE_RESOLUTION: frozenset({Phase.ELIMINATION}),
    Event.PLAY_AGAIN: frozenset({Phase.GAME_OVER}),
    Event.KICK_PLAYER: frozenset({Phase.LOBBY}),
}

PERMISSIONS: Dict[Event, Actor] = {
    Event.UPDATE_SETTINGS: Actor.HOST,
    Event.START_GAME: Actor.HOST,
    Event.WORD_SEEN: Actor.PARTICIPANT,
    Event.HINT_GIVEN: Actor.ACTIVE,
    Event.START_DISCUSSION: Actor.HOST,
    Event.START_VOTING: Actor.HOST,
    Event.SUBMIT_VOTE: Actor.ACTIVE,
    Event.TIE_RESOLUTION: Actor.HOST,
    Event.PLAY_AGAIN: Actor.HOST,
    Event.KICK_PLAYER: Actor.HOST,
}


class RoomSession:
    def __init__(
        self,
        room: Room,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.room = room
        self.settings = settings or default_settings
        self.rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._clients: Dict[str, Connection] = {}
        self._timers: Set[asyncio.Task] = set()
        self._handlers = {
            Event.UPDATE_SETTINGS: self._update_settings,
            Event.START_GAME: self._start_game,
            Event.WORD_SEEN: self._word_seen,
            Event.HINT_GIVEN: self._hint_given,
            Event.START_DISCUSSION: self._start_discussion,
            Event.START_VOTING: self._start_voting,
            Event.SUBMIT_VOTE: self._submit_vote,
            Event.TIE_RESOLUTION: self._tie_resolution,
            Event.PLAY_AGAIN: self._play_again,
            Event.KICK_PLAYER: self._kick_player,
        }

    @property
    def code(self) -> str:
        return self.room.code

    def is_member(self, connection_id: str) -> bool:
        return self.room.get_player(connection_id) is not None

    # ---------- transport ----------

    async def _send(self, conn: Connection, msg: Dict[str, Any]) -> None:
        try:
            await conn.send(msg)
        except Exception as exc:
            logger.warning("[Room %s] send to %s failed: %s", self.code, conn.id, exc)

    async def _send_private(self, connection_id: str, msg: Dict[str, Any]) -> None:
        conn = self._clients.get(connection_id)
        if conn is not None:
            await self._send(conn, msg)

    async def _broadcast(self, msg: Dict[str, Any], exclude: Optional[str] = None) -> None:
        for cid, conn in list(self._clients.items()):
            if cid != exclude:
                await self._send(conn, msg)

    # ---------- membership ----------

    async def welcome(self, conn: Connection, created: bool) -> None:
        """Attach a connection whose player is already on the roster."""
        async with self._lock:
            self._clients[conn.id] = conn
            reply = "room-created" if created else "room-joined"
            await self._send(conn, {"type": reply, "room_code": self.code})
            await self._broadcast({"type": "player-joined", **self.room.roster()})

    async def join(self, conn: Connection, name: str) -> None:
        async with self._lock:
            room = self.room
            if room.phase != Phase.LOBBY:
                raise GameError("Game already in progress.")
            if room.name_taken(name):
                raise GameError("Name already taken in this room.")
            if len(room.players) >= self.settings.max_players:
                raise GameError(f"Room is full (max {self.settings.max_players} players).")
            room.players.append(Player(connection_id=conn.id, name=name))
            self._clients[conn.id] = conn
            logger.info("[Room %s] %s joined (%d players)", self.code, name, len(room.players))
            await self._send(conn, {"type": "room-joined", "room_code": self.code})
            await self._broadcast({"type": "player-joined", **room.roster()})

    async def remove_player(self, connection_id: str) -> None:
        """Disconnect or voluntary leave. Folds the loss into the game state."""
        async with self._lock:
            room = self.room
            player = room.get_player(connection_id)
            if player is None:
                return
            hints_were_complete = room.phase == Phase.HINTS and self._all_hints_given()
            self._clients.pop(connection_id, None)
            room.players.remove(player)
            self._forget(player)
            logger.info("[Room %s] %s left (%d players)", self.code, player.name, len(room.players))

            if connection_id in room.voice_participants:
                room.voice_participants.remove(connection_id)
                await self._broadcast({"type": "voice-peer-left", "peer_id": connection_id, "name": player.name})

            if not room.players:
                return

            if room.host_id == connection_id:
                await self._promote_host(room.players[0])

            await self._broadcast({"type": "player-left", "player_name": player.name, **room.roster()})

            if room.phase in IN_GAME:
                await self._recheck_after_departure(hints_were_complete)

    async def _promote_host(self, player: Player) -> None:
        room = self.room
        room.host_id = player.connection_id
        self._forget(player)
        logger.info("[Room %s] %s is now the Grand Master", self.code, player.name)
        if room.phase in IN_GAME:
            await self._send_private(player.connection_id, self._grand_master_info())

    def _forget(self, player: Player) -> None:
        """Drop a player's acknowledgements, vote and candidacy."""
        room = self.room
        room.word_seen.discard(player.connection_id)
        room.votes.pop(player.name, None)
        room.hints_given = [n for n in room.hints_given if n != player.name]
        room.candidates = [n for n in room.candidates if n != player.name]

    async def _recheck_after_departure(self, hints_were_complete: bool = False) -> None:
        room = self.room
        winner = check_winner(room.active_players())
        if winner:
            await self._game_over(winner)
            return
        if room.phase == Phase.DISTRIBUTE:
            participants = room.participants()
            await self._broadcast({"type": "word-seen-update", "seen": len(room.word_seen), "total": len(participants)})
            if len(room.word_seen) >= len(participants):
                await self._next_round()
        elif room.phase == Phase.HINTS:
            if self._all_hints_given() and not hints_were_complete:
                await self._broadcast({"type": "all-hints-given"})
        elif room.phase == Phase.VOTING:
            submitted, needed = self._vote_progress()
            await self._broadcast({"type": "vote-update", "votes_submitted": submitted, "votes_needed": needed})
            if submitted >= needed:
                await self._tally()

    # ---------- event dispatch ----------

    def _authorized(self, actor: Actor, connection_id: str) -> bool:
        room = self.room
        if actor == Actor.HOST:
            return connection_id == room.host_id
        player = room.get_player(connection_id)
        if player is None or connection_id == room.host_id:
            return False
        if actor == Actor.ACTIVE:
            return not player.eliminated
        return True

    def _guard(self, event: Event, connection_id: str) -> Outcome:
        if not self._authorized(PERMISSIONS[event], connection_id):
            return Outcome.UNAUTHORIZED
        if self.room.phase not in TRANSITIONS[event]:
            return Outcome.INVALID_TRANSITION
        if event == Event.UPDATE_SETTINGS and self.settings.settings_policy == "lobby" and self.room.phase != Phase.LOBBY:
            return Outcome.INVALID_TRANSITION
        return Outcome.OK

    async def handle(self, connection_id: str, event: Event, payload: Optional[Dict[str, Any]] = None) -> Outcome:
        async with self._lock:
            outcome = self._guard(event, connection_id)
            if outcome != Outcome.OK:
                logger.debug("[Room %s] dropped %s from %s: %s", self.code, event.value, connection_id, outcome.value)
                return outcome
            try:
                result = await self._handlers[event](connection_id, payload or {})
            except GameError as exc:
                await self._send_private(connection_id, {"type": "room-error", "message": str(exc)})
                return Outcome.REJECTED
            if result is not None and result != Outcome.OK:
                logger.debug("[Room %s] dropped %s from %s: %s", self.code, event.value, connection_id, result.value)
            return result or Outcome.OK

    def _set_phase(self, phase: Phase) -> None:
        self.room.phase = phase
        self.room.epoch += 1
        logger.info("[Room %s] phase -> %s (round %d)", self.code, phase.value, self.room.round)

    # ---------- handlers ----------

    async def _update_settings(self, connection_id: str, payload: Dict[str, Any]) -> None:
        self.room.settings.update(payload)
        await self._broadcast({"type": "settings-updated", "settings": self.room.settings.to_dict()})

    async def _start_game(self, connection_id: str, payload: Dict[str, Any]) -> None:
        room = self.room
        participants = room.participants()
        if len(participants) < 2:
            raise GameError("Need at least 2 players (besides Grand Master).")
        normal = payload.get("normal_word")
        imposter = payload.get("imposter_word")
        normal = normal.strip() if isinstance(normal, str) else ""
        imposter = imposter.strip() if isinstance(imposter, str) else ""
        if not normal or not imposter or normal.casefold() == imposter.casefold():
            raise GameError("Enter two different words.")

        assignment = assign_roles([p.name for p in participants], room.settings.imposter_count, self.rng)
        for p in room.players:
            p.is_imposter = p.name in assignment.imposters
            p.eliminated = False

        room.words.normal = normal
        room.words.imposter = imposter
        room.round = 0
        room.votes = {}
        room.candidates = []
        room.is_revote = False
        room.tied_players = []
        room.last_results = []
        room.word_seen = set()
        room.hints_given = []
        room.winner = None
        self._set_phase(Phase.DISTRIBUTE)
        logger.info("[Room %s] game started: %d participants, %d imposter(s)",
                    self.code, len(participants), len(assignment.imposters))

        for p in participants:
            word = imposter if p.is_imposter else normal
            logger.debug("[Room %s] %s: role=%s word=%r", self.code, p.name, self._role(p), word)
            await self._send_private(p.connection_id, {"type": "your-word", "word": word, "role": self._role(p)})

        await self._broadcast({
            "type": "game-started",
            "phase": Phase.DISTRIBUTE.value,
            "players": [{"name": p.name} for p in participants],
            "imposter_count": len(assignment.imposters),
            "settings": room.settings.to_dict(),
        })
        await self._send_private(room.host_id, self._grand_master_info())

    async def _word_seen(self, connection_id: str, payload: Dict[str, Any]) -> None:
        room = self.room
        room.word_seen.add(connection_id)
        total = len(room.participants())
        await self._broadcast({"type": "word-seen-update", "seen": len(room.word_seen), "total": total})
        if len(room.word_seen) >= total:
            await self._next_round()

    async def _hint_given(self, connection_id: str, payload: Dict[str, Any]) -> Optional[Outcome]:
        room = self.room
        player = room.get_player(connection_id)
        if player.name in room.hints_given:
            return None
        room.hints_given.append(player.name)
        await self._broadcast({
            "type": "hint-update",
            "hints_given": list(room.hints_given),
            "total": len(room.active_players()),
        })
        if self._all_hints_given():
            await self._broadcast({"type": "all-hints-given"})
        return None

    async def _start_discussion(self, connection_id: str, payload: Dict[str, Any]) -> Optional[Outcome]:
        room = self.room
        if not self._all_hints_given():
            return Outcome.INVALID_TRANSITION
        room.hints_given = []
        self._set_phase(Phase.DISCUSSION)
        await self._broadcast({
            "type": "phase-change",
            "phase": Phase.DISCUSSION.value,
            "round": room.round,
            "timer": room.settings.timer_duration,
            "players": [{"name": p.name, "eliminated": p.eliminated} for p in room.active_players()],
            "is_revote": False,
        })
        return None

    async def _start_voting(self, connection_id: str, payload: Dict[str, Any]) -> None:
        await self._open_voting(self.room.active_names(), is_revote=False)

    async def _submit_vote(self, connection_id: str, payload: Dict[str, Any]) -> None:
        room = self.room
        voter = room.get_player(connection_id)
        target = payload.get("voted_for")
        if not isinstance(target, str) or not target:
            raise GameError("Choose someone to vote for.")
        if target == voter.name:
            raise GameError("You cannot vote for yourself.")
        if target not in room.candidates:
            raise GameError("That player cannot be voted for.")

        room.votes[voter.name] = target
        submitted, needed = self._vote_progress()
        await self._broadcast({"type": "vote-update", "votes_submitted": submitted, "votes_needed": needed})
        if submitted >= needed:
            await self._tally()

    async def _tie_resolution(self, connection_id: str, payload: Dict[str, Any]) -> Optional[Outcome]:
        room = self.room
        if not room.tied_players:
            return Outcome.INVALID_TRANSITION
        try:
            method = TieMethod(payload.get("method"))
        except ValueError:
            raise GameError("Unknown tie resolution method.") from None

        # Tied players may have left since the tally
        active = room.active_names()
        tied = [n for n in room.tied_players if n in active]
        room.tied_players = []
        logger.info("[Room %s] tie between %s resolved by %s", self.code, ", ".join(tied), method.value)
        if tied and method == TieMethod.REVOTE:
            await self._open_voting(tied, is_revote=True)
        elif tied and method == TieMethod.RANDOM:
            await self._eliminate(self.rng.choice(tied))
        else:
            winner = check_winner(room.active_players())
            if winner:
                await self._game_over(winner)
            else:
                await self._next_round()
        return None

    async def _play_again(self, connection_id: str, payload: Dict[str, Any]) -> None:
        room = self.room
        for p in room.players:
            p.is_imposter = False
            p.eliminated = False
        room.round = 0
        room.votes = {}
        room.candidates = []
        room.is_revote = False
        room.tied_players = []
        room.last_results = []
        room.word_seen = set()
        room.hints_given = []
        room.winner = None
        room.words.normal = ""
        room.words.imposter = ""
        self._set_phase(Phase.LOBBY)
        await self._broadcast({"type": "back-to-lobby", **room.roster()})

    async def _kick_player(self, connection_id: str, payload: Dict[str, Any]) -> Optional[Outcome]:
        room = self.room
        target = room.find_by_name(payload.get("player_name") or "")
        if target is None or target.connection_id == room.host_id:
            return Outcome.INVALID_TRANSITION
        room.players.remove(target)
        was_in_voice = target.connection_id in room.voice_participants
        if was_in_voice:
            room.voice_participants.remove(target.connection_id)
        logger.info("[Room %s] %s was kicked", self.code, target.name)
        await self._send_private(target.connection_id, {"type": "kicked"})
        self._clients.pop(target.connection_id, None)
        if was_in_voice:
            await self._broadcast({"type": "voice-peer-left", "peer_id": target.connection_id, "name": target.name})
        await self._broadcast({"type": "player-left", "player_name": target.name, **room.roster()})
        return None

    # ---------- phase effects ----------

    def _all_hints_given(self) -> bool:
        return len(self.room.hints_given) >= len(self.room.active_players())

    def _vote_progress(self) -> Tuple[int, int]:
        """Votes submitted and votes needed from players who have someone to vote for."""
        room = self.room
        voters = [p.name for p in room.active_players() if any(c != p.name for c in room.candidates)]
        submitted = len([v for v in room.votes if v in voters])
        return submitted, len(voters)

    async def _next_round(self) -> None:
        room = self.room
        room.round += 1
        room.word_seen = set()
        room.hints_given = []
        room.votes = {}
        room.candidates = []
        room.is_revote = False
        room.tied_players = []

        if room.settings.max_rounds > 0 and room.round > room.settings.max_rounds:
            logger.info("[Room %s] round budget of %d exhausted", self.code, room.settings.max_rounds)
            await self._game_over(Winner.IMPOSTERS)
            return

        self._set_phase(Phase.HINTS)
        await self._broadcast({
            "type": "phase-change",
            "phase": Phase.HINTS.value,
            "round": room.round,
            "timer": room.settings.hint_timer,
            "players": [{"name": n} for n in room.active_names()],
            "is_revote": False,
        })

    async def _open_voting(self, candidates: List[str], is_revote: bool) -> None:
        room = self.room
        room.votes = {}
        room.candidates = list(candidates)
        room.is_revote = is_revote
        self._set_phase(Phase.VOTING)
        active = room.active_players()
        await self._broadcast({
            "type": "phase-change",
            "phase": Phase.VOTING.value,
            "round": room.round,
            "timer": None,
            "players": [{"name": n} for n in room.candidates],
            "is_revote": is_revote,
        })
        for p in active:
            await self._send_private(p.connection_id, {
                "type": "vote-request",
                "candidates": [{"name": n} for n in room.candidates if n != p.name],
                "is_revote": is_revote,
            })

    async def _tally(self) -> None:
        room = self.room
        tally = tally_votes(room.votes, room.active_names(), room.candidates)
        room.last_results = tally.as_payload()
        self._set_phase(Phase.ELIMINATION)

        if tally.no_elimination:
            await self._broadcast(self._vote_results(tally))
            self._schedule_next_round()
        elif tally.is_tie:
            room.tied_players = list(tally.leaders)
            logger.info("[Room %s] tie between %s", self.code, ", ".join(room.tied_players))
            await self._broadcast(self._vote_results(tally))
        else:
            await self._eliminate(tally.leaders[0])

    async def _eliminate(self, name: str) -> None:
        room = self.room
        player = room.find_by_name(name)
        if player is None:
            return
        player.eliminated = True
        winner = check_winner(room.active_players())
        logger.info("[Room %s] %s eliminated (%s)", self.code, name, self._role(player))
        await self._broadcast({
            "type": "vote-results",
            "results": room.last_results,
            "eliminated": name,
            "role": self._role(player),
            "tie": False,
            "tied_players": [],
            "game_over": winner.value if winner else None,
        })
        if winner:
            await self._game_over(winner)
        else:
            self._schedule_next_round()

    async def _game_over(self, winner: Winner) -> None:
        room = self.room
        room.winner = winner
        participants = room.participants()
        self._set_phase(Phase.GAME_OVER)
        logger.info("[Room %s] game over: %s win after %d round(s)", self.code, winner.value, room.round)
        await self._broadcast({
            "type": "game-over",
            "winner": winner.value,
            "imposters": [p.name for p in participants if p.is_imposter],
            "words": {"normal": room.words.normal, "imposter": room.words.imposter},
            "stats": {"rounds": room.round, "eliminated": len([p for p in participants if p.eliminated])},
            "players": [
                {"name": p.name, "is_imposter": p.is_imposter, "eliminated": p.eliminated}
                for p in participants
            ],
        })

    # ---------- deferred work ----------

    def _schedule_next_round(self) -> None:
        task = asyncio.create_task(self._advance_after_delay(self.room.epoch))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _advance_after_delay(self, epoch: int) -> None:
        await asyncio.sleep(self.settings.elimination_delay)
        async with self._lock:
            room = self.room
            if room.closed or room.epoch != epoch or room.phase != Phase.ELIMINATION:
                logger.debug("[Room %s] stale round advance skipped", self.code)
                return
            await self._next_round()

    def close(self) -> None:
        self.room.closed = True
        for task in list(self._timers):
            task.cancel()
        self._timers.clear()
        self._clients.clear()

    # ---------- chat & voice relay ----------

    async def relay_chat(self, connection_id: str, message: Any) -> None:
        async with self._lock:
            player = self.room.get_player(connection_id)
            if player is None or not isinstance(message, str):
                return
            text = message.strip()[: self.settings.chat_max_length]
            if not text:
                return
            await self._broadcast({
                "type": "chat-message",
                "author": player.name,
                "text": text,
                "timestamp": int(time.time() * 1000),
            })

    async def voice_join(self, connection_id: str) -> None:
        async with self._lock:
            room = self.room
            player = room.get_player(connection_id)
            if player is None:
                return
            peers = [
                {"peer_id": cid, "name": room.get_player(cid).name}
                for cid in room.voice_participants
                if cid != connection_id and room.get_player(cid) is not None
            ]
            await self._send_private(connection_id, {"type": "voice-existing-peers", "peers": peers})
            if connection_id not in room.voice_participants:
                room.voice_participants.append(connection_id)
            await self._broadcast(
                {"type": "voice-peer-joined", "peer_id": connection_id, "name": player.name},
                exclude=connection_id,
            )

    async def voice_leave(self, connection_id: str) -> None:
        async with self._lock:
            room = self.room
            player = room.get_player(connection_id)
            if player is None or connection_id not in room.voice_participants:
                return
            room.voice_participants.remove(connection_id)
            await self._broadcast(
                {"type": "voice-peer-left", "peer_id": connection_id, "name": player.name},
                exclude=connection_id,
            )

    async def voice_signal(self, connection_id: str, kind: str, target_id: Any, data: Any) -> None:
        """Forward an offer, answer or ICE candidate to one peer in this room."""
        async with self._lock:
            sender = self.room.get_player(connection_id)
            if sender is None or target_id == connection_id or not isinstance(target_id, str):
                return
            if self.room.get_player(target_id) is None:
                return
            msg: Dict[str, Any] = {"type": kind, "from_id": connection_id}
            if kind == "voice-offer":
                msg["from_name"] = sender.name
                msg["offer"] = data
            elif kind == "voice-answer":
                msg["answer"] = data
            else:
                msg["candidate"] = data
            await self._send_private(target_id, msg)

    async def voice_mute(self, connection_id: str, muted: Any) -> None:
        async with self._lock:
            player = self.room.get_player(connection_id)
            if player is None:
                return
            await self._broadcast(
                {"type": "voice-mute-status", "peer_id": connection_id, "name": player.name, "muted": bool(muted)},
                exclude=connection_id,
            )

    # ---------- payload helpers ----------

    @staticmethod
    def _role(player: Player) -> str:
        return "imposter" if player.is_imposter else "normal"

    def _grand_master_info(self) -> Dict[str, Any]:
        room = self.room
        participants = room.participants()
        return {
            "type": "grand-master-info",
            "imposters": [p.name for p in participants if p.is_imposter],
            "normal_word": room.words.normal,
            "imposter_word": room.words.imposter,
            "participants": [{"name": p.name, "is_imposter": p.is_imposter} for p in participants],
        }

    def _vote_results(self, tally: Tally) -> Dict[str, Any]:
        return {
            "type": "vote-results",
            "results": tally.as_payload(),
            "eliminated": None,
            "role": None,
            "tie": tally.is_tie,
            "tied_players": list(tally.leaders) if tally.is_tie else [],
            "game_over": None,
        }

