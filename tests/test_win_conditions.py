"""Tests for win conditions, including wins caused by disconnects."""
from __future__ import annotations

import pytest
from imposter.models import Phase, Winner
from conftest import get_player, open_room, reach_voting, set_imposters, start_game, vote


class TestPeopleWin:
    """Test the people's win condition."""

    @pytest.mark.asyncio
    async def test_people_win_when_imposter_eliminated(self, gateway):
        """1 host + 2 normals + 1 imposter, the imposter is voted out."""
        session, host, conns = await open_room(gateway)
        await reach_voting(session, host, conns, imposters=("Dee",))
        await vote(session, conns["Bob"], "Dee")
        await vote(session, conns["Cara"], "Dee")
        await vote(session, conns["Dee"], "Bob")

        assert session.room.phase == Phase.GAME_OVER
        assert session.room.winner == Winner.PEOPLE
        assert host.last("vote-results")["game_over"] == "people"
        assert host.last("vote-results")["role"] == "imposter"

    @pytest.mark.asyncio
    async def test_game_over_payload(self, gateway):
        session, host, conns = await open_room(gateway)
        await reach_voting(session, host, conns, imposters=("Dee",))
        await vote(session, conns["Bob"], "Dee")
        await vote(session, conns["Cara"], "Dee")
        await vote(session, conns["Dee"], "Bob")

        over = conns["Bob"].last("game-over")
        assert over["winner"] == "people"
        assert over["imposters"] == ["Dee"]
        assert over["words"] == {"normal": "Apple", "imposter": "Banana"}
        assert over["stats"] == {"rounds": 1, "eliminated": 1}
        assert {"name": "Dee", "is_imposter": True, "eliminated": True} in over["players"]
        assert all(p["name"] != "Ann" for p in over["players"])


class TestImpostersWin:
    """Test the imposters' win condition."""

    @pytest.mark.asyncio
    async def test_imposters_win_when_one_normal_left(self, gateway):
        session, host, conns = await open_room(gateway)
        await reach_voting(session, host, conns, imposters=("Dee",))
        await vote(session, conns["Bob"], "Cara")
        await vote(session, conns["Cara"], "Dee")
        await vote(session, conns["Dee"], "Cara")

        assert get_player(session, "Cara").eliminated
        assert session.room.winner == Winner.IMPOSTERS
        assert host.last("game-over")["winner"] == "imposters"


class TestDisconnectWins:
    """A departure can end the game by itself."""

    @pytest.mark.asyncio
    async def test_imposter_leaving_mid_game_people_win(self, gateway):
        session, host, conns = await open_room(gateway)
        await start_game(session, host)
        set_imposters(session, "Cara")
        await gateway.disconnect(conns["Cara"])
        assert session.room.phase == Phase.GAME_OVER
        assert session.room.winner == Winner.PEOPLE

    @pytest.mark.asyncio
    async def test_normal_leaving_two_active_left_imposters_win(self, gateway):
        session, host, conns = await open_room(gateway)
        await start_game(session, host)
        set_imposters(session, "Cara")
        await gateway.disconnect(conns["Bob"])
        assert session.room.winner == Winner.IMPOSTERS
        assert conns["Dee"].last("game-over")["winner"] == "imposters"

    @pytest.mark.asyncio
    async def test_no_recheck_in_lobby(self, gateway):
        session, host, conns = await open_room(gateway)
        await gateway.disconnect(conns["Bob"])
        assert session.room.phase == Phase.LOBBY
        assert host.of_type("game-over") == []

    @pytest.mark.asyncio
    async def test_no_second_game_over(self, gateway):
        session, host, conns = await open_room(gateway)
        await reach_voting(session, host, conns, imposters=("Dee",))
        await vote(session, conns["Bob"], "Dee")
        await vote(session, conns["Cara"], "Dee")
        await vote(session, conns["Dee"], "Bob")
        await gateway.disconnect(conns["Bob"])
        assert len(host.of_type("game-over")) == 1


class TestGameNotOver:
    """Test that the game does not end prematurely."""

    @pytest.mark.asyncio
    async def test_no_winner_with_one_imposter_and_two_normals(self, gateway):
        session, host, conns = await open_room(gateway, names=("Bob", "Cara", "Dee", "Eve"))
        await reach_voting(session, host, conns, imposters=("Eve",))
        await vote(session, conns["Bob"], "Cara")
        await vote(session, conns["Cara"], "Bob")
        await vote(session, conns["Dee"], "Cara")
        await vote(session, conns["Eve"], "Cara")
        assert session.room.winner is None
        assert host.last("vote-results")["game_over"] is None
