import asyncio

import pytest

from synonym_client.errors import FailureKind, GuardViolation, ProcessFailure
from synonym_client.models import GamePhase, PlayerIdentity
from synonym_client.session import GameSession
from synonym_client.timer import CountdownTimer

from conftest import ME, OTHER, lobby_payload, reply

INFO_OK = reply({"status": "Connected", "version": "1.0", "name": "Synonyms"})
NO_LOBBIES = reply({"status": "success", "lobbies": []})
OK = reply({"status": "success"})


@pytest.fixture()
async def session(client, transport, test_settings, clock):
    transport.handlers.update({
        "Info": INFO_OK,
        "ListLobbies": NO_LOBBIES,
        "LobbyState": lambda params: reply({"status": "success", "lobby": lobby_payload({ME: False}, lobby_id=params)}),
        "CreateLobby": reply({"status": "success", "lobbyId": "1"}),
        "JoinLobby": OK,
        "LeaveLobby": OK,
        "PlayerReady": OK,
        "SubmitWord": OK,
    })
    s = GameSession(client, config=test_settings, clock=clock, timer=CountdownTimer(clock=clock, autorun=False))
    yield s
    s.disconnect()
    s.scheduler.cancel_all()


async def connected(session):
    await session.connect(PlayerIdentity(player_id=ME))
    return session


async def joined(session, lobby_id="1"):
    await session.join_lobby(lobby_id)
    # let the first lobby poll land before snapshots are applied by hand
    await asyncio.sleep(0.01)


def state_reply(players, **kwargs):
    return {"status": "success", "lobby": lobby_payload(players, **kwargs)}


async def test_connect_checks_info_and_starts_lobby_polling(session, transport):
    await connected(session)
    await asyncio.sleep(0.01)
    assert session.is_connected
    assert session.lobby_list_loop.handle.active
    assert transport.actions("ListLobbies")


async def test_connect_retries_info(session, transport):
    outcomes = [ProcessFailure(FailureKind.NETWORK, "down"), ProcessFailure(FailureKind.NETWORK, "down"), INFO_OK]
    transport.handlers["Info"] = lambda _params: outcomes.pop(0)
    await connected(session)
    assert session.is_connected
    assert len(transport.actions("Info")) == 3


async def test_connect_gives_up_after_bounded_attempts(session, transport):
    transport.handlers["Info"] = reply({"status": "Maintenance"})
    with pytest.raises(ProcessFailure):
        await connected(session)
    assert not session.is_connected
    assert session.last_error
    assert len(transport.actions("Info")) == 3
    assert session.scheduler.loops == []


async def test_commands_need_a_wallet(session, transport):
    with pytest.raises(GuardViolation):
        await session.create_lobby()
    assert transport.calls == []


async def test_create_lobby_enters_waiting_and_polls_it(session):
    await connected(session)
    lobby_id = await session.create_lobby()
    assert lobby_id == "1"
    assert session.machine.phase == GamePhase.WAITING_FOR_PLAYERS
    assert session.lobby_state_loop.key == "1"
    assert session.reconciler.selected_lobby_id == "1"


async def test_create_lobby_without_id_picks_newest(session, transport):
    transport.handlers["CreateLobby"] = "tx-123"
    transport.handlers["ListLobbies"] = reply({
        "status": "success",
        "lobbies": [
            {"id": "4", "status": "waiting", "playerCount": 2, "maxPlayers": 2},
            {"id": "5", "status": "waiting", "playerCount": 1, "maxPlayers": 2},
        ],
    })
    await connected(session)
    assert await session.create_lobby() == "5"
    assert session.lobby_id == "5"


async def test_rejected_join_surfaces_error_and_stays_idle(session, transport):
    transport.handlers["JoinLobby"] = reply({"status": "error", "error": "Lobby is full"})
    await connected(session)
    with pytest.raises(ProcessFailure) as exc:
        await session.join_lobby("3")
    assert exc.value.kind == FailureKind.PROCESS_ERROR
    assert session.machine.phase == GamePhase.IDLE
    assert "Lobby is full" in session.last_error
    assert session.status is None


async def test_joining_a_second_lobby_is_rejected_locally(session, transport):
    await connected(session)
    await session.join_lobby("1")
    await session.join_lobby("1")
    with pytest.raises(GuardViolation):
        await session.join_lobby("2")
    assert [c[2] for c in transport.actions("JoinLobby")] == ["1"]


async def test_ready_up_is_sent_once(session, transport):
    await connected(session)
    await joined(session)
    assert await session.ready_up()
    assert not await session.ready_up()

    session.reconciler.apply_lobby_state("1", state_reply({ME: True, OTHER: False}))
    assert not await session.ready_up()
    assert len(transport.actions("PlayerReady")) == 1
    assert transport.actions("PlayerReady")[0][2] == {"lobbyId": "1", "playerId": ME}
    assert session.machine.phase == GamePhase.READY_UP


async def test_failed_ready_rolls_back_hint(session, transport):
    transport.handlers["PlayerReady"] = reply({"status": "error", "error": "Not in lobby"})
    await connected(session)
    await joined(session)
    with pytest.raises(ProcessFailure):
        await session.ready_up()
    assert not session.machine.ready_hint


async def test_submit_outside_active_never_reaches_the_process(session, transport):
    await connected(session)
    await joined(session)
    with pytest.raises(GuardViolation):
        await session.submit_word("glad")
    assert transport.actions("SubmitWord") == []


async def test_full_round_through_the_session(session, transport, clock):
    await connected(session)
    await joined(session)
    start_s = clock.now // 1000 + 5
    session.reconciler.apply_lobby_state("1", state_reply({ME: True, OTHER: True}, game_start=start_s))
    assert session.machine.phase == GamePhase.COUNTDOWN

    clock.now = start_s * 1000
    session.machine.tick()
    assert session.machine.phase == GamePhase.ACTIVE

    assert await session.submit_word(" glad ") == "glad"
    assert transport.actions("SubmitWord")[0][2] == {"lobbyId": "1", "playerId": ME, "word": "glad"}
    assert [e.word for e in session.state().word_history] == ["glad"]

    session.reconciler.apply_lobby_state("1", state_reply(
        {ME: True, OTHER: True}, game_start=start_s, round_number=1, submissions={ME: "glad", OTHER: "happy"},
    ))
    assert session.state().phase == GamePhase.SCORING


async def test_failed_submit_rolls_back(session, transport, clock):
    transport.handlers["SubmitWord"] = reply({"status": "error", "error": "Round closed"})
    await connected(session)
    await joined(session)
    session.reconciler.apply_lobby_state("1", state_reply({ME: True, OTHER: True}, game_start=clock.now // 1000 - 1))
    assert session.machine.phase == GamePhase.ACTIVE

    with pytest.raises(ProcessFailure):
        await session.submit_word("glad")
    assert not session.machine.submitted_hint
    assert session.machine.word_history == []


async def test_disconnect_mid_round_resets_everything(session, clock):
    await connected(session)
    await joined(session)
    session.reconciler.apply_lobby_state("1", state_reply({ME: True, OTHER: True}, game_start=clock.now // 1000 - 1))
    assert session.machine.phase == GamePhase.ACTIVE

    session.disconnect()
    assert session.machine.phase == GamePhase.IDLE
    assert session.machine.round_number == 0
    assert session.machine.anchor_ms is None
    assert session.scheduler.loops == []


async def test_poll_landing_after_leave_is_discarded(session, transport):
    gate = asyncio.get_running_loop().create_future()

    async def slow_state(params):
        await asyncio.shield(gate)
        return reply(state_reply({ME: True, OTHER: True}, lobby_id=params, game_start=1))

    transport.handlers["LobbyState"] = slow_state
    await connected(session)
    await session.join_lobby("1")
    await asyncio.sleep(0.01)
    assert session.lobby_state_loop.handle.busy

    await session.leave_lobby()
    gate.set_result(None)
    await asyncio.sleep(0.01)

    assert session.machine.phase == GamePhase.IDLE
    assert session.reconciler.detail is None


async def test_join_acknowledged_after_disconnect_is_discarded(session, transport):
    gate = asyncio.get_running_loop().create_future()

    async def slow_join(_params):
        await gate
        return OK

    transport.handlers["JoinLobby"] = slow_join
    await connected(session)
    pending = asyncio.ensure_future(session.join_lobby("1"))
    await asyncio.sleep(0.01)

    session.disconnect()
    gate.set_result(None)
    await pending

    assert session.lobby_id is None
    assert session.scheduler.loops == []


async def test_play_again_or_leave_after_complete(session):
    await connected(session)
    with pytest.raises(GuardViolation):
        await session.acknowledge_complete(play_again=False)
    await session.join_lobby("1")
    with pytest.raises(GuardViolation):
        await session.acknowledge_complete(play_again=True)


async def test_double_create_sends_one_lobby(session, transport):
    gate = asyncio.get_running_loop().create_future()

    async def slow_create(_params):
        await gate
        return reply({"status": "success", "lobbyId": "2"})

    transport.handlers["CreateLobby"] = slow_create
    await connected(session)
    first = asyncio.ensure_future(session.create_lobby())
    await asyncio.sleep(0.01)
    second = asyncio.ensure_future(session.create_lobby())
    await asyncio.sleep(0.01)
    gate.set_result(None)
    results = await asyncio.gather(first, second, return_exceptions=True)

    assert results[0] == "2"
    assert isinstance(results[1], GuardViolation)
    assert len(transport.actions("CreateLobby")) == 1
    assert session.lobby_id == "2"


async def test_new_wallet_drops_the_previous_players_lobby(session):
    await connected(session)
    await joined(session)
    assert session.machine.phase == GamePhase.WAITING_FOR_PLAYERS

    await session.connect(PlayerIdentity(player_id=OTHER))
    assert session.identity.player_id == OTHER
    assert session.machine.player_id == OTHER
    assert session.lobby_id is None
    assert session.machine.phase == GamePhase.IDLE
    assert session.lobby_state_loop.handle is None
    assert session.lobby_list_loop.key == OTHER
