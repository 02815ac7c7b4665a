import inspect
import json

import pytest

from synonym_client.config import GameSettings, Settings
from synonym_client.models import LobbyDetail
from synonym_client.process_client import ProcessClient, ProcessTransport
from synonym_client.state_machine import GameStateMachine
from synonym_client.timer import CountdownTimer

ME = "player-me"
OTHER = "player-other"
T0 = 1_700_000_000_000  # fake wall clock start, epoch ms


def reply(payload):
    """Wraps a JSON payload the way the compute unit returns it."""
    return {"Messages": [{"Data": json.dumps(payload)}]}


class FakeTransport(ProcessTransport):
    """Scripted process. `handlers[action]` is a value, an exception, or a (possibly async) callable."""

    def __init__(self):
        self.calls = []
        self.sent = []
        self.handlers = {}
        self.closed = False

    async def dryrun(self, tags, data):
        return await self._handle("read", tags, data)

    async def message(self, tags, data, signed=None):
        return await self._handle("write", tags, data)

    async def _handle(self, kind, tags, data):
        action = tags[0]["value"]
        # JSON objects are decoded, single values are kept as the raw string.
        params = json.loads(data) if data.startswith("{") else data or {}
        self.calls.append((kind, action, params))
        self.sent.append((action, data))
        handler = self.handlers[action]
        result = handler(params) if callable(handler) else handler
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, Exception):
            raise result
        return result

    def actions(self, name=None):
        return [c for c in self.calls if name is None or c[1] == name]

    async def aclose(self):
        self.closed = True


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


def lobby_payload(players, lobby_id="1", status="waiting", game_start=None, round_number=None, submissions=None, **extra):
    data = {
        "id": lobby_id,
        "status": status,
        "players": {pid: {"ready": ready} for pid, ready in players.items()},
    }
    if game_start is not None:
        data["gameStart"] = game_start
    if round_number is not None:
        data["currentRound"] = {"roundNumber": round_number, "submissions": submissions or {}}
    data.update(extra)
    return data


def lobby(players, **kwargs) -> LobbyDetail:
    return LobbyDetail.model_validate(lobby_payload(players, **kwargs))


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
def client(transport):
    return ProcessClient(transport, request_timeout=1.0)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def machine(clock):
    timer = CountdownTimer(clock=clock, autorun=False)
    m = GameStateMachine(player_id=ME, game_settings=GameSettings(), timer=timer, clock=clock)
    return m


@pytest.fixture()
def test_settings():
    return Settings(
        polling={"lobby_list_interval": 100, "lobby_state_interval": 100},
        session={"connect_attempts": 3, "connect_retry_delay": 0, "create_settle_delay": 0},
    )
