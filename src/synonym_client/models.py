# synonym_client/models.py
from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ===================================================================
# Process Snapshot Models
# ===================================================================
# These models mirror the JSON the game process returns. They are frozen:
# a snapshot is replaced wholesale on the next poll, never edited, and two
# snapshots are compared by content with `==`.

LobbyStatus = Literal["waiting", "ready", "active", "complete"]


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class PlayerState(Snapshot):
    ready: bool = False
    name: Optional[str] = None


class RoundInfo(Snapshot):
    round_number: int = Field(alias="roundNumber", ge=1)
    submissions: Dict[str, str] = Field(default_factory=dict)

    def is_complete(self, player_ids) -> bool:
        """True once every joined player (at least two) has submitted a word."""
        player_ids = list(player_ids)
        return len(player_ids) >= 2 and all(pid in self.submissions for pid in player_ids)


class LobbySummary(Snapshot):
    id: str
    status: LobbyStatus
    player_count: int = Field(alias="playerCount", ge=0)
    max_players: int = Field(alias="maxPlayers", ge=1)
    name: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_player_count(cls, data):
        # Some process versions list the joined players instead of counting them.
        if isinstance(data, dict) and "playerCount" not in data and "player_count" not in data:
            players = data.get("players")
            if isinstance(players, (list, dict)):
                data = {**data, "playerCount": len(players)}
        if isinstance(data, dict) and data.get("id") is not None:
            data = {**data, "id": str(data["id"])}
        return data


class LobbyDetail(Snapshot):
    id: str
    status: LobbyStatus
    players: Dict[str, PlayerState] = Field(default_factory=dict)
    current_round: Optional[RoundInfo] = Field(None, alias="currentRound")
    game_start: Optional[float] = Field(None, alias="gameStart")
    max_rounds: Optional[int] = Field(None, alias="maxRounds", ge=1)
    round_duration: Optional[float] = Field(None, alias="roundDuration", gt=0)

    @model_validator(mode="before")
    @classmethod
    def _coerce_id(cls, data):
        if isinstance(data, dict) and data.get("id") is not None:
            data = {**data, "id": str(data["id"])}
        return data

    @property
    def player_count(self) -> int:
        return len(self.players)

    def all_ready(self, min_players: int = 2) -> bool:
        return self.player_count >= min_players and all(p.ready for p in self.players.values())


class LobbyListResponse(Snapshot):
    status: str
    lobbies: List[LobbySummary]


class LobbyStateResponse(Snapshot):
    status: str
    lobby: LobbyDetail


class InfoResponse(Snapshot):
    status: str
    version: Optional[str] = None
    name: Optional[str] = None


# ===================================================================
# Client-owned State
# ===================================================================

class GamePhase(str, Enum):
    IDLE = "IDLE"
    WAITING_FOR_PLAYERS = "WAITING_FOR_PLAYERS"
    READY_UP = "READY_UP"
    COUNTDOWN = "COUNTDOWN"
    ACTIVE = "ACTIVE"
    SCORING = "SCORING"
    COMPLETE = "COMPLETE"


class WordEntry(Snapshot):
    round_number: int
    word: str


class PlayerIdentity(Snapshot):
    """What the client needs to know about the wallet: who, and whether it is connected."""
    player_id: str
    is_connected: bool = True


class GameSnapshot(Snapshot):
    """A read-only view of the state machine handed to UIs."""
    phase: GamePhase
    lobby_id: Optional[str] = None
    round_number: int = 0
    max_rounds: int
    anchor_ms: Optional[int] = None
    remaining_ms: Optional[int] = None
    ready_hint: bool = False
    submitted_hint: bool = False
    word_history: Tuple[WordEntry, ...] = ()
    player_count: int = 0
    last_error: Optional[str] = None
