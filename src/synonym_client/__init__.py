"""Client-side state reconciliation for the synonym word-matching game."""

from .errors import FailureKind, GuardViolation, ProcessFailure, SynonymClientError
from .models import GamePhase, GameSnapshot, LobbyDetail, LobbySummary, PlayerIdentity
from .process_client import ProcessClient, make_process_client
from .session import GameSession

__all__ = [
    "FailureKind",
    "GamePhase",
    "GameSession",
    "GameSnapshot",
    "GuardViolation",
    "LobbyDetail",
    "LobbySummary",
    "PlayerIdentity",
    "ProcessClient",
    "ProcessFailure",
    "SynonymClientError",
    "make_process_client",
]
