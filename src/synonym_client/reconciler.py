# synonym_client/reconciler.py
from typing import Any, Callable, List, Optional, Tuple

from pydantic import ValidationError

from .errors import FailureKind, ProcessFailure
from .logger import logger
from .models import LobbyDetail, LobbyListResponse, LobbyStateResponse, LobbySummary
from .process_client import ProcessClient

LobbyListListener = Callable[[Tuple[LobbySummary, ...]], None]
LobbyDetailListener = Callable[[LobbyDetail], None]


class LobbyReconciler:
    """
    Caches the latest polled lobby views and forwards them only when their
    content actually changed.

    Polls arrive through `apply_lobby_list` and `apply_lobby_state`. A
    malformed payload is logged and ignored, leaving the previous snapshot
    in place.
    """

    def __init__(self, client: ProcessClient):
        self.client = client
        self.lobbies: Tuple[LobbySummary, ...] = ()
        self.detail: Optional[LobbyDetail] = None
        self.selected_lobby_id: Optional[str] = None
        self.emitted_count = 0
        self._list_listeners: List[LobbyListListener] = []
        self._detail_listeners: List[LobbyDetailListener] = []

    # -------------------------- Subscriptions --------------------------
    def on_lobbies_changed(self, listener: LobbyListListener):
        self._list_listeners.append(listener)

    def on_lobby_changed(self, listener: LobbyDetailListener):
        self._detail_listeners.append(listener)

    # -------------------------- Selection --------------------------
    def select(self, lobby_id: Optional[str]):
        """Points the detail cache at a lobby. Results for any other lobby are dropped from now on."""
        lobby_id = str(lobby_id) if lobby_id is not None else None
        if lobby_id != self.selected_lobby_id:
            self.detail = None
        self.selected_lobby_id = lobby_id

    # -------------------------- Fetching (read path) --------------------------
    async def fetch_lobbies(self) -> LobbyListResponse:
        return await self.client.list_lobbies()

    async def fetch_lobby(self, lobby_id: str) -> LobbyStateResponse:
        return await self.client.get_lobby_state(lobby_id)

    def handle_poll_error(self, error: Exception):
        """Read failures never reach the UI; the next successful poll restores consistency."""
        if isinstance(error, ProcessFailure) and error.kind == FailureKind.MALFORMED_RESPONSE:
            logger.warning(f"Ignoring malformed poll result: {error.message}")
        elif isinstance(error, ProcessFailure):
            logger.warning(f"Poll failed ({error.kind.value}): {error.message}")
        else:
            logger.error("Unexpected error while polling the game process.", exc_info=error)

    # -------------------------- Applying results --------------------------
    def apply_lobby_list(self, payload: Any) -> bool:
        """
        Replaces the cached lobby list if the polled one differs.

        Returns:
            True if listeners were notified.
        """
        response = self._coerce(LobbyListResponse, payload, "lobby list")
        if response is None:
            return False
        lobbies = tuple(response.lobbies)
        if lobbies == self.lobbies:
            return False
        self.lobbies = lobbies
        self.emitted_count += 1
        logger.debug(f"Lobby list changed ({len(lobbies)} lobbies)")
        for listener in list(self._list_listeners):
            listener(lobbies)
        return True

    def apply_lobby_state(self, lobby_id: str, payload: Any) -> bool:
        """
        Replaces the cached detail of the selected lobby if the polled one differs.

        Results for a lobby that is no longer selected are discarded.

        Returns:
            True if listeners were notified.
        """
        if lobby_id is None or str(lobby_id) != self.selected_lobby_id:
            logger.debug(f"Discarding state for lobby '{lobby_id}', no longer selected")
            return False
        response = self._coerce(LobbyStateResponse, payload, f"lobby '{lobby_id}' state")
        if response is None:
            return False
        detail = response.lobby
        if detail.id != self.selected_lobby_id:
            logger.warning(f"Lobby state for '{detail.id}' arrived for selected lobby '{lobby_id}', ignoring")
            return False
        if detail == self.detail:
            return False
        self.detail = detail
        self.emitted_count += 1
        for listener in list(self._detail_listeners):
            listener(detail)
        return True

    def _coerce(self, model, payload: Any, what: str):
        if isinstance(payload, model):
            return payload
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Malformed {what}: {e.error_count()} validation error(s). Keeping previous snapshot.")
            return None

    # -------------------------- Queries --------------------------
    def find_lobby(self, lobby_id: str) -> Optional[LobbySummary]:
        return next((lobby for lobby in self.lobbies if lobby.id == str(lobby_id)), None)

    def filter_lobbies(self, term: str) -> List[LobbySummary]:
        term = (term or "").strip().lower()
        if not term:
            return list(self.lobbies)
        return [lobby for lobby in self.lobbies if term in (lobby.name or "").lower()]

    def newest_lobby(self) -> Optional[LobbySummary]:
        # The process appends lobbies in creation order.
        return self.lobbies[-1] if self.lobbies else None

    def reset(self):
        self.select(None)
