# synonym_client/session.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from .config import Settings, settings as default_settings
from .errors import FailureKind, GuardViolation, ProcessFailure, SynonymClientError
from .logger import logger
from .models import GamePhase, GameSnapshot, PlayerIdentity
from .process_client import ProcessClient
from .reconciler import LobbyReconciler
from .scheduler import PollingScheduler, ScopedLoop
from .state_machine import GameStateMachine
from .timer import CountdownTimer, Clock, wall_clock_ms

UpdateListener = Callable[[GameSnapshot], None]


class GameSession:
    """
    Wires the polling loops, the reconciler and the state machine to one
    wallet identity, and runs the user's write commands.

    Loops are scoped: the lobby list is polled while a wallet is connected,
    the selected lobby's state while a lobby is selected. Write commands are
    sent once, and their failures are raised to the caller after any
    optimistic hint has been rolled back.
    """

    def __init__(
        self,
        client: ProcessClient,
        config: Optional[Settings] = None,
        clock: Clock = wall_clock_ms,
        scheduler: Optional[PollingScheduler] = None,
        timer: Optional[CountdownTimer] = None,
    ):
        self.client = client
        self.config = config or default_settings
        self.identity: Optional[PlayerIdentity] = None
        self.last_error: Optional[str] = None
        # Human-readable description of the write in progress, if any.
        self.status: Optional[str] = None
        self.scheduler = scheduler or PollingScheduler()
        self.reconciler = LobbyReconciler(client)
        self.machine = GameStateMachine(game_settings=self.config.game, timer=timer, clock=clock)
        self._update_listeners: List[UpdateListener] = []
        # Bumped whenever the wallet or lobby scope ends; stale write results compare against it.
        self._scope_token = 0

        self.lobby_list_loop = ScopedLoop(
            self.scheduler, self.config.polling.lobby_list_interval, self._lobby_list_loop, "lobbies"
        )
        self.lobby_state_loop = ScopedLoop(
            self.scheduler, self.config.polling.lobby_state_interval, self._lobby_state_loop, "lobby"
        )

        self.reconciler.on_lobby_changed(self.machine.apply_snapshot)
        self.reconciler.on_lobbies_changed(lambda _lobbies: self._notify())
        self.machine.on_transition(lambda _old, _new, _view: self._notify())
        self.machine.on_tick(lambda _remaining: self._notify())

    # ---------------------- Observation ----------------------
    @property
    def is_connected(self) -> bool:
        return self.identity is not None and self.identity.is_connected

    @property
    def lobby_id(self) -> Optional[str]:
        return self.machine.lobby_id

    def state(self) -> GameSnapshot:
        return self.machine.snapshot(last_error=self.last_error)

    def on_update(self, listener: UpdateListener):
        self._update_listeners.append(listener)

    def _notify(self):
        view = self.state()
        for listener in list(self._update_listeners):
            try:
                listener(view)
            except Exception:
                logger.error("Error in session update listener.", exc_info=True)

    # ---------------------- Loop factories ----------------------
    def _lobby_list_loop(self, _player_id):
        return self.reconciler.fetch_lobbies, self.reconciler.apply_lobby_list, self.reconciler.handle_poll_error

    def _lobby_state_loop(self, lobby_id):
        async def fetch():
            return await self.reconciler.fetch_lobby(lobby_id)

        def apply(response):
            self.reconciler.apply_lobby_state(lobby_id, response)

        return fetch, apply, self.reconciler.handle_poll_error

    # ---------------------- Wallet ----------------------
    async def connect(self, identity: PlayerIdentity) -> None:
        """
        Checks the process is reachable and compatible, then starts polling for this player.

        Info is a read, so it is retried a bounded number of times.
        """
        if not identity.is_connected:
            raise GuardViolation("Wallet is not connected.")
        if self.identity is not None and self.identity.player_id != identity.player_id:
            logger.info(f"Wallet changed from {self.identity.player_id} to {identity.player_id}, resetting session")
            self.disconnect()
        attempts = self.config.session.connect_attempts
        for attempt in range(1, attempts + 1):
            try:
                info = await self.client.info()
                logger.info(f"Connected to game process '{info.name}' version {info.version}")
                break
            except ProcessFailure as e:
                logger.warning(f"Info check {attempt}/{attempts} failed: {e.message}")
                if attempt == attempts:
                    self.last_error = "Connection to game failed after multiple attempts. Please try again."
                    self.disconnect()
                    raise
                await asyncio.sleep(self.config.session.connect_retry_delay)

        self.identity = identity
        self.last_error = None
        self.machine.player_id = identity.player_id
        self.lobby_list_loop.set_scope(identity.player_id)
        self._notify()

    def disconnect(self) -> None:
        """Wallet gone: stop every loop and reset to IDLE, discarding anything in flight."""
        self._scope_token += 1
        self.lobby_state_loop.stop()
        self.lobby_list_loop.stop()
        self.reconciler.reset()
        self.identity = None
        self.machine.player_id = None
        self.machine.reset("wallet disconnected")

    # ---------------------- Write commands ----------------------
    @asynccontextmanager
    async def _write(self, status: str):
        # One write in flight at a time.
        if self.status is not None:
            raise GuardViolation(f"Please wait, still busy: {self.status}")
        self.last_error = None
        self.status = status
        try:
            yield
        except SynonymClientError as e:
            self.last_error = getattr(e, "message", str(e))
            logger.error(f"{status.rstrip('.')} failed: {self.last_error}")
            raise
        finally:
            self.status = None
            self._notify()

    def _require_connected(self) -> PlayerIdentity:
        if not self.is_connected:
            raise GuardViolation("Connect a wallet first.")
        return self.identity

    def _require_lobby(self) -> str:
        self._require_connected()
        if self.lobby_id is None:
            raise GuardViolation("Join a lobby first.")
        return self.lobby_id

    def _still_current(self, token: int, what: str) -> bool:
        if token != self._scope_token:
            logger.info(f"Discarding {what} result, session scope changed while it was in flight")
            return False
        return True

    def _select(self, lobby_id: str):
        self.machine.lobby_joined(lobby_id)
        self.reconciler.select(lobby_id)
        self.lobby_state_loop.set_scope(lobby_id)

    def clear_lobby(self):
        self._scope_token += 1
        self.lobby_state_loop.stop()
        self.reconciler.select(None)
        self.machine.lobby_cleared()

    async def create_lobby(self, name: str = "") -> str:
        async with self._write("Creating new lobby..."):
            self._require_connected()
            self.machine.check_can_join()
            token = self._scope_token
            lobby_id = await self.client.create_lobby(name)
            if lobby_id is None:
                lobby_id = await self._find_created_lobby()
            if self._still_current(token, "CreateLobby"):
                self._select(lobby_id)
            return lobby_id

    async def _find_created_lobby(self) -> str:
        # The acknowledgement carried no id: let the process settle, then take the newest lobby.
        await asyncio.sleep(self.config.session.create_settle_delay)
        self.reconciler.apply_lobby_list(await self.client.list_lobbies())
        newest = self.reconciler.newest_lobby()
        if newest is None:
            raise ProcessFailure(FailureKind.MALFORMED_RESPONSE, "Created lobby not found in lobby list")
        return newest.id

    async def join_lobby(self, lobby_id: str) -> None:
        lobby_id = str(lobby_id)
        if self.lobby_id == lobby_id:
            return
        async with self._write("Joining lobby..."):
            self._require_connected()
            self.machine.check_can_join()
            token = self._scope_token
            await self.client.join_lobby(lobby_id)
            if self._still_current(token, "JoinLobby"):
                self._select(lobby_id)

    async def leave_lobby(self) -> None:
        if self.lobby_id is None:
            return
        async with self._write("Leaving lobby..."):
            lobby_id = self._require_lobby()
            token = self._scope_token
            await self.client.leave_lobby(lobby_id)
            if self._still_current(token, "LeaveLobby"):
                self.clear_lobby()

    async def ready_up(self) -> bool:
        """
        Tells the process the local player is ready.

        Returns:
            False when nothing was sent because the player is already ready.
        """
        async with self._write("Getting ready..."):
            lobby_id = self._require_lobby()
            if not self.machine.begin_ready():
                return False
            token = self._scope_token
            try:
                await self.client.player_ready(lobby_id, self.identity.player_id)
            except SynonymClientError:
                if self._still_current(token, "PlayerReady"):
                    self.machine.rollback_ready()
                raise
            return True

    async def submit_word(self, word: str) -> str:
        async with self._write("Submitting word..."):
            lobby_id = self._require_lobby()
            cleaned = self.machine.begin_submit(word)
            token = self._scope_token
            try:
                await self.client.submit_word(lobby_id, self.identity.player_id, cleaned)
            except SynonymClientError:
                if self._still_current(token, "SubmitWord"):
                    self.machine.rollback_submit()
                raise
            if self._still_current(token, "SubmitWord"):
                self.machine.confirm_submit(cleaned)
            return cleaned

    async def acknowledge_complete(self, play_again: bool = True) -> None:
        if play_again:
            self.machine.acknowledge_complete(play_again=True)
            self._notify()
        else:
            if self.machine.phase != GamePhase.COMPLETE:
                raise GuardViolation("The game is not complete yet.")
            await self.leave_lobby()

    async def aclose(self) -> None:
        self.disconnect()
        self.scheduler.cancel_all()
        await self.client.aclose()
