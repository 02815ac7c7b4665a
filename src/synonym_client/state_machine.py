# synonym_client/state_machine.py
"""
The game phase register.

`GameStateMachine` is the only writer of the phase, the round counter and
the countdown anchor. Its inputs are confirmed lobby snapshots, timer
expiries and the local player's intents; it exposes transition methods
only, never setters.

Transitions caused by other players come exclusively from polled
snapshots. The local player's own ready/submit intents set provisional
hints for responsiveness, but a hint never satisfies a transition guard
and every confirmed snapshot overwrites it.
"""
from __future__ import annotations

from typing import Callable, List, Optional

from .config import GameSettings, settings
from .errors import GuardViolation
from .logger import logger
from .models import GamePhase, GameSnapshot, LobbyDetail, WordEntry
from .timer import CountdownTimer, Clock, normalize_epoch_ms, wall_clock_ms

TransitionListener = Callable[[GamePhase, GamePhase, GameSnapshot], None]
TickListener = Callable[[int], None]

READY_PHASES = (GamePhase.WAITING_FOR_PLAYERS, GamePhase.READY_UP, GamePhase.SCORING)


class GameStateMachine:
    def __init__(
        self,
        player_id: Optional[str] = None,
        game_settings: Optional[GameSettings] = None,
        timer: Optional[CountdownTimer] = None,
        clock: Clock = wall_clock_ms,
    ):
        self.player_id = player_id
        self.config = game_settings or settings.game
        self._clock = clock
        self.timer = timer or CountdownTimer(clock=clock, tick_interval=self.config.timer_tick)
        self._transition_listeners: List[TransitionListener] = []
        self._tick_listeners: List[TickListener] = []
        self._warned_constants = set()
        self._clear()

    def _clear(self):
        self.phase = GamePhase.IDLE
        self.lobby_id: Optional[str] = None
        self.round_number = 0
        self.word_history: List[WordEntry] = []
        self.anchor_ms: Optional[int] = None
        self.ready_hint = False
        self.submitted_hint = False
        self.round_time_up = False
        self.last_detail: Optional[LobbyDetail] = None
        self.max_rounds = self.config.max_rounds
        self.round_duration = self.config.round_duration
        # gameStart already used for a countdown; a repeat never starts another one.
        self._consumed_start_ms: Optional[int] = None
        self._ready_reset_seen = False
        # Round of a SubmitWord still waiting on the process; snapshots never clear it.
        self._pending_submit_round: Optional[int] = None

    # ---------------------- Subscriptions ----------------------
    def on_transition(self, listener: TransitionListener):
        self._transition_listeners.append(listener)

    def on_tick(self, listener: TickListener):
        self._tick_listeners.append(listener)

    # ---------------------- Read-only view ----------------------
    def snapshot(self, last_error: Optional[str] = None) -> GameSnapshot:
        return GameSnapshot(
            phase=self.phase,
            lobby_id=self.lobby_id,
            round_number=self.round_number,
            max_rounds=self.max_rounds,
            anchor_ms=self.anchor_ms,
            remaining_ms=self.timer.remaining if self.anchor_ms is not None else None,
            ready_hint=self.ready_hint,
            submitted_hint=self.submitted_hint,
            word_history=tuple(self.word_history),
            player_count=self.last_detail.player_count if self.last_detail else 0,
            last_error=last_error,
        )

    @property
    def confirmed_ready(self) -> bool:
        """Whether the latest confirmed snapshot shows the local player as ready."""
        if not self.last_detail or self.player_id not in self.last_detail.players:
            return False
        return self.last_detail.players[self.player_id].ready

    # ---------------------- Phase changes ----------------------
    def _enter(self, phase: GamePhase):
        old = self.phase
        self.phase = phase
        logger.info(f"Phase {old.value} -> {phase.value} (lobby={self.lobby_id}, round={self.round_number})")
        view = self.snapshot()
        for listener in list(self._transition_listeners):
            listener(old, phase, view)

    def reset(self, reason: str = "reset"):
        """Unconditional return to IDLE: lobby, round counter, word history and anchor are dropped."""
        old = self.phase
        self.timer.reset()
        self._clear()
        logger.info(f"Game state reset ({reason}) from {old.value}")
        view = self.snapshot()
        for listener in list(self._transition_listeners):
            listener(old, GamePhase.IDLE, view)

    # ---------------------- Lobby membership ----------------------
    def check_can_join(self):
        if self.phase != GamePhase.IDLE or self.lobby_id is not None:
            raise GuardViolation(f"Already in lobby '{self.lobby_id}'. Leave it before joining another.")

    def lobby_joined(self, lobby_id: str):
        """Called once the process has acknowledged a create or join."""
        self.check_can_join()
        self.lobby_id = str(lobby_id)
        self._enter(GamePhase.WAITING_FOR_PLAYERS)

    def lobby_cleared(self):
        self.reset("lobby cleared")

    def acknowledge_complete(self, play_again: bool = True):
        """Leaves COMPLETE: back to the same lobby's waiting room, or to IDLE."""
        if self.phase != GamePhase.COMPLETE:
            raise GuardViolation("The game is not complete yet.")
        if not play_again:
            self.reset("game finished")
            return
        self.timer.reset()
        self.round_number = 0
        self.word_history = []
        self.anchor_ms = None
        self.ready_hint = False
        self.submitted_hint = False
        self.round_time_up = False
        self._enter(GamePhase.WAITING_FOR_PLAYERS)
        # Players still in the lobby produce no new snapshot, so settle on the last one.
        if self.last_detail is not None:
            self._overwrite_hints(self.last_detail)
            self._settle(self.last_detail)

    # ---------------------- Local intents ----------------------
    def begin_ready(self) -> bool:
        """
        Applies the optimistic ready hint.

        Returns:
            False when the player is already confirmed ready, or a ready is
            already pending; nothing should be sent in that case.
        """
        if self.phase not in READY_PHASES:
            raise GuardViolation(f"Cannot ready up during {self.phase.value}.")
        if self.ready_hint or self.confirmed_ready:
            logger.debug("Ready-up ignored, player already ready")
            return False
        self.ready_hint = True
        return True

    def rollback_ready(self):
        self.ready_hint = self.confirmed_ready

    def begin_submit(self, word: str) -> str:
        """Validates a word submission and marks it as pending. Returns the cleaned word."""
        if self.phase != GamePhase.ACTIVE:
            raise GuardViolation(f"Words can only be submitted while a round is active, not during {self.phase.value}.")
        word = (word or "").strip()
        if not word:
            raise GuardViolation("Cannot submit an empty word.")
        if self._pending_submit_round == self.round_number:
            raise GuardViolation(f"A word for round {self.round_number} is still being submitted.")
        if self.submitted_hint or any(e.round_number == self.round_number for e in self.word_history):
            raise GuardViolation(f"A word was already submitted for round {self.round_number}.")
        if self.round_time_up:
            raise GuardViolation(f"Time is up for round {self.round_number}.")
        self.submitted_hint = True
        self._pending_submit_round = self.round_number
        return word

    def confirm_submit(self, word: str):
        round_number = self._pending_submit_round or self.round_number
        self._pending_submit_round = None
        self.word_history.append(WordEntry(round_number=round_number, word=word))

    def rollback_submit(self):
        self._pending_submit_round = None
        current = self.last_detail.current_round if self.last_detail else None
        self.submitted_hint = bool(
            current and current.round_number == self.round_number and self.player_id in current.submissions
        )

    # ---------------------- Snapshots ----------------------
    def apply_snapshot(self, detail: LobbyDetail) -> bool:
        """
        Consumes a confirmed, change-filtered lobby snapshot.

        The snapshot is re-evaluated after each transition until the phase
        settles, since an unchanged snapshot is never delivered twice.

        Returns:
            True if the phase changed.
        """
        if self.lobby_id is None or detail.id != self.lobby_id:
            logger.debug(f"Ignoring snapshot for lobby '{detail.id}'")
            return False
        self.last_detail = detail
        self._adopt_constants(detail)
        self._overwrite_hints(detail)

        before = self.phase
        self._settle(detail)
        return self.phase != before

    def _settle(self, detail: LobbyDetail):
        handlers = {
            GamePhase.WAITING_FOR_PLAYERS: self._from_waiting,
            GamePhase.READY_UP: self._from_ready_up,
            GamePhase.ACTIVE: self._from_active,
            GamePhase.SCORING: self._from_scoring,
        }
        for _ in range(len(GamePhase)):
            phase = self.phase
            handler = handlers.get(phase)
            if handler is None:
                break
            handler(detail)
            if self.phase == phase:
                break

    def _adopt_constants(self, detail: LobbyDetail):
        for field, configured in (("max_rounds", self.config.max_rounds), ("round_duration", self.config.round_duration)):
            supplied = getattr(detail, field)
            if supplied is None:
                continue
            if supplied != configured and field not in self._warned_constants:
                self._warned_constants.add(field)
                logger.warning(f"Process reports {field}={supplied} but the client is configured for {configured}; using the process value")
            setattr(self, field, supplied)

    def _overwrite_hints(self, detail: LobbyDetail):
        me = detail.players.get(self.player_id) if self.player_id else None
        self.ready_hint = bool(me and me.ready)
        current = detail.current_round
        if current is not None and current.round_number == self.round_number:
            pending = self._pending_submit_round == self.round_number
            self.submitted_hint = pending or self.player_id in current.submissions

    def _from_waiting(self, detail: LobbyDetail):
        if detail.player_count >= self.config.min_players:
            self._enter(GamePhase.READY_UP)

    def _from_ready_up(self, detail: LobbyDetail):
        if detail.player_count < self.config.min_players:
            self._enter(GamePhase.WAITING_FOR_PLAYERS)
            return
        if not detail.all_ready(self.config.min_players):
            return
        start_ms = self._fresh_start(detail)
        if start_ms is None:
            logger.debug("All players ready but no new gameStart yet, staying in READY_UP")
            return
        self.round_number = 1
        self._start_countdown(start_ms)

    def _from_active(self, detail: LobbyDetail):
        current = detail.current_round
        if current is None:
            return
        if current.round_number > self.round_number:
            logger.warning(f"Process is already on round {current.round_number}, closing local round {self.round_number}")
            self._enter_scoring()
            return
        if current.round_number == self.round_number and current.is_complete(detail.players):
            self._enter_scoring()

    def _from_scoring(self, detail: LobbyDetail):
        if not detail.all_ready(self.config.min_players):
            self._ready_reset_seen = True
            return
        start_ms = self._fresh_start(detail)
        if self.round_number >= self.max_rounds:
            if self._ready_reset_seen or start_ms is not None:
                self.timer.reset()
                self.anchor_ms = None
                self._enter(GamePhase.COMPLETE)
            return
        if start_ms is None:
            return
        self.round_number += 1
        self._start_countdown(start_ms)

    def _fresh_start(self, detail: LobbyDetail) -> Optional[int]:
        if detail.game_start is None:
            return None
        start_ms = normalize_epoch_ms(detail.game_start)
        if start_ms == self._consumed_start_ms:
            return None
        return start_ms

    def _enter_scoring(self):
        self.timer.reset()
        self.anchor_ms = None
        self.round_time_up = False
        self._ready_reset_seen = False
        self._enter(GamePhase.SCORING)

    # ---------------------- Timers ----------------------
    def _start_countdown(self, start_ms: int):
        self._consumed_start_ms = start_ms
        self.anchor_ms = start_ms
        self.submitted_hint = False
        self.round_time_up = False
        self._enter(GamePhase.COUNTDOWN)
        # An anchor already in the past expires immediately and moves straight to ACTIVE.
        self.timer.start(start_ms, on_tick=self._tick, on_expire=self._countdown_expired)

    def _countdown_expired(self):
        if self.phase != GamePhase.COUNTDOWN:
            return
        self.anchor_ms = int(self._clock() + self.round_duration * 1000)
        self._enter(GamePhase.ACTIVE)
        self.timer.start(self.anchor_ms, on_tick=self._tick, on_expire=self._round_time_expired)
        # The reconciler will not resend an unchanged snapshot, so check the last one now.
        if self.last_detail is not None and self.phase == GamePhase.ACTIVE:
            self._settle(self.last_detail)

    def _round_time_expired(self):
        if self.phase != GamePhase.ACTIVE:
            return
        self.round_time_up = True
        logger.info(f"Round {self.round_number} time is up, waiting for the process to close it")

    def _tick(self, remaining_ms: int):
        for listener in list(self._tick_listeners):
            listener(remaining_ms)

    def tick(self, now: Optional[float] = None) -> int:
        """Samples the running timer; used by owners that drive time themselves."""
        return self.timer.sample(now)
