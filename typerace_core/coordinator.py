"""Read → transition → compare-and-swap → broadcast loop for a single race.

RaceCoordinator is the reference caller of the pure state machine. For every
mutation it loads the stored row, applies a transition to the deserialized
snapshot, and writes the result only if the stored version is still the one it
read. A lost write is retried from a fresh read; a transition that produces no
new snapshot (idempotent no-op) is neither written nor broadcast.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Sequence

from .bot import BotLevel, BotRunner
from .commands import CommandOutcome, StaleCommand, apply_command, validate_version
from .config import Settings, get_settings
from .metrics import (
    KeystrokeRecord,
    VerificationResult,
    calculate_progress,
    reconstruct_typed_text,
    verify_metrics,
)
from .race import (
    ParticipantNotFound,
    RaceState,
    add_opponent,
    cancel_race,
    complete_race,
    create_race_state,
    deserialize_race_state,
    serialize_race_state,
    start_countdown,
    start_race,
    update_progress,
)
from .store import Broadcaster, RaceNotFound, RaceRepository, VersionConflict

logger = logging.getLogger(__name__)

Transition = Callable[[RaceState], "RaceState | None"]


class RaceCoordinator:
    """
    Applies transitions to stored races with optimistic concurrency.

    Usage:
        coordinator = RaceCoordinator(InMemoryRaceRepository(), InMemoryBroadcaster())
        coordinator.create_race("r1", "ABC123", "host", text)
        coordinator.add_opponent("r1", "bot-1", is_bot=True, bot_level="pro")
    """

    def __init__(
        self,
        repository: RaceRepository,
        broadcaster: Broadcaster,
        settings: Settings | None = None,
    ):
        self.repository = repository
        self.broadcaster = broadcaster
        self.settings = settings or get_settings()

    # ---- reads ----

    def load(self, race_id: str) -> RaceState:
        row = self.repository.get(race_id)
        if row is None:
            raise RaceNotFound(f"Race {race_id} not found")
        return deserialize_race_state(row)

    # ---- core loop ----

    def _write(
        self,
        new_state: RaceState,
        expected_version: int,
        actor_id: str | None,
        via_completion: bool,
    ) -> bool:
        row = serialize_race_state(new_state)
        return self.repository.compare_and_swap(
            row, expected_version, actor_id=actor_id, via_completion=via_completion
        )

    def execute(
        self,
        race_id: str,
        transition: Transition,
        *,
        actor_id: str | None = None,
        via_completion: bool = False,
    ) -> RaceState:
        """Apply ``transition`` to the stored race and persist the result.

        Returns the new snapshot, or the current one when the transition was an
        idempotent no-op. StateError from the transition propagates untouched.

        Raises:
            RaceNotFound: no stored row for ``race_id``
            VersionConflict: every attempt lost the compare-and-swap
        """
        attempts = self.settings.store.CAS_MAX_ATTEMPTS
        for attempt in range(1, attempts + 1):
            state = self.load(race_id)
            new_state = transition(state)
            if new_state is None or new_state is state:
                return state

            if self._write(new_state, state.version, actor_id, via_completion):
                self.broadcaster.publish(race_id, serialize_race_state(new_state))
                logger.debug(f"Race {race_id}: v{state.version} -> v{new_state.version} ({new_state.status})")
                return new_state

            logger.warning(
                f"Race {race_id}: version conflict at v{state.version} (attempt {attempt}/{attempts})"
            )

        raise VersionConflict(f"Race {race_id}: gave up after {attempts} conflicting writes")

    def handle_command(self, cmd: Dict[str, Any]) -> CommandOutcome | StaleCommand:
        """Run a wire command through the CAS loop.

        A command that carries ``version`` is rejected as stale (not retried)
        once the stored race has moved past it.
        """
        race_id = cmd["raceId"]
        stale: list[StaleCommand] = []
        outcomes: list[CommandOutcome] = []

        def transition(state: RaceState) -> RaceState | None:
            rejected = validate_version(state, cmd)
            if rejected is not None:
                stale.append(rejected)
                return None
            outcome = apply_command(state, cmd)
            outcomes.append(outcome)
            return outcome.state

        actor_id = cmd.get("participantId") if cmd.get("type") == "UPDATE_PROGRESS" else None
        try:
            self.execute(
                race_id,
                transition,
                actor_id=actor_id,
                via_completion=cmd.get("type") == "COMPLETE_RACE",
            )
        except RaceNotFound:
            return StaleCommand(kind="unknown_race", message=f"Race {race_id} not found")

        if stale:
            logger.warning(f"Race {race_id}: rejected {cmd.get('type')} ({stale[-1].kind})")
            return stale[-1]
        return outcomes[-1]

    # ---- lifecycle ----

    def create_race(
        self,
        race_id: str,
        room_code: str,
        host_id: str,
        expected_text: str,
        *,
        now: int | None = None,
    ) -> RaceState:
        state = create_race_state(race_id, room_code, host_id, expected_text, now=now)
        row = serialize_race_state(state)
        self.repository.insert(row)
        self.broadcaster.publish(race_id, row)
        return state

    def add_opponent(
        self,
        race_id: str,
        opponent_id: str,
        is_bot: bool = False,
        bot_level: BotLevel | None = None,
        *,
        now: int | None = None,
    ) -> RaceState:
        return self.execute(race_id, lambda s: add_opponent(s, opponent_id, is_bot, bot_level, now=now))

    def start_countdown(
        self,
        race_id: str,
        triggered_by: str,
        idempotency_key: str | None = None,
        *,
        now: int | None = None,
    ) -> RaceState:
        return self.execute(race_id, lambda s: start_countdown(s, triggered_by, idempotency_key, now=now))

    def start_race(self, race_id: str, *, now: int | None = None) -> RaceState:
        return self.execute(race_id, lambda s: start_race(s, now=now))

    def update_progress(
        self,
        race_id: str,
        participant_id: str,
        progress: float,
        wpm: float,
        accuracy: float,
        *,
        now: int | None = None,
    ) -> RaceState:
        return self.execute(
            race_id,
            lambda s: update_progress(
                s, participant_id, progress, wpm, accuracy, now=now, settings=self.settings
            ),
            actor_id=participant_id,
        )

    def complete_race(self, race_id: str, *, now: int | None = None) -> RaceState:
        return self.execute(race_id, lambda s: complete_race(s, now=now), via_completion=True)

    def cancel_race(self, race_id: str, reason: str | None = None, *, now: int | None = None) -> RaceState:
        return self.execute(race_id, lambda s: cancel_race(s, reason, now=now))

    # ---- drivers ----

    def advance_bot(self, race_id: str, runner: BotRunner, now: int) -> RaceState | None:
        """Tick ``runner`` and publish its progress if it typed something.

        The bot plays the race's opponent slot. Returns the new snapshot, or
        None when the tick produced no keystroke.
        """
        before = runner.state
        runner.tick(now)
        if runner.state is before:
            return None

        opponent = self.load(race_id).opponent
        if opponent is None or not opponent.is_bot:
            raise ParticipantNotFound(f"Race {race_id} has no bot opponent")

        progress, wpm, accuracy = runner.progress_update()
        return self.update_progress(race_id, opponent.id, progress, wpm, accuracy, now=now)

    def submit_result(
        self,
        race_id: str,
        participant_id: str,
        client_metrics: Mapping[str, Any],
        keystrokes: Sequence[KeystrokeRecord],
        *,
        now: int | None = None,
    ) -> VerificationResult:
        """Verify a participant's final metrics and record the canonical values.

        Whatever the client claimed, the stored WPM and accuracy are the ones
        recomputed from ``keystrokes``; progress is the share of the text typed.
        """
        state = self.load(race_id)
        if state.participant(participant_id) is None:
            raise ParticipantNotFound(f"Participant {participant_id} not in race {race_id}")

        result = verify_metrics(client_metrics, keystrokes, state.expected_text)
        computed = result.computed_metrics
        text_length = len(state.expected_text)
        typed_length = min(len(reconstruct_typed_text(keystrokes)), text_length)

        self.update_progress(
            race_id,
            participant_id,
            calculate_progress(typed_length, text_length),
            computed.net_wpm,
            computed.accuracy,
            now=now,
        )
        logger.info(
            f"Race {race_id}: result recorded for {participant_id} "
            f"({computed.net_wpm} wpm, {computed.accuracy}%, valid={result.valid})"
        )
        return result
