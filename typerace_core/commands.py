"""Race command dispatch (pure, no transport/DB).

Architecture:
- Commands are plain dicts with a 'type' field (ADD_OPPONENT, START_COUNTDOWN, ...)
- apply_command() takes (state, cmd) and returns CommandOutcome with the new snapshot
- The state machine in race.py does the work; this module only maps commands onto it
- The caller persists CommandOutcome.state with a version guard and broadcasts it
  when broadcast_required is True

Validation:
- validate_version() checks the sender's snapshot version before applying a command
- Returns StaleCommand(kind='stale_version'|'unknown_race') if rejected
- Field validation via ValidatedCmd / InputSanitizer (validation.py)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from .race import (
    RaceState,
    add_opponent,
    cancel_race,
    complete_race,
    start_countdown,
    start_race,
    update_progress,
)


@dataclass
class CommandOutcome:
    """Result of applying a race command."""

    state: RaceState
    cmd_payload: Dict[str, Any]
    broadcast_required: bool


@dataclass
class StaleCommand:
    """A command rejected before it reached the state machine."""

    kind: str
    message: str | None = None
    current_version: int | None = None


def apply_command(state: RaceState, cmd: Dict[str, Any]) -> CommandOutcome:
    """Apply a race command to a snapshot.

    Args:
        state: Current snapshot (not mutated)
        cmd: Command dict with 'type' field and command-specific params.
             An optional 'now' (epoch ms) pins the transition clock.

    Returns:
        CommandOutcome with:
        - state: New snapshot, or the input snapshot for idempotent no-ops
        - cmd_payload: Command enriched with the resulting version/status
        - broadcast_required: False when nothing changed

    Raises:
        StateError subclasses from the state machine; ValueError for an
        unknown command type.
    """
    ctype = cmd.get("type")
    now = cmd.get("now")
    payload = dict(cmd)
    new_state: RaceState | None

    if ctype == "ADD_OPPONENT":
        new_state = add_opponent(
            state,
            cmd["opponentId"],
            is_bot=bool(cmd.get("isBot")),
            bot_level=cmd.get("botLevel"),
            now=now,
        )

    elif ctype == "START_COUNTDOWN":
        new_state = start_countdown(
            state,
            cmd.get("triggeredBy") or cmd.get("actorId") or "system",
            cmd.get("idempotencyKey"),
            now=now,
        )

    elif ctype == "START_RACE":
        new_state = start_race(state, now=now)

    elif ctype == "UPDATE_PROGRESS":
        new_state = update_progress(
            state,
            cmd["participantId"],
            float(cmd["progress"]),
            float(cmd["wpm"]),
            float(cmd["accuracy"]),
            now=now,
        )

    elif ctype == "COMPLETE_RACE":
        new_state = complete_race(state, now=now)
        payload["winnerId"] = new_state.winner_id

    elif ctype == "CANCEL_RACE":
        new_state = cancel_race(state, cmd.get("reason"), now=now)

    else:
        raise ValueError(f"Unknown race command type: {ctype}")

    # None (already there) and the same object (terminal) both mean no-op
    changed = new_state is not None and new_state is not state
    result = new_state if changed else state
    payload["version"] = result.version
    payload["status"] = result.status

    return CommandOutcome(state=result, cmd_payload=payload, broadcast_required=changed)


def validate_version(state: RaceState | None, cmd: Dict[str, Any]) -> StaleCommand | None:
    """Reject commands built against an outdated snapshot.

    Returns StaleCommand if rejected, otherwise None. A command without a
    'version' is not checked.

    Validation rules:
        1. No snapshot for the race → unknown_race
        2. raceId differs from the snapshot → unknown_race
        3. version < current → stale_version (sender must refresh first)
    """
    if state is None:
        return StaleCommand(kind="unknown_race", message=f"Race {cmd.get('raceId')} not found")

    race_id = cmd.get("raceId")
    if race_id is not None and race_id != state.id:
        return StaleCommand(kind="unknown_race", message=f"Command for race {race_id} sent to {state.id}")

    incoming_version = cmd.get("version")
    if incoming_version is not None and incoming_version < state.version:
        return StaleCommand(kind="stale_version", current_version=state.version)

    return None
