"""Server-authoritative race state machine (pure, no I/O).

A race is a frozen ``RaceState`` snapshot. Every transition takes a snapshot
and returns a new one with ``version`` bumped; the caller persists it with a
version guard and broadcasts it.

Status graph:
- waiting   -> countdown | cancelled
- countdown -> active | cancelled
- active    -> completed | cancelled
- completed, cancelled are terminal

Idempotency:
- start_countdown / start_race return None when the race is already there
- complete_race / cancel_race return the same object from a terminal state
Callers must not persist or broadcast in either case.

All transitions accept ``now`` (epoch ms) so a replay produces identical
snapshots; it defaults to the wall clock.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Mapping

from .bot import BotLevel
from .config import Settings, get_settings
from .types import RaceRow

logger = logging.getLogger(__name__)

RaceStatus = Literal["waiting", "countdown", "active", "completed", "cancelled"]

VALID_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "waiting": ("countdown", "cancelled"),
    "countdown": ("active", "cancelled"),
    "active": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

TERMINAL_STATUSES = frozenset({"completed", "cancelled"})


class StateError(Exception):
    """A transition was rejected. Nothing should be persisted."""

    kind = "state_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidTransition(StateError):
    kind = "invalid_transition"


class ParticipantConflict(StateError):
    kind = "participant_conflict"


class ParticipantNotFound(StateError):
    kind = "participant_not_found"


class WrongStatus(StateError):
    kind = "wrong_status"


class MissingOpponent(StateError):
    kind = "missing_opponent"


@dataclass(frozen=True)
class RaceParticipant:
    id: str
    is_bot: bool = False
    bot_level: BotLevel | None = None
    progress: float = 0.0
    wpm: float = 0.0
    accuracy: float = 100.0
    finished_at: int | None = None


@dataclass(frozen=True)
class RaceState:
    id: str
    room_code: str
    status: RaceStatus
    expected_text: str
    host_id: str
    host: RaceParticipant
    created_at: int
    updated_at: int
    version: int = 0
    opponent: RaceParticipant | None = None
    countdown_started_at: int | None = None
    race_started_at: int | None = None
    race_ended_at: int | None = None
    winner_id: str | None = None

    def participant(self, participant_id: str) -> RaceParticipant | None:
        if participant_id == self.host_id:
            return self.host
        if self.opponent is not None and participant_id == self.opponent.id:
            return self.opponent
        return None


def _now_ms(now: int | None) -> int:
    return int(time.time() * 1000) if now is None else now


def is_valid_transition(from_status: str, to_status: str) -> bool:
    """Check if a status change is allowed. Unknown statuses are never valid."""
    return to_status in VALID_TRANSITIONS.get(from_status, ())


def create_race_state(
    race_id: str,
    room_code: str,
    host_id: str,
    expected_text: str,
    *,
    now: int | None = None,
) -> RaceState:
    ts = _now_ms(now)
    state = RaceState(
        id=race_id,
        room_code=room_code,
        status="waiting",
        expected_text=expected_text,
        host_id=host_id,
        host=RaceParticipant(id=host_id, accuracy=get_settings().race.INITIAL_ACCURACY),
        created_at=ts,
        updated_at=ts,
    )
    logger.debug(f"Race {race_id} created in room {room_code} by {host_id}")
    return state


def add_opponent(
    state: RaceState,
    opponent_id: str,
    is_bot: bool = False,
    bot_level: BotLevel | None = None,
    *,
    now: int | None = None,
) -> RaceState:
    if state.status != "waiting":
        raise WrongStatus(f"Cannot add opponent in status: {state.status}")
    if state.opponent is not None:
        raise ParticipantConflict("Race already has an opponent")
    if opponent_id == state.host_id:
        raise ParticipantConflict("Host cannot join as their own opponent")

    opponent = RaceParticipant(
        id=opponent_id,
        is_bot=is_bot,
        bot_level=bot_level if is_bot else None,
        accuracy=get_settings().race.INITIAL_ACCURACY,
    )
    logger.debug(
        f"Race {state.id}: opponent {opponent_id} joined"
        + (f" (bot, {bot_level})" if is_bot else "")
    )
    return replace(state, opponent=opponent, version=state.version + 1, updated_at=_now_ms(now))


def start_countdown(
    state: RaceState,
    triggered_by: str,
    idempotency_key: str | None = None,
    *,
    now: int | None = None,
) -> RaceState | None:
    """Move to ``countdown``. Returns None if the race is already counting down."""
    if state.status == "countdown":
        logger.debug(
            f"Race {state.id}: duplicate countdown from {triggered_by} ignored"
            + (f" (key {idempotency_key})" if idempotency_key else "")
        )
        return None
    if not is_valid_transition(state.status, "countdown"):
        raise InvalidTransition(f"Invalid transition from {state.status} to countdown")
    if state.opponent is None:
        raise MissingOpponent("Cannot start countdown without opponent")

    ts = _now_ms(now)
    logger.info(f"Race {state.id}: countdown started by {triggered_by}")
    return replace(
        state,
        status="countdown",
        countdown_started_at=ts,
        version=state.version + 1,
        updated_at=ts,
    )


def start_race(state: RaceState, *, now: int | None = None) -> RaceState | None:
    """Move to ``active``. Returns None if the race is already active."""
    if state.status == "active":
        return None
    if not is_valid_transition(state.status, "active"):
        raise InvalidTransition(f"Invalid transition from {state.status} to active")

    ts = _now_ms(now)
    logger.info(f"Race {state.id}: started")
    return replace(
        state,
        status="active",
        race_started_at=ts,
        version=state.version + 1,
        updated_at=ts,
    )


def _clamp(value: float, upper: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(upper, max(0.0, value))


def update_progress(
    state: RaceState,
    participant_id: str,
    progress: float,
    wpm: float,
    accuracy: float,
    *,
    now: int | None = None,
    settings: Settings | None = None,
) -> RaceState:
    """Record a participant's latest progress, WPM and accuracy.

    Values are clamped to their bounds (non-finite values become 0). The
    participant's ``finished_at`` is stamped the first time progress reaches
    100 and kept from then on.
    """
    bounds = (settings or get_settings()).race
    if state.status != "active":
        raise WrongStatus(f"Cannot update progress in status: {state.status}")

    participant = state.participant(participant_id)
    if participant is None:
        raise ParticipantNotFound(f"Participant {participant_id} not in race {state.id}")

    ts = _now_ms(now)
    safe_progress = _clamp(progress, bounds.MAX_PROGRESS)
    finished_at = participant.finished_at
    if finished_at is None and safe_progress >= bounds.MAX_PROGRESS:
        finished_at = ts
        logger.info(f"Race {state.id}: {participant_id} finished")

    updated = replace(
        participant,
        progress=safe_progress,
        wpm=_clamp(wpm, bounds.MAX_WPM),
        accuracy=_clamp(accuracy, bounds.MAX_ACCURACY),
        finished_at=finished_at,
    )
    if participant is state.host:
        new_state = replace(state, host=updated)
    else:
        new_state = replace(state, opponent=updated)
    return replace(new_state, version=state.version + 1, updated_at=ts)


def determine_winner(host: RaceParticipant, opponent: RaceParticipant | None) -> str:
    """Pick the winner: earliest finisher, then higher progress, then higher WPM.

    Only a participant currently at full progress counts as finished; a stale
    ``finished_at`` behind a lower report is ignored. An exact WPM tie goes to
    the host.
    """
    if opponent is None:
        return host.id

    full = get_settings().race.MAX_PROGRESS
    host_done = host.finished_at if host.progress >= full else None
    opp_done = opponent.finished_at if opponent.progress >= full else None
    if host_done is not None and (opp_done is None or host_done < opp_done):
        return host.id
    if opp_done is not None and (host_done is None or opp_done < host_done):
        return opponent.id

    # Same-millisecond finish, or nobody finished
    if host.progress > opponent.progress:
        return host.id
    if opponent.progress > host.progress:
        return opponent.id
    return host.id if host.wpm >= opponent.wpm else opponent.id


def complete_race(state: RaceState, *, now: int | None = None) -> RaceState:
    if state.status == "completed":
        return state
    if not is_valid_transition(state.status, "completed"):
        raise InvalidTransition(f"Invalid transition from {state.status} to completed")

    ts = _now_ms(now)
    winner_id = determine_winner(state.host, state.opponent)
    logger.info(f"Race {state.id}: completed, winner {winner_id}")
    return replace(
        state,
        status="completed",
        winner_id=winner_id,
        race_ended_at=ts,
        version=state.version + 1,
        updated_at=ts,
    )


def cancel_race(state: RaceState, reason: str | None = None, *, now: int | None = None) -> RaceState:
    if state.status in TERMINAL_STATUSES:
        return state

    ts = _now_ms(now)
    logger.info(f"Race {state.id}: cancelled from {state.status}" + (f" ({reason})" if reason else ""))
    return replace(
        state,
        status="cancelled",
        race_ended_at=ts,
        version=state.version + 1,
        updated_at=ts,
    )


# ==================== WIRE FORMAT ====================


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _to_iso(ms: int | None) -> str | None:
    if ms is None:
        return None
    dt = _EPOCH + timedelta(milliseconds=int(ms))
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _from_iso(value: Any) -> int | None:
    if not value:
        return None
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // _ONE_MS


def serialize_race_state(state: RaceState) -> RaceRow:
    """Flatten a snapshot into the persisted/broadcast row shape."""
    opp = state.opponent
    return {
        "id": state.id,
        "room_code": state.room_code,
        "status": state.status,
        "expected_text": state.expected_text,
        "host_id": state.host_id,
        "host_progress": state.host.progress,
        "host_wpm": state.host.wpm,
        "host_accuracy": state.host.accuracy,
        "host_finished_at": _to_iso(state.host.finished_at),
        "opponent_id": opp.id if opp else None,
        "opponent_is_bot": opp.is_bot if opp else False,
        "opponent_bot_level": opp.bot_level if opp else None,
        "opponent_progress": opp.progress if opp else 0,
        "opponent_wpm": opp.wpm if opp else 0,
        "opponent_accuracy": opp.accuracy if opp else 100,
        "opponent_finished_at": _to_iso(opp.finished_at) if opp else None,
        "countdown_started_at": _to_iso(state.countdown_started_at),
        "started_at": _to_iso(state.race_started_at),
        "ended_at": _to_iso(state.race_ended_at),
        "winner_id": state.winner_id,
        "version": state.version,
        "created_at": _to_iso(state.created_at),
        "updated_at": _to_iso(state.updated_at),
    }


def deserialize_race_state(row: Mapping[str, Any]) -> RaceState:
    """Rebuild a snapshot from a row. Missing participant columns take defaults."""
    host = RaceParticipant(
        id=row["host_id"],
        is_bot=False,
        progress=row.get("host_progress") or 0,
        wpm=row.get("host_wpm") or 0,
        accuracy=_default(row.get("host_accuracy"), 100),
        finished_at=_from_iso(row.get("host_finished_at")),
    )
    opponent = None
    if row.get("opponent_id"):
        opponent = RaceParticipant(
            id=row["opponent_id"],
            is_bot=bool(row.get("opponent_is_bot")),
            bot_level=row.get("opponent_bot_level"),
            progress=row.get("opponent_progress") or 0,
            wpm=row.get("opponent_wpm") or 0,
            accuracy=_default(row.get("opponent_accuracy"), 100),
            finished_at=_from_iso(row.get("opponent_finished_at")),
        )
    return RaceState(
        id=row["id"],
        room_code=row["room_code"],
        status=row["status"],
        expected_text=row["expected_text"],
        host_id=row["host_id"],
        host=host,
        opponent=opponent,
        countdown_started_at=_from_iso(row.get("countdown_started_at")),
        race_started_at=_from_iso(row.get("started_at")),
        race_ended_at=_from_iso(row.get("ended_at")),
        winner_id=row.get("winner_id"),
        version=row.get("version") or 0,
        created_at=_from_iso(row.get("created_at")) or 0,
        updated_at=_from_iso(row.get("updated_at")) or 0,
    )


def _default(value: Any, fallback: float) -> float:
    return fallback if value is None else value
