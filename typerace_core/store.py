"""Persistence and transport seams.

The core never talks to a database or a socket. It needs three things from the
outside world, expressed as protocols:

- RaceRepository: load a race row, insert a new one, and write a row only if
  the stored version still equals the version the writer read
- Broadcaster: push a row to everyone watching a race
- KeyValueRepository: per-user blobs (character statistics)

The in-memory implementations here are reference adapters used by tests and
single-process deployments.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .race import TERMINAL_STATUSES
from .types import RaceRow
from .validation import InputSanitizer

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = ("id", "host_id", "room_code", "expected_text", "created_at")
HOST_FIELDS = ("host_progress", "host_wpm", "host_accuracy", "host_finished_at")
OPPONENT_FIELDS = ("opponent_progress", "opponent_wpm", "opponent_accuracy", "opponent_finished_at")
FIELD_BOUNDS = {
    "host_progress": 100,
    "host_wpm": 500,
    "host_accuracy": 100,
    "opponent_progress": 100,
    "opponent_wpm": 500,
    "opponent_accuracy": 100,
}


class StoreError(Exception):
    kind = "store_error"


class VersionConflict(StoreError):
    kind = "version_conflict"


class RaceNotFound(StoreError):
    kind = "race_not_found"


class DuplicateRace(StoreError):
    kind = "duplicate_race"


@dataclass(frozen=True)
class PolicyViolation:
    kind: str
    field: str
    message: str


class PolicyViolationError(StoreError):
    kind = "policy_violation"

    def __init__(self, violation: PolicyViolation):
        super().__init__(violation.message)
        self.violation = violation


class RaceRepository(Protocol):
    def get(self, race_id: str) -> Optional[RaceRow]: ...

    def insert(self, row: RaceRow) -> None: ...

    def compare_and_swap(
        self,
        row: RaceRow,
        expected_version: int,
        *,
        actor_id: str | None = None,
        via_completion: bool = False,
    ) -> bool: ...


class Broadcaster(Protocol):
    def publish(self, race_id: str, row: RaceRow) -> None: ...


class KeyValueRepository(Protocol):
    def get(self, key: str) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...


def check_row_update(
    current: Mapping[str, Any],
    proposed: Mapping[str, Any],
    actor_id: str | None,
    via_completion: bool = False,
) -> PolicyViolation | None:
    """Decide whether ``actor_id`` may replace ``current`` with ``proposed``.

    Rules:
        1. Identity fields never change.
        2. opponent_id may only go from empty to set (joining).
        3. winner_id only changes on the completion path.
        4. A status change may not touch any progress fields.
        5. A participant may only change their own progress fields.
        6. Progress fields stay within their bounds.

    ``actor_id=None`` is the system actor; rule 5 does not apply to it.
    """
    for name in IDENTITY_FIELDS:
        if current.get(name) != proposed.get(name):
            return PolicyViolation("identity_changed", name, f"{name} is immutable")

    old_opponent, new_opponent = current.get("opponent_id"), proposed.get("opponent_id")
    if old_opponent and old_opponent != new_opponent:
        return PolicyViolation("identity_changed", "opponent_id", "opponent_id is immutable once set")

    if current.get("winner_id") != proposed.get("winner_id") and not via_completion:
        return PolicyViolation("winner_write", "winner_id", "winner_id is only set when a race completes")

    changed = {
        name
        for name in HOST_FIELDS + OPPONENT_FIELDS
        if current.get(name) != proposed.get(name)
    }

    if current.get("status") != proposed.get("status") and changed:
        name = sorted(changed)[0]
        return PolicyViolation("progress_on_status_change", name, f"status change may not modify {name}")

    if actor_id is not None and changed:
        if actor_id == current.get("host_id"):
            foreign = changed.intersection(OPPONENT_FIELDS)
        elif actor_id == current.get("opponent_id"):
            foreign = changed.intersection(HOST_FIELDS)
        else:
            foreign = changed
        if foreign:
            name = sorted(foreign)[0]
            return PolicyViolation("foreign_progress", name, f"{actor_id} may not modify {name}")

    for name, upper in FIELD_BOUNDS.items():
        value = proposed.get(name)
        if value is not None and not 0 <= value <= upper:
            return PolicyViolation("out_of_bounds", name, f"{name}={value} outside [0, {upper}]")

    return None


class InMemoryRaceRepository:
    """Race rows held in a dict, with a version-guarded write."""

    def __init__(self):
        self._rows: Dict[str, RaceRow] = {}
        self._room_codes: Dict[str, str] = {}  # room_code -> race_id
        self._lock = threading.Lock()

    def get(self, race_id: str) -> Optional[RaceRow]:
        with self._lock:
            row = self._rows.get(race_id)
            return deepcopy(row) if row is not None else None

    def get_by_room_code(self, room_code: str) -> Optional[RaceRow]:
        race_id = self._room_codes.get(InputSanitizer.sanitize_room_code(room_code))
        return self.get(race_id) if race_id else None

    def insert(self, row: RaceRow) -> None:
        with self._lock:
            race_id = row["id"]
            room_code = InputSanitizer.sanitize_room_code(row["room_code"])
            if race_id in self._rows:
                raise DuplicateRace(f"Race {race_id} already exists")
            if room_code in self._room_codes:
                raise DuplicateRace(f"Room code {room_code} already in use")
            self._rows[race_id] = deepcopy(row)
            self._room_codes[room_code] = race_id
        logger.debug(f"Inserted race {race_id} (room {row['room_code']})")

    def compare_and_swap(
        self,
        row: RaceRow,
        expected_version: int,
        *,
        actor_id: str | None = None,
        via_completion: bool = False,
        enforce_policy: bool = False,
    ) -> bool:
        """Write ``row`` only if the stored version equals ``expected_version``.

        With ``enforce_policy`` (or any ``actor_id``), the change is checked by
        ``check_row_update`` first and a violation raises PolicyViolationError.
        """
        with self._lock:
            race_id = row["id"]
            current = self._rows.get(race_id)
            if current is None:
                raise RaceNotFound(f"Race {race_id} not found")
            if current.get("version", 0) != expected_version:
                return False
            if enforce_policy or actor_id is not None:
                violation = check_row_update(current, row, actor_id, via_completion)
                if violation is not None:
                    logger.warning(f"Rejected write to race {race_id} by {actor_id}: {violation.message}")
                    raise PolicyViolationError(violation)
            self._rows[race_id] = deepcopy(row)
            return True

    def delete(self, race_id: str) -> bool:
        """Drop a race and release its room code. Returns False if it was not stored."""
        with self._lock:
            row = self._rows.pop(race_id, None)
            if row is None:
                return False
            room_code = InputSanitizer.sanitize_room_code(row["room_code"])
            if self._room_codes.get(room_code) == race_id:
                del self._room_codes[room_code]
        logger.debug(f"Deleted race {race_id}")
        return True

    def prune_finished(self) -> list[str]:
        """Delete every completed or cancelled race; returns the removed ids.

        Rows are never dropped on their own, so long-running callers prune
        periodically to free memory and room codes.
        """
        with self._lock:
            finished = [rid for rid, row in self._rows.items() if row.get("status") in TERMINAL_STATUSES]
        removed = [rid for rid in finished if self.delete(rid)]
        if removed:
            logger.info(f"Pruned {len(removed)} finished races")
        return removed

    def __len__(self) -> int:
        return len(self._rows)


class InMemoryBroadcaster:
    """Synchronous fan-out to per-race subscribers."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[[RaceRow], None]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, race_id: str, callback: Callable[[RaceRow], None]) -> Callable[[], None]:
        """Register ``callback`` for a race. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers[race_id].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(race_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(race_id, None)

        return unsubscribe

    def subscriber_count(self, race_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(race_id, []))

    def publish(self, race_id: str, row: RaceRow) -> None:
        # Snapshot under lock, call without it
        with self._lock:
            callbacks = list(self._subscribers.get(race_id, []))

        for callback in callbacks:
            try:
                callback(deepcopy(row))
            except Exception as e:
                logger.error(f"Subscriber for race {race_id} failed: {e}", exc_info=True)


class InMemoryKeyValueRepository:
    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            value = self._data.get(key)
            return deepcopy(value) if value is not None else None

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = deepcopy(value)
