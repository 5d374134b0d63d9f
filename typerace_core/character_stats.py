"""Per-character confidence tracking for adaptive practice.

Keystrokes are grouped by the (lower-cased) letter the user was supposed to
type. For each letter we derive a speed from the interval since the previous
keystroke, an accuracy, and a timing spread, and fold them into a single
confidence score:

    confidence = min(wpm / target_wpm, 1) * accuracy / 100 * max(0, 1 - std_dev / 200)

Letters start locked except for a small starting set; a letter unlocks once its
blended WPM reaches the target with at least 95% accuracy. Results persist per
user through an injected ``KeyValueRepository``.
"""
from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Collection, Dict, Literal, Mapping, Sequence

from .metrics import KeystrokeRecord
from .store import KeyValueRepository

logger = logging.getLogger(__name__)

ConfidenceStatus = Literal["weak", "needs_work", "in_progress", "nearly_unlocked", "unlocked"]

DEFAULT_TARGET_WPM = 35
STARTING_LETTERS = frozenset("etaoinsr")
LETTER_FREQUENCY_ORDER = tuple("etaoinshrdlcumwfgypbvkjxqz")
MAX_INTERVAL_MS = 5000
RECENCY_WEIGHT = 0.7
UNLOCK_MIN_ACCURACY = 95.0
DEFAULT_INTERVAL_MS = 500


@dataclass(frozen=True)
class CharacterConfidence:
    char: str
    confidence: float
    wpm: float
    accuracy: float
    occurrences: int
    avg_time_ms: int
    std_dev: int
    is_unlocked: bool
    status: ConfidenceStatus

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CharacterConfidence":
        return cls(
            char=data["char"],
            confidence=float(data.get("confidence", 0)),
            wpm=float(data.get("wpm", 0)),
            accuracy=float(data.get("accuracy", 0)),
            occurrences=int(data.get("occurrences", 0)),
            avg_time_ms=int(data.get("avg_time_ms", DEFAULT_INTERVAL_MS)),
            std_dev=int(data.get("std_dev", 0)),
            is_unlocked=bool(data.get("is_unlocked", False)),
            status=data.get("status", "weak"),
        )


@dataclass(frozen=True)
class ProgressUpdate:
    updated_chars: tuple[CharacterConfidence, ...]
    newly_unlocked: tuple[str, ...]
    next_to_unlock: str | None


def confidence_status(confidence: float, is_unlocked: bool = True) -> ConfidenceStatus:
    if not is_unlocked:
        return "weak"
    if confidence >= 1.0:
        return "unlocked"
    if confidence >= 0.8:
        return "nearly_unlocked"
    if confidence >= 0.6:
        return "in_progress"
    if confidence >= 0.3:
        return "needs_work"
    return "weak"


def _std_dev(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def _is_letter(char: str) -> bool:
    return len(char) == 1 and "a" <= char <= "z"


def calculate_per_char_metrics(
    keystrokes: Sequence[KeystrokeRecord],
    target_wpm: float = DEFAULT_TARGET_WPM,
    unlocked: Collection[str] = (),
) -> Dict[str, CharacterConfidence]:
    """Confidence per letter for one session.

    Only keydown, non-backspace records count. A letter's timing sample is the
    gap since the previous counted keystroke, ignored unless 0 < gap < 5000ms.
    ``unlocked`` lists letters already unlocked for this user.
    """
    typed = [ks for ks in keystrokes if ks.event_type == "keydown" and not ks.is_backspace]

    totals: Dict[str, int] = defaultdict(int)
    correct: Dict[str, int] = defaultdict(int)
    timings: Dict[str, list[float]] = defaultdict(list)

    for i, ks in enumerate(typed):
        char = ks.char_expected.lower()
        if not _is_letter(char):
            continue
        totals[char] += 1
        if ks.is_correct:
            correct[char] += 1
        if i > 0:
            gap = ks.timestamp_ms - typed[i - 1].timestamp_ms
            if 0 < gap < MAX_INTERVAL_MS:
                timings[char].append(gap)

    result: Dict[str, CharacterConfidence] = {}
    for char, total in totals.items():
        accuracy = correct[char] / total * 100
        samples = timings[char]
        avg_time_ms = sum(samples) / len(samples) if samples else DEFAULT_INTERVAL_MS
        std_dev = _std_dev(samples)
        char_wpm = 60000 / avg_time_ms / 5 if avg_time_ms > 0 else 0.0

        confidence = (
            min(char_wpm / target_wpm, 1.0)
            * (accuracy / 100)
            * max(0.0, 1 - std_dev / 200)
        )
        is_unlocked = char in unlocked or char in STARTING_LETTERS
        result[char] = CharacterConfidence(
            char=char,
            confidence=round(confidence, 2),
            wpm=round(char_wpm, 1),
            accuracy=round(accuracy, 1),
            occurrences=total,
            avg_time_ms=round(avg_time_ms),
            std_dev=round(std_dev),
            is_unlocked=is_unlocked,
            status=confidence_status(confidence, is_unlocked),
        )
    return result


def next_letter_to_unlock(data: Mapping[str, CharacterConfidence]) -> str | None:
    """Most frequent English letter that is still locked."""
    for letter in LETTER_FREQUENCY_ORDER:
        if letter in STARTING_LETTERS:
            continue
        existing = data.get(letter)
        if existing is None or not existing.is_unlocked:
            return letter
    return None


class CharacterProgressTracker:
    """
    Blends session results into a user's stored per-letter history.

    Usage:
        tracker = CharacterProgressTracker(InMemoryKeyValueRepository(), "user-1")
        update = tracker.record_session(keystrokes)
        update.newly_unlocked, update.next_to_unlock
    """

    def __init__(
        self,
        repository: KeyValueRepository,
        user_id: str,
        target_wpm: float = DEFAULT_TARGET_WPM,
    ):
        self.repository = repository
        self.user_id = user_id
        self.target_wpm = target_wpm

    @property
    def key(self) -> str:
        return f"character_confidence:{self.user_id}"

    def load(self) -> Dict[str, CharacterConfidence]:
        stored = self.repository.get(self.key) or {}
        return {char: CharacterConfidence.from_dict(entry) for char, entry in stored.items()}

    def save(self, data: Mapping[str, CharacterConfidence]) -> None:
        self.repository.put(self.key, {char: entry.to_dict() for char, entry in data.items()})

    def unlocked_letters(self) -> list[str]:
        unlocked = set(STARTING_LETTERS)
        unlocked.update(char for char, entry in self.load().items() if entry.is_unlocked)
        return sorted(unlocked)

    def update(self, new_metrics: Mapping[str, CharacterConfidence]) -> ProgressUpdate:
        """Merge one session into the stored history (recent session weighted 0.7)."""
        saved = self.load()
        updated_chars: list[CharacterConfidence] = []
        newly_unlocked: list[str] = []

        for char, metrics in new_metrics.items():
            existing = saved.get(char)
            confidence, wpm, accuracy = metrics.confidence, metrics.wpm, metrics.accuracy
            occurrences = metrics.occurrences
            if existing is not None:
                keep = 1 - RECENCY_WEIGHT
                confidence = existing.confidence * keep + metrics.confidence * RECENCY_WEIGHT
                wpm = existing.wpm * keep + metrics.wpm * RECENCY_WEIGHT
                accuracy = existing.accuracy * keep + metrics.accuracy * RECENCY_WEIGHT
                occurrences = existing.occurrences + metrics.occurrences

            was_unlocked = (existing is not None and existing.is_unlocked) or char in STARTING_LETTERS
            should_unlock = wpm >= self.target_wpm and accuracy >= UNLOCK_MIN_ACCURACY
            is_unlocked = was_unlocked or should_unlock
            if should_unlock and not was_unlocked:
                newly_unlocked.append(char)

            entry = CharacterConfidence(
                char=char,
                confidence=round(confidence, 2),
                wpm=round(wpm, 1),
                accuracy=round(accuracy, 1),
                occurrences=occurrences,
                avg_time_ms=metrics.avg_time_ms,
                std_dev=metrics.std_dev,
                is_unlocked=is_unlocked,
                status=confidence_status(confidence, is_unlocked),
            )
            saved[char] = entry
            updated_chars.append(entry)

        self.save(saved)
        if newly_unlocked:
            logger.info(f"User {self.user_id} unlocked {', '.join(newly_unlocked)}")

        return ProgressUpdate(
            updated_chars=tuple(updated_chars),
            newly_unlocked=tuple(newly_unlocked),
            next_to_unlock=next_letter_to_unlock(saved),
        )

    def record_session(self, keystrokes: Sequence[KeystrokeRecord]) -> ProgressUpdate:
        unlocked = self.unlocked_letters()
        return self.update(calculate_per_char_metrics(keystrokes, self.target_wpm, unlocked))
