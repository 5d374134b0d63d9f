"""Canonical typing metrics computed from raw keystroke logs.

Everything the server trusts about a typing session is derived here from the
append-only keystroke log. Client-reported numbers are only ever compared
against these values (see ``verify_metrics``); they are never persisted as
scores.

Conventions:
- A "word" is ``CHARS_PER_WORD`` (5) characters.
- Timestamps are epoch milliseconds, assumed monotonic non-decreasing.
- Rounding is half-up, matching what browser clients display, so verification
  compares like with like.
- Metric functions are total: corrupt or empty input produces an invalid
  ``SessionMetrics`` with itemized ``validation_errors`` instead of raising.
"""
from __future__ import annotations

import logging
import math
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

from .config import get_settings

logger = logging.getLogger(__name__)

EventType = Literal["keydown", "keyup"]

_CFG = get_settings().metrics
CHARS_PER_WORD = _CFG.CHARS_PER_WORD
WPM_WINDOW_SIZE_MS = _CFG.WPM_WINDOW_SIZE_MS
WPM_WINDOW_STEP_MS = _CFG.WPM_WINDOW_STEP_MS


@dataclass(frozen=True)
class KeystrokeRecord:
    session_id: str
    char_expected: str
    char_typed: str
    event_type: EventType
    timestamp_ms: float
    cursor_index: int
    is_backspace: bool
    is_correct: bool
    user_id: str | None = None

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "KeystrokeRecord":
        return cls(
            session_id=str(data.get("session_id") or ""),
            char_expected=data.get("char_expected") or "",
            char_typed=data.get("char_typed") or "",
            event_type=data.get("event_type") or "keydown",
            timestamp_ms=data.get("timestamp_ms") or 0,
            cursor_index=int(data.get("cursor_index") or 0),
            is_backspace=bool(data.get("is_backspace")),
            is_correct=bool(data.get("is_correct")),
            user_id=data.get("user_id"),
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "session_id": self.session_id,
            "char_expected": self.char_expected,
            "char_typed": self.char_typed,
            "event_type": self.event_type,
            "timestamp_ms": self.timestamp_ms,
            "cursor_index": self.cursor_index,
            "is_backspace": self.is_backspace,
            "is_correct": self.is_correct,
        }
        if self.user_id is not None:
            payload["user_id"] = self.user_id
        return payload


@dataclass(frozen=True)
class WpmWindow:
    start_ms: float
    end_ms: float
    wpm: int
    correct_chars: int


@dataclass(frozen=True)
class SessionMetrics:
    """Aggregate metrics for one session. Built only by ``compute_session_metrics``."""

    raw_wpm: int
    net_wpm: int
    accuracy: float
    consistency: float

    total_typed_chars: int
    correct_chars: int
    incorrect_chars: int
    missed_chars: int
    extra_chars: int

    duration_ms: float
    duration_seconds: float
    duration_minutes: float
    chars_per_second: float

    peak_wpm: int
    lowest_wpm: int
    backspace_count: int

    is_valid: bool
    validation_errors: tuple[str, ...] = field(default_factory=tuple)

    def as_wire(self) -> dict[str, Any]:
        """camelCase shape used by the verification contract."""
        return {
            "rawWpm": self.raw_wpm,
            "netWpm": self.net_wpm,
            "accuracy": self.accuracy,
            "consistency": self.consistency,
            "totalTypedChars": self.total_typed_chars,
            "correctChars": self.correct_chars,
            "incorrectChars": self.incorrect_chars,
            "missedChars": self.missed_chars,
            "extraChars": self.extra_chars,
            "durationMs": self.duration_ms,
            "durationSeconds": self.duration_seconds,
            "durationMinutes": self.duration_minutes,
            "charsPerSecond": self.chars_per_second,
            "peakWpm": self.peak_wpm,
            "lowestWpm": self.lowest_wpm,
            "backspaceCount": self.backspace_count,
            "isValid": self.is_valid,
            "validationErrors": list(self.validation_errors),
        }


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    errors: tuple[str, ...]
    computed_metrics: SessionMetrics


def _round(value: float, ndigits: int = 0) -> float:
    # Half-up rounding; non-finite values pass through for the caller to flag.
    if not math.isfinite(value):
        return value
    scale = 10**ndigits
    return math.floor(value * scale + 0.5) / scale


def _words_per_minute(chars: float, elapsed_ms: float) -> int:
    if not elapsed_ms > 0:
        return 0
    wpm = (chars / CHARS_PER_WORD) / (elapsed_ms / 60000)
    if not math.isfinite(wpm):
        return 0
    return int(_round(wpm))


def calculate_wpm(correct_chars: int, elapsed_ms: float) -> int:
    """Net WPM: ``(correct_chars / 5) / minutes``. Zero when no time elapsed."""
    return _words_per_minute(correct_chars, elapsed_ms)


def calculate_raw_wpm(total_typed_chars: int, elapsed_ms: float) -> int:
    """Raw WPM: same formula as ``calculate_wpm`` over every typed character."""
    return _words_per_minute(total_typed_chars, elapsed_ms)


def calculate_accuracy(
    correct_chars: int,
    incorrect_chars: int,
    missed_chars: int,
    extra_chars: int,
    backspace_used: bool,
) -> float:
    """Canonical accuracy percentage, rounded to two decimals.

    The denominator counts every character class (correct, incorrect, missed,
    extra). An empty denominator is 100. A session that used backspace can
    never score 100: if the rounded result would be 100 it is capped at 99.99.
    """
    denominator = correct_chars + incorrect_chars + missed_chars + extra_chars
    if denominator == 0:
        return 100.0

    accuracy = _round((correct_chars / denominator) * 100, 2)
    if backspace_used and accuracy >= 100:
        return _CFG.BACKSPACE_ACCURACY_CAP
    return accuracy


def calculate_live_accuracy(correct_chars: int, typed_chars: int) -> int:
    """Running accuracy shown while typing (typed characters only).

    This is a display approximation. Scoring and anti-cheat always use
    ``calculate_accuracy``.
    """
    if typed_chars <= 0:
        return 100
    return int(_round((correct_chars / typed_chars) * 100))


def calculate_consistency(wpm_samples: Sequence[float]) -> float:
    """100 minus the coefficient of variation of the samples, in percent.

    Zero and non-finite samples are ignored; fewer than two usable samples
    means perfectly consistent (100).
    """
    samples = [s for s in wpm_samples if math.isfinite(s) and s > 0]
    if len(samples) < 2:
        return 100.0

    mean = sum(samples) / len(samples)
    if mean <= 0:
        return 100.0
    variance = sum((s - mean) ** 2 for s in samples) / len(samples)
    cv = math.sqrt(variance) / mean

    consistency = max(0.0, min(100.0, 100 - cv * 100))
    return _round(consistency, 1)


def calculate_wpm_windows(
    keystrokes: Sequence[KeystrokeRecord],
    window_size_ms: int = WPM_WINDOW_SIZE_MS,
    step_ms: int = WPM_WINDOW_STEP_MS,
) -> list[WpmWindow]:
    """Slide a fixed window over the session and measure net WPM inside it.

    Windows start at the first keystroke and advance by ``step_ms`` while the
    whole window still fits before the last keystroke. Only correct,
    non-backspace keydowns count. Windows with no counted keystroke are
    skipped, so a long pause costs nothing.
    """
    if not keystrokes or window_size_ms <= 0 or step_ms <= 0:
        return []

    start_time = keystrokes[0].timestamp_ms
    end_time = keystrokes[-1].timestamp_ms
    if not (math.isfinite(start_time) and math.isfinite(end_time)):
        return []

    counted = sorted(
        ks.timestamp_ms
        for ks in keystrokes
        if ks.is_correct and not ks.is_backspace and ks.event_type != "keyup"
    )

    windows: list[WpmWindow] = []
    window_start = start_time
    while window_start <= end_time - window_size_ms:
        window_end = window_start + window_size_ms
        first = bisect_left(counted, window_start)
        if first == len(counted):
            break
        if counted[first] >= window_end:
            # Empty stretch: jump to the first step whose window holds the next keystroke
            steps = math.floor((counted[first] - window_size_ms - window_start) / step_ms) + 1
            window_start += max(1, steps) * step_ms
            continue
        correct = bisect_left(counted, window_end) - first
        windows.append(
            WpmWindow(
                start_ms=window_start,
                end_ms=window_end,
                wpm=calculate_wpm(correct, window_size_ms),
                correct_chars=correct,
            )
        )
        window_start += step_ms
    return windows


def calculate_progress(correct_chars: int, expected_text_length: int) -> float:
    """Race progress in percent (one decimal), clamped to [0, 100]."""
    if expected_text_length <= 0:
        return 0.0
    progress = _round((correct_chars / expected_text_length) * 100, 1)
    return min(100.0, max(0.0, progress))


def sanitize_metric(value: float, allow_negative: bool = False) -> float:
    """Return ``value`` if it is safe to display, else 0."""
    if not math.isfinite(value):
        return 0
    if not allow_negative and value < 0:
        return 0
    return value


def _empty_metrics(target_text: str) -> SessionMetrics:
    return SessionMetrics(
        raw_wpm=0,
        net_wpm=0,
        accuracy=100.0,
        consistency=100.0,
        total_typed_chars=0,
        correct_chars=0,
        incorrect_chars=0,
        missed_chars=len(target_text),
        extra_chars=0,
        duration_ms=0,
        duration_seconds=0.0,
        duration_minutes=0.0,
        chars_per_second=0.0,
        peak_wpm=0,
        lowest_wpm=0,
        backspace_count=0,
        is_valid=False,
        validation_errors=("No keystrokes recorded",),
    )


def compute_session_metrics(
    keystrokes: Sequence[KeystrokeRecord],
    target_text: str,
    final_typed_text: str,
) -> SessionMetrics:
    """Compute every session metric from the keystroke log.

    This is the canonical source of truth for scoring.

    Args:
        keystrokes: Ordered keystroke log for the session
        target_text: Text the typist was asked to type
        final_typed_text: What ended up in the buffer; callers that do not
            trust the client pass ``reconstruct_typed_text(keystrokes)``

    Returns:
        SessionMetrics; ``is_valid`` is False (with reasons) for an empty log,
        a non-positive duration, or any non-finite derived value. Non-finite
        values are zeroed after being reported.
    """
    if not keystrokes:
        return _empty_metrics(target_text)

    validation_errors: list[str] = []

    start_time = keystrokes[0].timestamp_ms
    end_time = keystrokes[-1].timestamp_ms
    duration_ms = end_time - start_time
    duration_seconds = duration_ms / 1000
    duration_minutes = duration_ms / 60000

    if not duration_ms > 0:
        validation_errors.append("Invalid duration")

    # Positional comparison over the overlapping prefix.
    comparison_length = min(len(final_typed_text), len(target_text))
    correct_chars = sum(
        1 for i in range(comparison_length) if final_typed_text[i] == target_text[i]
    )
    incorrect_chars = comparison_length - correct_chars
    extra_chars = max(0, len(final_typed_text) - len(target_text))
    missed_chars = max(0, len(target_text) - len(final_typed_text))
    total_typed_chars = len(final_typed_text)

    backspace_count = sum(1 for ks in keystrokes if ks.is_backspace)

    wpm_values = [w.wpm for w in calculate_wpm_windows(keystrokes)]

    raw_wpm = calculate_raw_wpm(total_typed_chars, duration_ms)
    net_wpm = calculate_wpm(correct_chars, duration_ms)
    accuracy = calculate_accuracy(
        correct_chars, incorrect_chars, missed_chars, extra_chars, backspace_count > 0
    )
    consistency = calculate_consistency(wpm_values)
    chars_per_second = (
        _round(total_typed_chars / duration_seconds, 2) if duration_seconds > 0 else 0.0
    )

    positive_wpms = [w for w in wpm_values if w > 0]
    peak_wpm = max(positive_wpms) if positive_wpms else net_wpm
    lowest_wpm = min(positive_wpms) if positive_wpms else net_wpm

    derived = {
        "rawWpm": raw_wpm,
        "netWpm": net_wpm,
        "accuracy": accuracy,
        "consistency": consistency,
        "peakWpm": peak_wpm,
        "lowestWpm": lowest_wpm,
        "charsPerSecond": chars_per_second,
        "durationMs": duration_ms,
    }
    for key, value in derived.items():
        if not math.isfinite(value):
            validation_errors.append(f"Invalid {key}: {value}")

    return SessionMetrics(
        raw_wpm=raw_wpm,
        net_wpm=net_wpm,
        accuracy=sanitize_metric(accuracy),
        consistency=sanitize_metric(consistency),
        total_typed_chars=total_typed_chars,
        correct_chars=correct_chars,
        incorrect_chars=incorrect_chars,
        missed_chars=missed_chars,
        extra_chars=extra_chars,
        duration_ms=sanitize_metric(duration_ms),
        duration_seconds=sanitize_metric(_round(duration_seconds, 2)),
        duration_minutes=sanitize_metric(_round(duration_minutes, 3)),
        chars_per_second=sanitize_metric(chars_per_second),
        peak_wpm=peak_wpm,
        lowest_wpm=lowest_wpm,
        backspace_count=backspace_count,
        is_valid=not validation_errors,
        validation_errors=tuple(validation_errors),
    )


def reconstruct_typed_text(keystrokes: Sequence[KeystrokeRecord]) -> str:
    """Replay the log into the text the server trusts.

    Backspace removes the last buffered character; a single-character keydown
    appends it. Everything else (keyup, modifiers, multi-char payloads) is
    ignored.
    """
    buffer: list[str] = []
    for ks in keystrokes:
        if ks.event_type == "keyup":
            continue
        if ks.is_backspace:
            if buffer:
                buffer.pop()
        elif ks.char_typed and len(ks.char_typed) == 1:
            buffer.append(ks.char_typed)
    return "".join(buffer)


def _client_value(client_metrics: Mapping[str, Any], snake: str, camel: str) -> float | None:
    value = client_metrics.get(snake)
    if value is None:
        value = client_metrics.get(camel)
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def verify_metrics(
    client_metrics: Mapping[str, Any],
    keystrokes: Sequence[KeystrokeRecord],
    target_text: str,
) -> VerificationResult:
    """Check client-reported metrics against a server-side recomputation.

    The recomputed metrics are always authoritative; ``errors`` lists every
    reported value that disagrees beyond tolerance:

    - rawWpm: flagged only when the difference exceeds both 0.5% of the
      canonical value and an absolute floor of 2 WPM.
    - accuracy: flagged when the difference exceeds 0.5 points.

    Fields absent from ``client_metrics`` are not checked. Both snake_case and
    camelCase keys are accepted.
    """
    reconstructed = reconstruct_typed_text(keystrokes)
    computed = compute_session_metrics(keystrokes, target_text, reconstructed)
    errors: list[str] = []

    client_raw_wpm = _client_value(client_metrics, "raw_wpm", "rawWpm")
    if client_raw_wpm is not None:
        diff = abs(client_raw_wpm - computed.raw_wpm)
        relative_limit = computed.raw_wpm * (_CFG.WPM_RELATIVE_TOLERANCE_PCT / 100)
        if diff > relative_limit and diff > _CFG.WPM_ABSOLUTE_FLOOR:
            errors.append(
                f"rawWpm mismatch: client={client_raw_wpm:g}, server={computed.raw_wpm}"
            )

    client_accuracy = _client_value(client_metrics, "accuracy", "accuracy")
    if client_accuracy is not None:
        diff = abs(client_accuracy - computed.accuracy)
        if diff > _CFG.ACCURACY_TOLERANCE:
            errors.append(
                f"accuracy mismatch: client={client_accuracy:g}, server={computed.accuracy:g}"
            )

    if errors:
        session_id = keystrokes[0].session_id if keystrokes else "?"
        logger.warning(f"Metric verification failed for session {session_id}: {errors}")

    return VerificationResult(
        valid=not errors,
        errors=tuple(errors),
        computed_metrics=computed,
    )
