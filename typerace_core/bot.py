"""Synthetic typist used as a race opponent.

The bot produces the same kind of keystroke stream a human client would, so
its progress/WPM updates go through the same ``update_progress`` contract and
its keystroke log verifies with ``verify_metrics``.

Every stochastic helper takes an explicit ``random.Random``; seeding it makes a
whole race replayable. ``simulate_keystroke`` is pure and time-parameterized.
"""
from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, replace
from typing import Literal, Sequence

from .config import Settings, get_settings
from .metrics import (
    KeystrokeRecord,
    calculate_accuracy,
    calculate_progress,
    calculate_wpm,
)

logger = logging.getLogger(__name__)

BotLevel = Literal["beginner", "intermediate", "pro"]
BOT_LEVELS: tuple[BotLevel, ...] = ("beginner", "intermediate", "pro")


@dataclass(frozen=True)
class BotConfig:
    level: BotLevel
    target_wpm_mean: float
    target_wpm_std_dev: float
    mistake_probability: float
    correction_delay: tuple[float, float]  # [min, max] ms before correcting
    burst_probability: float
    hesitation_probability: float
    # Inter-keystroke interval (log-normal), ms
    iki_mean: float
    iki_std_dev: float


@dataclass(frozen=True)
class BotKeystroke:
    char: str
    timestamp: float
    is_correct: bool
    is_backspace: bool


@dataclass(frozen=True)
class BotState:
    config: BotConfig
    target_text: str
    typed_text: str = ""
    cursor_index: int = 0
    keystrokes: tuple[BotKeystroke, ...] = ()
    start_time: float = 0
    current_wpm: int = 0
    progress: float = 0.0
    is_finished: bool = False
    correct_chars: int = 0

    @property
    def last_keystroke_at(self) -> float | None:
        return self.keystrokes[-1].timestamp if self.keystrokes else None


@dataclass(frozen=True)
class BotUpdate:
    timestamp: float
    progress: float
    wpm: int
    typed_text: str


BOT_CONFIGS: dict[BotLevel, BotConfig] = {
    "beginner": BotConfig(
        level="beginner",
        target_wpm_mean=30,
        target_wpm_std_dev=8,
        mistake_probability=0.12,
        correction_delay=(300, 800),
        burst_probability=0.1,
        hesitation_probability=0.2,
        iki_mean=400,
        iki_std_dev=120,
    ),
    "intermediate": BotConfig(
        level="intermediate",
        target_wpm_mean=50,
        target_wpm_std_dev=10,
        mistake_probability=0.07,
        correction_delay=(200, 500),
        burst_probability=0.2,
        hesitation_probability=0.1,
        iki_mean=240,
        iki_std_dev=60,
    ),
    "pro": BotConfig(
        level="pro",
        target_wpm_mean=82,
        target_wpm_std_dev=12,
        mistake_probability=0.025,
        correction_delay=(100, 300),
        burst_probability=0.35,
        hesitation_probability=0.05,
        iki_mean=146,
        iki_std_dev=35,
    ),
}

BOT_NAMES: dict[BotLevel, tuple[str, ...]] = {
    "beginner": ("TypeLearner", "KeyNewbie", "SlowTyper", "Novice123"),
    "intermediate": ("SwiftKeys", "TyperMike", "KeyboardKid", "MidRacer"),
    "pro": ("SpeedDemon", "TypeMaster", "KeyboardKing", "WPMChamp"),
}

# Physical QWERTY neighbours used for realistic typos.
ADJACENT_KEYS: dict[str, tuple[str, ...]] = {
    "a": ("q", "w", "s", "z"),
    "b": ("v", "g", "h", "n"),
    "c": ("x", "d", "f", "v"),
    "d": ("s", "e", "r", "f", "x", "c"),
    "e": ("w", "s", "d", "r"),
    "f": ("d", "r", "t", "g", "c", "v"),
    "g": ("f", "t", "y", "h", "v", "b"),
    "h": ("g", "y", "u", "j", "b", "n"),
    "i": ("u", "j", "k", "o"),
    "j": ("h", "u", "i", "k", "n", "m"),
    "k": ("j", "i", "o", "l", "m"),
    "l": ("k", "o", "p"),
    "m": ("n", "j", "k"),
    "n": ("b", "h", "j", "m"),
    "o": ("i", "k", "l", "p"),
    "p": ("o", "l"),
    "q": ("w", "a"),
    "r": ("e", "d", "f", "t"),
    "s": ("a", "w", "e", "d", "z", "x"),
    "t": ("r", "f", "g", "y"),
    "u": ("y", "h", "j", "i"),
    "v": ("c", "f", "g", "b"),
    "w": ("q", "a", "s", "e"),
    "x": ("z", "s", "d", "c"),
    "y": ("t", "g", "h", "u"),
    "z": ("a", "s", "x"),
    " ": ("c", "v", "b", "n", "m"),
}


def sample_normal(rng: random.Random, mean: float, std_dev: float) -> float:
    return rng.gauss(mean, std_dev)


def sample_log_normal(rng: random.Random, mean: float, std_dev: float) -> float:
    """Draw from a log-normal whose own mean/stddev are ``mean``/``std_dev``."""
    mu = math.log(mean * mean / math.sqrt(mean * mean + std_dev * std_dev))
    sigma = math.sqrt(math.log(1 + (std_dev * std_dev) / (mean * mean)))
    return rng.lognormvariate(mu, sigma)


def get_typo_char(expected_char: str, rng: random.Random) -> str:
    """Pick a key physically next to ``expected_char``, preserving case."""
    adjacent = ADJACENT_KEYS.get(expected_char.lower())
    if adjacent:
        typo = rng.choice(adjacent)
        return typo.upper() if expected_char.isupper() else typo

    # No mapping (digits, punctuation): neighbouring code point.
    offset = 1 if rng.random() > 0.5 else -1
    code = ord(expected_char) + offset
    if code < 0:
        code = ord(expected_char) + 1
    return chr(code)


def create_bot(
    level: BotLevel,
    target_text: str,
    rng: random.Random | None = None,
) -> BotState:
    """Create a bot for ``level`` with per-instance jitter.

    The target WPM is re-drawn from a normal distribution (tier stddev / 2) and
    the keystroke interval is rescaled to match it; the mistake probability is
    shifted by up to +/-0.025 and clamped to [0.01, 0.25].
    """
    rng = rng or random.Random()
    base = BOT_CONFIGS[level]

    target_wpm = max(1, round(sample_normal(rng, base.target_wpm_mean, base.target_wpm_std_dev / 2)))
    speed_ratio = base.target_wpm_mean / target_wpm
    mistake_probability = max(
        0.01, min(0.25, base.mistake_probability + (rng.random() - 0.5) * 0.05)
    )
    config = replace(
        base,
        target_wpm_mean=target_wpm,
        mistake_probability=mistake_probability,
        iki_mean=base.iki_mean * speed_ratio,
        iki_std_dev=base.iki_std_dev * speed_ratio,
    )
    logger.debug(
        f"Created {level} bot: target {target_wpm} wpm, mistakes {mistake_probability:.3f}"
    )
    return BotState(config=config, target_text=target_text)


def get_next_keystroke_delay(
    bot: BotState,
    rng: random.Random,
    settings: Settings | None = None,
) -> float:
    """Milliseconds until the bot's next keystroke."""
    cfg = (settings or get_settings()).bot
    config = bot.config

    delay = sample_log_normal(rng, config.iki_mean, config.iki_std_dev)

    # Thinking pause
    if rng.random() < config.hesitation_probability:
        delay += sample_log_normal(rng, cfg.HESITATION_MEAN_MS, cfg.HESITATION_STDDEV_MS)

    # Burst typing
    if rng.random() < config.burst_probability:
        delay *= cfg.BURST_MULTIPLIER

    return max(cfg.MIN_DELAY_MS, min(cfg.MAX_DELAY_MS, delay))


def simulate_keystroke(
    bot: BotState,
    current_time: float,
    rng: random.Random,
    settings: Settings | None = None,
) -> BotState:
    """Type the next character at ``current_time`` and return the new state.

    A mistake substitutes an adjacent key. Most mistakes are corrected on the
    spot: a backspace after the configured correction delay, then the right
    character after a short log-normal pause. Those keystrokes carry their own
    (later) timestamps; drivers must not schedule the next keystroke before
    ``last_keystroke_at``.
    """
    if bot.is_finished:
        return bot
    cfg = (settings or get_settings()).bot

    start_time = current_time if not bot.keystrokes else bot.start_time

    if bot.cursor_index >= len(bot.target_text):
        return replace(bot, start_time=start_time, is_finished=True)
    expected_char = bot.target_text[bot.cursor_index]

    is_mistake = rng.random() < bot.config.mistake_probability
    typed_char = get_typo_char(expected_char, rng) if is_mistake else expected_char
    is_correct = typed_char == expected_char

    keystrokes = [
        *bot.keystrokes,
        BotKeystroke(char=typed_char, timestamp=current_time, is_correct=is_correct, is_backspace=False),
    ]
    typed_text = bot.typed_text + typed_char
    cursor_index = bot.cursor_index + 1
    correct_chars = bot.correct_chars + (1 if is_correct else 0)

    if is_mistake and rng.random() < cfg.CORRECTION_PROBABILITY:
        low, high = bot.config.correction_delay
        backspace_at = current_time + low + rng.random() * (high - low)
        retype_at = backspace_at + sample_log_normal(rng, cfg.RETYPE_MEAN_MS, cfg.RETYPE_STDDEV_MS)
        keystrokes.append(
            BotKeystroke(char="", timestamp=backspace_at, is_correct=False, is_backspace=True)
        )
        keystrokes.append(
            BotKeystroke(char=expected_char, timestamp=retype_at, is_correct=True, is_backspace=False)
        )
        typed_text = typed_text[:-1] + expected_char
        correct_chars += 1

    text_length = len(bot.target_text)
    return replace(
        bot,
        typed_text=typed_text,
        cursor_index=cursor_index,
        keystrokes=tuple(keystrokes),
        start_time=start_time,
        current_wpm=calculate_wpm(correct_chars, keystrokes[-1].timestamp - start_time),
        progress=calculate_progress(correct_chars, text_length),
        is_finished=cursor_index >= text_length,
        correct_chars=correct_chars,
    )


def _next_keystroke_time(bot: BotState, current_time: float, delay: float) -> float:
    # A correction in flight keeps the bot busy until its retype lands.
    busy_until = bot.last_keystroke_at
    if busy_until is not None and busy_until > current_time:
        current_time = busy_until
    return current_time + delay


def simulate_full_race(
    level: BotLevel,
    target_text: str,
    update_interval_ms: int | None = None,
    rng: random.Random | None = None,
    settings: Settings | None = None,
) -> list[BotUpdate]:
    """Run a whole race headlessly and return periodic snapshots.

    Used for server-hosted bots when no live clock drives the opponent. The
    last snapshot always reports progress 100.
    """
    settings = settings or get_settings()
    rng = rng or random.Random()
    if update_interval_ms is None:
        update_interval_ms = settings.bot.UPDATE_INTERVAL_MS

    bot = create_bot(level, target_text, rng)
    updates: list[BotUpdate] = []
    current_time = 0.0
    next_update_time = 0.0

    while not bot.is_finished:
        delay = get_next_keystroke_delay(bot, rng, settings)
        current_time = _next_keystroke_time(bot, current_time, delay)
        bot = simulate_keystroke(bot, current_time, rng, settings)

        if current_time >= next_update_time:
            updates.append(
                BotUpdate(
                    timestamp=current_time,
                    progress=bot.progress,
                    wpm=bot.current_wpm,
                    typed_text=bot.typed_text,
                )
            )
            next_update_time += update_interval_ms

    updates.append(
        BotUpdate(timestamp=current_time, progress=100.0, wpm=bot.current_wpm, typed_text=bot.typed_text)
    )
    logger.debug(
        f"Simulated {level} race over {len(target_text)} chars: "
        f"{bot.current_wpm} wpm in {current_time:.0f}ms, {len(updates)} updates"
    )
    return updates


def get_bot_name(level: BotLevel, rng: random.Random | None = None) -> str:
    return (rng or random.Random()).choice(BOT_NAMES[level])


def get_expected_completion_time(level: BotLevel, text_length: int) -> int:
    """Rough ETA in ms for a tier bot, padded for mistakes and corrections."""
    config = BOT_CONFIGS[level]
    chars_per_ms = config.target_wpm_mean * 5 / 60000
    mistake_overhead = 1 + config.mistake_probability * 2
    return round(text_length / chars_per_ms * mistake_overhead)


def bot_accuracy(bot: BotState) -> float:
    """Canonical accuracy of what the bot has typed so far."""
    typed = bot.typed_text
    overlap = min(len(typed), len(bot.target_text))
    correct = sum(1 for i in range(overlap) if typed[i] == bot.target_text[i])
    backspace_used = any(ks.is_backspace for ks in bot.keystrokes)
    return calculate_accuracy(
        correct,
        overlap - correct,
        0,
        max(0, len(typed) - len(bot.target_text)),
        backspace_used,
    )


def bot_keystroke_records(bot: BotState, session_id: str) -> list[KeystrokeRecord]:
    """Express the bot's keystrokes in the client wire format."""
    records: list[KeystrokeRecord] = []
    cursor = 0
    for ks in bot.keystrokes:
        if ks.is_backspace:
            cursor = max(0, cursor - 1)
            records.append(
                KeystrokeRecord(
                    session_id=session_id,
                    char_expected="",
                    char_typed="",
                    event_type="keydown",
                    timestamp_ms=ks.timestamp,
                    cursor_index=cursor,
                    is_backspace=True,
                    is_correct=False,
                )
            )
            continue
        expected = bot.target_text[cursor] if cursor < len(bot.target_text) else ""
        records.append(
            KeystrokeRecord(
                session_id=session_id,
                char_expected=expected,
                char_typed=ks.char,
                event_type="keydown",
                timestamp_ms=ks.timestamp,
                cursor_index=cursor,
                is_backspace=False,
                is_correct=ks.is_correct,
            )
        )
        cursor += 1
    return records


class BotRunner:
    """Advance a bot from an external timer.

    The caller invokes ``tick(now)`` on a short fixed cadence; each tick that
    finds the next keystroke due applies exactly one keystroke and schedules
    the following one.

    Usage:
        runner = BotRunner("pro", text, rng=random.Random(7))
        runner.start(now_ms)
        ... every 50ms:
        runner.tick(now_ms)
        progress, wpm, accuracy = runner.progress_update()
    """

    def __init__(
        self,
        level: BotLevel,
        target_text: str,
        rng: random.Random | None = None,
        settings: Settings | None = None,
    ):
        self._rng = rng or random.Random()
        self._settings = settings or get_settings()
        self.state = create_bot(level, target_text, self._rng)
        self.started_at: float | None = None
        self.next_keystroke_at: float | None = None

    @property
    def is_finished(self) -> bool:
        return self.state.is_finished

    def start(self, now: float) -> None:
        if self.started_at is not None:
            return
        self.started_at = now
        self.next_keystroke_at = now + get_next_keystroke_delay(self.state, self._rng, self._settings)

    def tick(self, now: float) -> BotState:
        if self.next_keystroke_at is None:
            raise RuntimeError("BotRunner.tick() called before start()")
        if self.state.is_finished or now < self.next_keystroke_at:
            return self.state

        keystroke_at = self.next_keystroke_at
        self.state = simulate_keystroke(self.state, keystroke_at, self._rng, self._settings)
        delay = get_next_keystroke_delay(self.state, self._rng, self._settings)
        self.next_keystroke_at = _next_keystroke_time(self.state, keystroke_at, delay)
        return self.state

    def progress_update(self) -> tuple[float, int, float]:
        """``(progress, wpm, accuracy)`` in the shape ``update_progress`` takes."""
        progress = 100.0 if self.state.is_finished else self.state.progress
        return progress, self.state.current_wpm, bot_accuracy(self.state)

    def keystroke_records(self, session_id: str) -> Sequence[KeystrokeRecord]:
        return bot_keystroke_records(self.state, session_id)
