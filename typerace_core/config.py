"""Engine settings.

All tunables of the race core live here. The module-level instance returned by
``get_settings()`` holds the defaults; callers that need different values build
their own ``Settings`` and pass it to ``RaceCoordinator``.
"""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class RaceConfig:
    """Bounds applied to participant updates."""

    MAX_PROGRESS: float = 100.0
    MAX_WPM: float = 500.0
    MAX_ACCURACY: float = 100.0
    # Participants start "perfect" until a keystroke proves otherwise.
    INITIAL_ACCURACY: float = 100.0


@dataclass(frozen=True)
class MetricsConfig:
    """Canonical metric parameters."""

    CHARS_PER_WORD: int = 5
    WPM_WINDOW_SIZE_MS: int = 5000
    WPM_WINDOW_STEP_MS: int = 1000
    BACKSPACE_ACCURACY_CAP: float = 99.99

    # verify_metrics tolerances
    WPM_RELATIVE_TOLERANCE_PCT: float = 0.5
    WPM_ABSOLUTE_FLOOR: float = 2.0
    ACCURACY_TOLERANCE: float = 0.5


@dataclass(frozen=True)
class BotEngineConfig:
    """Synthetic typist timing limits."""

    MIN_DELAY_MS: float = 50.0
    MAX_DELAY_MS: float = 2000.0
    HESITATION_MEAN_MS: float = 500.0
    HESITATION_STDDEV_MS: float = 200.0
    BURST_MULTIPLIER: float = 0.6
    CORRECTION_PROBABILITY: float = 0.9
    RETYPE_MEAN_MS: float = 100.0
    RETYPE_STDDEV_MS: float = 30.0
    UPDATE_INTERVAL_MS: int = 200
    TICK_INTERVAL_MS: int = 50


@dataclass(frozen=True)
class StoreConfig:
    """Optimistic concurrency behaviour of the coordinator."""

    CAS_MAX_ATTEMPTS: int = 5


@dataclass(frozen=True)
class Settings:
    """Main settings container."""

    race: RaceConfig = field(default_factory=RaceConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    bot: BotEngineConfig = field(default_factory=BotEngineConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    APP_NAME: str = "typerace-core"
    VERSION: str = "0.1.0"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings
