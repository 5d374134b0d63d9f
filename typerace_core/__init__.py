from .race import (
    InvalidTransition,
    MissingOpponent,
    ParticipantConflict,
    ParticipantNotFound,
    RaceParticipant,
    RaceState,
    RaceStatus,
    StateError,
    VALID_TRANSITIONS,
    WrongStatus,
    add_opponent,
    cancel_race,
    complete_race,
    create_race_state,
    deserialize_race_state,
    determine_winner,
    is_valid_transition,
    serialize_race_state,
    start_countdown,
    start_race,
    update_progress,
)
from .commands import CommandOutcome, StaleCommand, apply_command, validate_version
from .metrics import (
    KeystrokeRecord,
    SessionMetrics,
    VerificationResult,
    WpmWindow,
    calculate_accuracy,
    calculate_consistency,
    calculate_live_accuracy,
    calculate_progress,
    calculate_raw_wpm,
    calculate_wpm,
    calculate_wpm_windows,
    compute_session_metrics,
    reconstruct_typed_text,
    sanitize_metric,
    verify_metrics,
)
from .bot import (
    BOT_CONFIGS,
    BotConfig,
    BotKeystroke,
    BotLevel,
    BotRunner,
    BotState,
    BotUpdate,
    bot_accuracy,
    bot_keystroke_records,
    create_bot,
    get_bot_name,
    get_expected_completion_time,
    get_next_keystroke_delay,
    simulate_full_race,
    simulate_keystroke,
)
from .store import (
    Broadcaster,
    InMemoryBroadcaster,
    InMemoryKeyValueRepository,
    InMemoryRaceRepository,
    KeyValueRepository,
    PolicyViolation,
    PolicyViolationError,
    RaceNotFound,
    RaceRepository,
    StoreError,
    VersionConflict,
    check_row_update,
)
from .coordinator import RaceCoordinator
from .character_stats import (
    CharacterConfidence,
    CharacterProgressTracker,
    ProgressUpdate,
    calculate_per_char_metrics,
    confidence_status,
    next_letter_to_unlock,
)
from .config import Settings, get_settings
from .types import ClientMetrics, CommandPayload, KeystrokeWire, RaceRow
from .validation import InputSanitizer, ValidatedCmd, VerifyRequest, VerifyResponse

__all__ = [
    "InvalidTransition",
    "MissingOpponent",
    "ParticipantConflict",
    "ParticipantNotFound",
    "RaceParticipant",
    "RaceState",
    "RaceStatus",
    "StateError",
    "VALID_TRANSITIONS",
    "WrongStatus",
    "add_opponent",
    "cancel_race",
    "complete_race",
    "create_race_state",
    "deserialize_race_state",
    "determine_winner",
    "is_valid_transition",
    "serialize_race_state",
    "start_countdown",
    "start_race",
    "update_progress",
    "CommandOutcome",
    "StaleCommand",
    "apply_command",
    "validate_version",
    "KeystrokeRecord",
    "SessionMetrics",
    "VerificationResult",
    "WpmWindow",
    "calculate_accuracy",
    "calculate_consistency",
    "calculate_live_accuracy",
    "calculate_progress",
    "calculate_raw_wpm",
    "calculate_wpm",
    "calculate_wpm_windows",
    "compute_session_metrics",
    "reconstruct_typed_text",
    "sanitize_metric",
    "verify_metrics",
    "BOT_CONFIGS",
    "BotConfig",
    "BotKeystroke",
    "BotLevel",
    "BotRunner",
    "BotState",
    "BotUpdate",
    "bot_accuracy",
    "bot_keystroke_records",
    "create_bot",
    "get_bot_name",
    "get_expected_completion_time",
    "get_next_keystroke_delay",
    "simulate_full_race",
    "simulate_keystroke",
    "Broadcaster",
    "InMemoryBroadcaster",
    "InMemoryKeyValueRepository",
    "InMemoryRaceRepository",
    "KeyValueRepository",
    "PolicyViolation",
    "PolicyViolationError",
    "RaceNotFound",
    "RaceRepository",
    "StoreError",
    "VersionConflict",
    "check_row_update",
    "RaceCoordinator",
    "CharacterConfidence",
    "CharacterProgressTracker",
    "ProgressUpdate",
    "calculate_per_char_metrics",
    "confidence_status",
    "next_letter_to_unlock",
    "Settings",
    "get_settings",
    "ClientMetrics",
    "CommandPayload",
    "KeystrokeWire",
    "RaceRow",
    "InputSanitizer",
    "ValidatedCmd",
    "VerifyRequest",
    "VerifyResponse",
]
