"""Type definitions for wire shapes (race rows, keystrokes, commands)."""
from __future__ import annotations

from typing import List, Optional, TypedDict


class RaceRow(TypedDict, total=False):
    """
    TypedDict representing a persisted/broadcast race snapshot.

    Timestamps are ISO-8601 UTC strings. All fields are optional (total=False)
    so partial rows from older writers still type-check; ``serialize_race_state``
    always emits the full set.
    """
    # Identity (never changes after creation)
    id: str
    room_code: str
    expected_text: str
    host_id: str
    created_at: str

    status: str  # 'waiting' | 'countdown' | 'active' | 'completed' | 'cancelled'
    version: int
    updated_at: str

    host_progress: float
    host_wpm: float
    host_accuracy: float
    host_finished_at: Optional[str]

    opponent_id: Optional[str]
    opponent_is_bot: bool
    opponent_bot_level: Optional[str]  # 'beginner' | 'intermediate' | 'pro'
    opponent_progress: float
    opponent_wpm: float
    opponent_accuracy: float
    opponent_finished_at: Optional[str]

    countdown_started_at: Optional[str]
    started_at: Optional[str]
    ended_at: Optional[str]
    winner_id: Optional[str]


class KeystrokeWire(TypedDict, total=False):
    """One keystroke as sent by a client."""
    session_id: str
    user_id: Optional[str]
    char_expected: str
    char_typed: str
    event_type: str  # 'keydown' | 'keyup'
    timestamp_ms: float
    cursor_index: int
    is_backspace: bool
    is_correct: bool


class ClientMetrics(TypedDict, total=False):
    """Metrics a client claims for its own session (camelCase on the wire)."""
    rawWpm: float
    netWpm: float
    accuracy: float
    consistency: float


class CommandPayload(TypedDict, total=False):
    """
    TypedDict for command payloads sent to apply_command().

    Fields vary by command type.
    """
    # Common
    type: str
    raceId: str
    version: Optional[int]
    actorId: Optional[str]
    idempotencyKey: Optional[str]

    # ADD_OPPONENT
    opponentId: Optional[str]
    isBot: Optional[bool]
    botLevel: Optional[str]

    # START_COUNTDOWN
    triggeredBy: Optional[str]

    # UPDATE_PROGRESS
    participantId: Optional[str]
    progress: Optional[float]
    wpm: Optional[float]
    accuracy: Optional[float]

    # CANCEL_RACE
    reason: Optional[str]

    # Client clock override (epoch ms), used for replays
    now: Optional[int]


class VerifyPayload(TypedDict, total=False):
    """Body of a verification request."""
    clientMetrics: ClientMetrics
    keystrokes: List[KeystrokeWire]
    targetText: str


RowDict = RaceRow
CmdDict = CommandPayload
