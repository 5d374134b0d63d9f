"""
Input validation schemas using Pydantic v2
Validates race commands, keystroke logs and verification requests
"""

import logging
import re
from typing import Any, Dict, List, Literal, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .metrics import KeystrokeRecord, SessionMetrics, VerificationResult, verify_metrics

logger = logging.getLogger(__name__)

ROOM_CODE_LENGTH = 6
ROOM_CODE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
MAX_TARGET_TEXT_LENGTH = 10000
MAX_KEYSTROKES = 50000
MAX_SESSION_MS = 60 * 60 * 1000

COMMAND_TYPES = {
    "ADD_OPPONENT",
    "START_COUNTDOWN",
    "START_RACE",
    "UPDATE_PROGRESS",
    "COMPLETE_RACE",
    "CANCEL_RACE",
}

_PARTICIPANT_ID_RE = re.compile(r"^[A-Za-z0-9_.:\-]{1,64}$")


# ==================== COMMANDS ====================


class ValidatedCmd(BaseModel):
    """Race command with per-type required fields"""

    raceId: str = Field(..., min_length=1, max_length=64, description="Race id")
    type: str = Field(..., min_length=1, max_length=50, description="Command type")

    # Optimistic concurrency: version the sender last saw
    version: Optional[int] = Field(None, ge=0, description="Snapshot version seen by sender")
    actorId: Optional[str] = Field(None, min_length=1, max_length=64)
    idempotencyKey: Optional[str] = Field(None, max_length=128)

    # ADD_OPPONENT
    opponentId: Optional[str] = Field(None, min_length=1, max_length=64)
    isBot: Optional[bool] = None
    botLevel: Optional[Literal["beginner", "intermediate", "pro"]] = None

    # START_COUNTDOWN
    triggeredBy: Optional[str] = Field(None, min_length=1, max_length=64)

    # UPDATE_PROGRESS. Out-of-range values are clamped by the state machine.
    participantId: Optional[str] = Field(None, min_length=1, max_length=64)
    progress: Optional[float] = Field(None, allow_inf_nan=False)
    wpm: Optional[float] = Field(None, allow_inf_nan=False)
    accuracy: Optional[float] = Field(None, allow_inf_nan=False)

    # CANCEL_RACE
    reason: Optional[str] = Field(None, max_length=255)

    now: Optional[int] = Field(None, ge=0, description="Epoch ms override for replays")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Validate command type is one of allowed types"""
        if v not in COMMAND_TYPES:
            raise ValueError(f"type must be one of {sorted(COMMAND_TYPES)}, got {v}")
        return v

    @field_validator("opponentId", "participantId", "triggeredBy", "actorId")
    @classmethod
    def validate_identity(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not _PARTICIPANT_ID_RE.match(v):
            raise ValueError("participant ids may only contain letters, digits and _.:-")
        return v

    @model_validator(mode="after")
    def validate_command_fields(self) -> Self:
        """Validate required fields based on command type"""
        cmd_type = self.type

        if cmd_type == "ADD_OPPONENT":
            if self.opponentId is None:
                raise ValueError("ADD_OPPONENT requires opponentId")
            if self.isBot and self.botLevel is None:
                raise ValueError("ADD_OPPONENT with isBot requires botLevel")

        elif cmd_type == "START_COUNTDOWN":
            if self.triggeredBy is None and self.actorId is None:
                raise ValueError("START_COUNTDOWN requires triggeredBy")

        elif cmd_type == "UPDATE_PROGRESS":
            if self.participantId is None:
                raise ValueError("UPDATE_PROGRESS requires participantId")
            missing = [
                name for name in ("progress", "wpm", "accuracy") if getattr(self, name) is None
            ]
            if missing:
                raise ValueError(f"UPDATE_PROGRESS requires {', '.join(missing)}")

        return self

    model_config = ConfigDict(populate_by_name=True, extra="allow")


# ==================== KEYSTROKES / VERIFICATION ====================


class KeystrokeIn(BaseModel):
    """One client keystroke as received on the wire"""

    session_id: str = Field(..., min_length=1, max_length=64)
    user_id: Optional[str] = Field(None, max_length=64)
    char_expected: str = Field("", max_length=32)
    # Multi-char payloads (IME, paste) are accepted but ignored by reconstruction
    char_typed: str = Field("", max_length=32)
    event_type: Literal["keydown", "keyup"] = "keydown"
    timestamp_ms: float = Field(..., ge=0, allow_inf_nan=False)
    cursor_index: int = Field(0, ge=0)
    is_backspace: bool = False
    is_correct: bool = False

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_record(self) -> KeystrokeRecord:
        return KeystrokeRecord(
            session_id=self.session_id,
            char_expected=self.char_expected,
            char_typed=self.char_typed,
            event_type=self.event_type,
            timestamp_ms=self.timestamp_ms,
            cursor_index=self.cursor_index,
            is_backspace=self.is_backspace,
            is_correct=self.is_correct,
            user_id=self.user_id,
        )


class ClientMetricsIn(BaseModel):
    """Metrics the client claims; camelCase names accepted"""

    raw_wpm: Optional[float] = Field(None, alias="rawWpm", allow_inf_nan=False)
    net_wpm: Optional[float] = Field(None, alias="netWpm", allow_inf_nan=False)
    accuracy: Optional[float] = Field(None, allow_inf_nan=False)
    consistency: Optional[float] = Field(None, allow_inf_nan=False)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class VerifyRequest(BaseModel):
    """Body of a metrics verification request"""

    client_metrics: ClientMetricsIn = Field(..., alias="clientMetrics")
    keystrokes: List[KeystrokeIn] = Field(default_factory=list, max_length=MAX_KEYSTROKES)
    target_text: str = Field(..., alias="targetText", max_length=MAX_TARGET_TEXT_LENGTH)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def validate_monotonic_timestamps(self) -> Self:
        """Keystroke logs are append-only and bounded in length of time"""
        last = None
        for i, ks in enumerate(self.keystrokes):
            if last is not None and ks.timestamp_ms < last:
                raise ValueError(f"keystroke {i} timestamp goes backwards ({ks.timestamp_ms} < {last})")
            last = ks.timestamp_ms
        if self.keystrokes:
            span = self.keystrokes[-1].timestamp_ms - self.keystrokes[0].timestamp_ms
            if span > MAX_SESSION_MS:
                raise ValueError(f"session spans {span:g}ms, limit is {MAX_SESSION_MS}ms")
        return self

    def records(self) -> List[KeystrokeRecord]:
        return [ks.to_record() for ks in self.keystrokes]

    def verify(self) -> VerificationResult:
        return verify_metrics(
            self.client_metrics.model_dump(exclude_none=True),
            self.records(),
            self.target_text,
        )


class VerifyResponse(BaseModel):
    """Verification outcome in wire shape"""

    valid: bool
    errors: List[str] = Field(default_factory=list)
    computed_metrics: Dict[str, Any] = Field(default_factory=dict, alias="computedMetrics")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: VerificationResult) -> "VerifyResponse":
        metrics: SessionMetrics = result.computed_metrics
        return cls(valid=result.valid, errors=list(result.errors), computed_metrics=metrics.as_wire())


class InputSanitizer:
    """Utility class for input sanitization"""

    @staticmethod
    def sanitize_string(value: str, max_length: int = 255) -> str:
        """Sanitize string input"""
        if not isinstance(value, str):
            return str(value)[:max_length]

        value = value.strip()
        value = value[:max_length]
        value = value.replace("\0", "")
        return value

    @staticmethod
    def sanitize_room_code(code: str) -> str:
        """Normalize a room code to upper-case alphanumerics"""
        code = InputSanitizer.sanitize_string(code, 32).upper()
        code = "".join(ch for ch in code if ch in ROOM_CODE_ALPHABET)
        return code[:ROOM_CODE_LENGTH]

    @staticmethod
    def is_valid_room_code(code: str) -> bool:
        return len(code) == ROOM_CODE_LENGTH and all(ch in ROOM_CODE_ALPHABET for ch in code)

    @staticmethod
    def sanitize_participant_id(participant_id: str) -> str:
        """Strip anything outside the participant id alphabet"""
        participant_id = InputSanitizer.sanitize_string(participant_id, 64)
        return re.sub(r"[^A-Za-z0-9_.:\-]", "", participant_id)

    @staticmethod
    def sanitize_target_text(text: str) -> str:
        """Drop control characters (except newline/tab) and cap length"""
        if not isinstance(text, str):
            text = str(text)
        text = text.replace("\0", "")
        text = re.sub(r"[\x01-\x08\x0b-\x1f\x7f]", "", text)
        return text[:MAX_TARGET_TEXT_LENGTH]

    @staticmethod
    def validate_and_sanitize_cmd(cmd_dict: dict) -> ValidatedCmd:
        """
        Validate and sanitize command dictionary

        Returns:
            ValidatedCmd: Validated command object

        Raises:
            ValueError: If validation fails
        """
        try:
            return ValidatedCmd(**cmd_dict)
        except Exception as e:
            logger.warning(f"Command validation failed: {e}")
            raise ValueError(f"Invalid command: {str(e)}")

    @staticmethod
    def validate_verify_request(payload: dict) -> VerifyRequest:
        """
        Validate a verification request body

        Raises:
            ValueError: If validation fails
        """
        try:
            return VerifyRequest.model_validate(payload)
        except Exception as e:
            logger.warning(f"Verify request validation failed: {e}")
            raise ValueError(f"Invalid verify request: {str(e)}")


# ==================== EXPORT ====================

__all__ = [
    "ValidatedCmd",
    "KeystrokeIn",
    "ClientMetricsIn",
    "VerifyRequest",
    "VerifyResponse",
    "InputSanitizer",
]
