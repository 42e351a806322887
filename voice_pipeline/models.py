"""Data models for the voice processing pipeline"""

import re
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Optional, Pattern

import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_float_list(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return np.asarray(value, dtype=np.float64).ravel().tolist()
    return value


class Language(str, Enum):
    """Languages the pipeline detects and routes commands for"""
    BANGLA = "bn"
    ENGLISH = "en"


class DetectionMethod(str, Enum):
    PATTERN = "pattern"
    FREQUENCY = "frequency"
    API = "api"
    FALLBACK = "fallback"


class NoiseEnvironment(str, Enum):
    QUIET = "quiet"
    MODERATE = "moderate"
    NOISY = "noisy"
    OUTDOOR = "outdoor"
    INDOOR = "indoor"


class CommandAction(str, Enum):
    """Behaviours a voice command can trigger"""
    SWITCH_LANGUAGE = "switch_language"
    STOP_SPEECH = "stop_speech"
    REPLAY_SPEECH = "replay_speech"
    CLEAR_CONVERSATION = "clear_conversation"
    SHOW_HELP = "show_help"
    ADJUST_SPEECH_RATE = "adjust_speech_rate"
    ADJUST_VOLUME = "adjust_volume"
    CUSTOM = "custom"


class TriggerType(str, Enum):
    LITERAL = "literal"
    PATTERN = "pattern"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Frame path
# ---------------------------------------------------------------------------

class VoiceActivityResult(BaseModel):
    """Per-frame voice activity result"""
    is_voice_active: bool
    volume: float
    frequency: float
    confidence: float
    timestamp: float  # milliseconds


class NoiseProfile(BaseModel):
    """Learned noise characteristics for one environment"""
    id: str
    name: str
    environment: NoiseEnvironment
    noise_floor: float = 0.0
    frequency_profile: List[float] = []
    adaptive_threshold: float = 0.01
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("frequency_profile", mode="before")
    @classmethod
    def coerce_frequency_profile(cls, value: Any) -> Any:
        return _to_float_list(value)


class NoiseAnalysis(BaseModel):
    """Snapshot of the noise conditions in one frame"""
    noise_level: float
    signal_to_noise_ratio: float
    dominant_noise_frequencies: List[float] = []
    voice_present: bool
    confidence: float
    timestamp: float  # milliseconds

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Text path
# ---------------------------------------------------------------------------

class LanguageAlternative(BaseModel):
    language: Language
    confidence: float


class LanguageDetectionResult(BaseModel):
    """Language detection result"""
    detected_language: Language
    confidence: float
    alternatives: List[LanguageAlternative] = []
    method: DetectionMethod


@lru_cache(maxsize=256)
def _compile_trigger(trigger: str, flags: int) -> Pattern[str]:
    return re.compile(trigger, flags)


class VoiceCommand(BaseModel):
    """Registered voice command"""
    id: str
    trigger: str
    trigger_type: TriggerType = TriggerType.LITERAL
    flags: int = 0
    action: CommandAction
    description: str = ""
    language: str = "both"  # bn | en | both
    enabled: bool = True
    parameters: List[str] = []

    @field_validator("language")
    @classmethod
    def check_language(cls, value: str) -> str:
        if value not in ("bn", "en", "both"):
            raise ValueError(f"Unsupported command language: {value}")
        return value

    @model_validator(mode="after")
    def check_pattern(self) -> "VoiceCommand":
        if self.trigger_type == TriggerType.PATTERN:
            try:
                _compile_trigger(self.trigger, self.flags)
            except re.error as e:
                raise ValueError(f"Invalid pattern trigger {self.trigger!r}: {e}") from e
        return self

    @classmethod
    def from_pattern(cls, id: str, pattern: Pattern[str], action: CommandAction, **kwargs: Any) -> "VoiceCommand":
        """Build a pattern-triggered command from a compiled regex"""
        # re.UNICODE is implied for str patterns and is not worth persisting
        flags = pattern.flags & ~re.UNICODE
        return cls(
            id=id,
            trigger=pattern.pattern,
            trigger_type=TriggerType.PATTERN,
            flags=flags,
            action=action,
            **kwargs,
        )

    @property
    def is_pattern(self) -> bool:
        return self.trigger_type == TriggerType.PATTERN

    def compiled(self) -> Pattern[str]:
        return _compile_trigger(self.trigger, self.flags)


class VoiceCommandResult(BaseModel):
    """Voice command match"""
    command: VoiceCommand
    matched: bool = True
    confidence: float
    parameters: Dict[str, str] = {}
    original_text: str


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

class FrequencyRange(BaseModel):
    min: float = 0.0
    max: float = 0.0


class PitchStats(BaseModel):
    min: float = 0.0
    max: float = 0.0
    average: float = 0.0


class VoiceCharacteristics(BaseModel):
    pitch: PitchStats = Field(default_factory=PitchStats)
    formants: List[float] = []
    spectral_centroid: float = 0.0


class CalibrationData(BaseModel):
    """Aggregated measurements derived from calibration samples"""
    average_volume: float = 0.0
    frequency_range: FrequencyRange = Field(default_factory=FrequencyRange)
    speech_rate: float = 0.0
    pause_duration: float = 0.0
    noise_floor: float = 0.0
    voice_characteristics: VoiceCharacteristics = Field(default_factory=VoiceCharacteristics)


class VoiceProfile(BaseModel):
    """Per-user voice profile"""
    id: str
    name: str
    language: Language
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    calibration_data: CalibrationData = Field(default_factory=CalibrationData)
    recognition_accuracy: float = Field(default=0.0, ge=0.0, le=1.0)
    sample_count: int = 0


class CalibrationSampleInput(BaseModel):
    """Sample as submitted by the caller, before it is stamped"""
    text: str
    expected_text: str
    audio_data: List[float] = []
    recognized_text: str = ""
    confidence: float = 0.0
    duration: float = 0.0  # seconds
    volume: float = 0.0
    frequency: float = 0.0

    @field_validator("audio_data", mode="before")
    @classmethod
    def coerce_audio_data(cls, value: Any) -> Any:
        return _to_float_list(value)


class CalibrationSample(CalibrationSampleInput):
    id: str
    timestamp: datetime = Field(default_factory=utcnow)


class CalibrationSession(BaseModel):
    """Guided calibration session"""
    id: str
    profile_id: str
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.ACTIVE
    progress: float = 0.0
    current_step: int = 0
    total_steps: int
    samples: List[CalibrationSample] = []


class OptimalSettings(BaseModel):
    """Recognition, synthesis and VAD tuning derived from a voice profile"""
    speech_recognition: Dict[str, Any]
    speech_synthesis: Dict[str, float]
    voice_activity: Dict[str, float]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class VoiceProcessingResult(BaseModel):
    """Per-turn aggregate of every enabled sub-feature"""
    original_text: str
    processed_text: str
    detected_language: Language
    language_confidence: float
    voice_command: Optional[VoiceCommandResult] = None
    voice_activity: Optional[VoiceActivityResult] = None
    noise_analysis: Optional[NoiseAnalysis] = None
    recommendations: List[str] = []


class ProcessRequest(BaseModel):
    """HTTP request for one voice turn"""
    text: str
    samples: Optional[List[float]] = None
    sample_rate: Optional[int] = None
    current_language: Optional[Language] = None


class CreateProfileRequest(BaseModel):
    name: str
    language: Language


class StartCalibrationRequest(BaseModel):
    total_steps: Optional[int] = None
