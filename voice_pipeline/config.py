"""Configuration settings for the voice processing pipeline"""

from typing import Any, Dict, Mapping, TypeVar, Union

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Server
    port: int = 8010
    debug: bool = False

    # Profile persistence
    redis_url: str = "redis://redis:6379"
    profile_store_backend: str = "memory"  # memory | redis
    profile_key_prefix: str = "voice-pipeline:"

    # Audio capture
    sample_rate: int = 16000
    capture_sample_rate: int = 44100
    capture_block_size: int = 4096
    fft_size: int = 2048

    # Voice activity detection
    vad_threshold: float = 0.01
    vad_min_speech_duration_ms: int = 300
    vad_max_silence_duration_ms: int = 2000

    # Noise cancellation
    noise_aggressiveness: float = 0.5
    noise_adaptive_mode: bool = True
    noise_preserve_voice_quality: bool = True
    noise_min_frequency: float = 80.0
    noise_max_frequency: float = 8000.0
    noise_update_interval_ms: int = 100

    # Language detection
    language_confidence_threshold: float = 0.7
    language_auto_switch: bool = True
    fallback_language: str = "bn"
    language_analysis_window: int = 50
    enable_statistical_detector: bool = False

    # Voice commands
    command_confidence_threshold: float = 0.7
    command_case_sensitive: bool = False
    command_fuzzy_matching: bool = True
    command_max_edit_distance: int = 2

    # Calibration
    calibration_min_samples: int = 5
    calibration_max_samples: int = 20
    calibration_sample_duration_s: float = 3.0
    calibration_accuracy_threshold: float = 0.8
    calibration_auto_save: bool = True
    calibration_max_finished_sessions: int = 50

    # Orchestrator
    history_limit: int = 100
    history_compact_to: int = 50

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
    )


settings = Settings()


class VADConfig(BaseModel):
    """Voice activity detection tuning"""
    threshold: float = Field(default_factory=lambda: settings.vad_threshold, ge=0.0)
    min_speech_duration: int = Field(default_factory=lambda: settings.vad_min_speech_duration_ms, ge=0)
    max_silence_duration: int = Field(default_factory=lambda: settings.vad_max_silence_duration_ms, ge=0)
    sample_rate: int = Field(default_factory=lambda: settings.sample_rate, gt=0)
    fft_size: int = Field(default_factory=lambda: settings.fft_size, gt=1)


class FrequencyBand(BaseModel):
    min: float
    max: float


class NoiseCancellationConfig(BaseModel):
    """Noise reduction tuning"""
    enabled: bool = True
    aggressiveness: float = Field(default_factory=lambda: settings.noise_aggressiveness, ge=0.0, le=1.0)
    adaptive_mode: bool = Field(default_factory=lambda: settings.noise_adaptive_mode)
    preserve_voice_quality: bool = Field(default_factory=lambda: settings.noise_preserve_voice_quality)
    frequency_range: FrequencyBand = Field(
        default_factory=lambda: FrequencyBand(min=settings.noise_min_frequency, max=settings.noise_max_frequency)
    )
    update_interval: int = Field(default_factory=lambda: settings.noise_update_interval_ms, ge=0)
    sample_rate: int = Field(default_factory=lambda: settings.capture_sample_rate, gt=0)
    buffer_size: int = Field(default_factory=lambda: settings.capture_block_size, gt=0)
    fft_size: int = Field(default_factory=lambda: settings.fft_size, gt=1)


class LanguageDetectionConfig(BaseModel):
    """Language detection tuning"""
    confidence_threshold: float = Field(default_factory=lambda: settings.language_confidence_threshold, ge=0.0, le=1.0)
    enable_auto_switch: bool = Field(default_factory=lambda: settings.language_auto_switch)
    fallback_language: str = Field(default_factory=lambda: settings.fallback_language)
    analysis_window_size: int = Field(default_factory=lambda: settings.language_analysis_window, gt=0)
    enable_statistical_detector: bool = Field(default_factory=lambda: settings.enable_statistical_detector)
    fft_size: int = Field(default_factory=lambda: settings.fft_size, gt=1)


class VoiceCommandConfig(BaseModel):
    """Voice command matching tuning"""
    enabled: bool = True
    confidence_threshold: float = Field(default_factory=lambda: settings.command_confidence_threshold, ge=0.0, le=1.0)
    case_sensitive: bool = Field(default_factory=lambda: settings.command_case_sensitive)
    fuzzy_matching: bool = Field(default_factory=lambda: settings.command_fuzzy_matching)
    max_edit_distance: int = Field(default_factory=lambda: settings.command_max_edit_distance, ge=0)


class CalibrationConfig(BaseModel):
    """Calibration session tuning"""
    min_samples: int = Field(default_factory=lambda: settings.calibration_min_samples, gt=0)
    max_samples: int = Field(default_factory=lambda: settings.calibration_max_samples, gt=0)
    sample_duration: float = Field(default_factory=lambda: settings.calibration_sample_duration_s, gt=0)
    volume_threshold: float = 0.01
    noise_threshold: float = 0.005
    accuracy_threshold: float = Field(default_factory=lambda: settings.calibration_accuracy_threshold, ge=0.0, le=1.0)
    auto_save: bool = Field(default_factory=lambda: settings.calibration_auto_save)
    max_finished_sessions: int = Field(default_factory=lambda: settings.calibration_max_finished_sessions, ge=0)


class EnabledFeatures(BaseModel):
    voice_activity_detection: bool = True
    language_detection: bool = True
    voice_commands: bool = True
    noise_reduction: bool = True
    voice_calibration: bool = True


class PipelineConfig(BaseModel):
    """Orchestrator configuration, one section per sub-feature"""
    voice_activity_detection: VADConfig = Field(default_factory=VADConfig)
    language_detection: LanguageDetectionConfig = Field(default_factory=LanguageDetectionConfig)
    voice_commands: VoiceCommandConfig = Field(default_factory=VoiceCommandConfig)
    noise_reduction: NoiseCancellationConfig = Field(default_factory=NoiseCancellationConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    enabled_features: EnabledFeatures = Field(default_factory=EnabledFeatures)


ConfigT = TypeVar("ConfigT", bound=BaseModel)


def merge_config(current: ConfigT, updates: Union[BaseModel, Mapping[str, Any], None]) -> ConfigT:
    """Merge a partial update into a config model and re-validate it.

    Nested sections are merged key by key so a partial section does not reset
    its siblings to their defaults.
    """
    if updates is None:
        return current
    if isinstance(updates, BaseModel):
        updates = updates.model_dump(exclude_unset=True)
    merged = _deep_merge(current.model_dump(), dict(updates))
    return type(current).model_validate(merged)


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in updates.items():
        if isinstance(value, BaseModel):
            value = value.model_dump(exclude_unset=True)
        if isinstance(value, Mapping) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], dict(value))
        else:
            result[key] = value
    return result
