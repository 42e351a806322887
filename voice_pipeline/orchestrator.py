"""Voice pipeline orchestrator - coordinates the frame path and the text path"""

import json
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import numpy as np
import structlog
from pydantic import BaseModel, ValidationError

from .calibration_manager import CalibrationManager, parse_profile_payload
from .capture import CaptureSource, EnvironmentProbe, SoundDeviceCapture
from .command_matcher import CommandDispatcher, CommandHandler, CommandMatcher
from .config import PipelineConfig, merge_config, settings
from .errors import InitializationFailed, InvalidImportData, PipelineNotInitialized
from .language_detector import LanguageDetector
from .models import (
    CalibrationSession,
    CommandAction,
    Language,
    LanguageDetectionResult,
    NoiseAnalysis,
    VoiceActivityResult,
    VoiceCommand,
    VoiceCommandResult,
    VoiceProcessingResult,
    VoiceProfile,
)
from .noise_canceller import NoiseCancellationEngine
from .profile_store import InMemoryProfileStore, ProfileStore
from .spectrum import as_frame
from .vad_processor import VoiceActivityDetector

logger = structlog.get_logger(__name__)

FEATURES = (
    "voice_activity_detection",
    "language_detection",
    "voice_commands",
    "noise_reduction",
    "voice_calibration",
)

# Config section that feeds each component's update_config
CONFIG_SECTIONS = {
    "voice_activity_detection": "vad",
    "noise_reduction": "noise",
    "language_detection": "language",
    "voice_commands": "commands",
    "calibration": "calibration",
}

CLIPPING_LEVEL = 0.99
TREND_WINDOW = 5


class VoicePipeline:
    """Single entry point for the surrounding chat / UI application.

    Owns one instance of every component. Text goes through language
    detection and command matching; an optional frame goes through voice
    activity and noise analysis. The outputs are fused into one
    ``VoiceProcessingResult`` with recommendations, and a bounded history of
    results drives trend recommendations.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        probe: Optional[EnvironmentProbe] = None,
        capture_factory: Callable[[], CaptureSource] = SoundDeviceCapture,
        profile_store: Optional[ProfileStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or PipelineConfig()
        self.profile_store = profile_store if profile_store is not None else InMemoryProfileStore()
        self.probe = probe or EnvironmentProbe(capture_factory, self.profile_store)

        self.vad = VoiceActivityDetector(self.config.voice_activity_detection, capture_factory(), clock)
        self.noise = NoiseCancellationEngine(self.config.noise_reduction, capture_factory(), self.profile_store, clock)
        self.language = LanguageDetector(self.config.language_detection)
        self.commands = CommandMatcher(self.config.voice_commands)
        self.calibration = CalibrationManager(self.config.calibration, self.profile_store)
        self.dispatcher = CommandDispatcher()

        self.support: Dict[str, bool] = {}
        self._initialized: Dict[str, bool] = {feature: False for feature in FEATURES}
        self._ready = False

        self.last_language_detection: Optional[LanguageDetectionResult] = None
        self.processing_history: List[VoiceProcessingResult] = []
        self.recommendations: List[str] = []
        self._history_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, config: Union[PipelineConfig, Mapping[str, Any], None] = None) -> Dict[str, bool]:
        """Probe the host and bring up every enabled, supported feature.

        A feature that fails is logged and left off; only when every enabled
        feature fails is ``InitializationFailed`` raised.
        """
        if self._ready:
            return dict(self._initialized)
        if config:
            self.update_config(config)

        self.support = self.probe.probe()
        enabled = self.config.enabled_features.model_dump()

        attempted = [feature for feature in FEATURES if enabled[feature]]
        for feature in attempted:
            if not self.support.get(feature, False):
                logger.warning("Feature not supported on this host", feature=feature)
                continue
            try:
                self._initialize_feature(feature)
                self._initialized[feature] = True
            except Exception as e:
                logger.error("Feature initialization failed", feature=feature, error=str(e))

        if attempted and not any(self._initialized[feature] for feature in attempted):
            raise InitializationFailed("Could not initialize any voice pipeline feature")

        self._ready = True
        logger.info(
            "Voice pipeline initialized",
            features=[feature for feature, ok in self._initialized.items() if ok],
            audio_capture=self.support.get("audio_capture", False),
        )
        return dict(self._initialized)

    def _initialize_feature(self, feature: str) -> None:
        if feature == "voice_activity_detection":
            self.vad.update_config(self.config.voice_activity_detection)
        elif feature == "language_detection":
            self.language.update_config(self.config.language_detection)
        elif feature == "voice_commands":
            self.commands.update_config(self.config.voice_commands)
        elif feature == "noise_reduction":
            self.noise.update_config(self.config.noise_reduction)
            self.noise.load_profiles()
        elif feature == "voice_calibration":
            self.calibration.update_config(self.config.calibration)

    def shutdown(self) -> None:
        if not self._ready:
            return
        self.vad.stop()
        self.noise.stop()
        self.noise.save_profiles()
        self._ready = False
        self._initialized = {feature: False for feature in FEATURES}
        logger.info("Voice pipeline shut down")

    def is_initialized(self) -> bool:
        return self._ready

    def _feature_ready(self, feature: str) -> bool:
        return self._initialized[feature] and getattr(self.config.enabled_features, feature)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_voice_input(
        self,
        text: str,
        samples=None,
        current_language: Union[Language, str, None] = None,
        sample_rate: Optional[int] = None,
    ) -> VoiceProcessingResult:
        if not self._ready:
            raise PipelineNotInitialized("Voice pipeline used before initialize()")

        current = Language(current_language) if current_language else None
        result = VoiceProcessingResult(
            original_text=text,
            processed_text=text,
            detected_language=current or Language(self.config.language_detection.fallback_language),
            language_confidence=0.5,
        )
        has_text = bool(text and text.strip())

        if has_text and self._feature_ready("language_detection"):
            detection = self.language.detect_language(text)
            result.detected_language = detection.detected_language
            result.language_confidence = detection.confidence
            self.last_language_detection = detection

            if current and self.language.is_language_switch_recommended(
                current, detection.detected_language, detection.confidence
            ):
                result.recommendations.append(
                    f"Language switch recommended: {detection.detected_language.value} "
                    f"({round(detection.confidence * 100)}% confidence)"
                )

        if has_text and self._feature_ready("voice_commands"):
            command = self.commands.process_text(text, result.detected_language)
            if command is not None:
                result.voice_command = command
                result.recommendations.append(f"Voice command detected: {command.command.description}")
                self._dispatch(command)

        if samples is not None:
            frame = as_frame(samples)
            if frame.size > 0:
                self._analyze_frame(frame, result, sample_rate)

        profile = self.get_active_voice_profile()
        if profile is not None:
            result.recommendations.append(f"Using voice profile: {profile.name}")

        result.recommendations.extend(self._generate_recommendations(result))

        with self._history_lock:
            self.processing_history.append(result)
            if len(self.processing_history) > settings.history_limit:
                self.processing_history = self.processing_history[-settings.history_compact_to:]
            self.recommendations = list(result.recommendations)

        return result

    def _analyze_frame(self, frame: np.ndarray, result: VoiceProcessingResult, sample_rate: Optional[int]) -> None:
        if self._feature_ready("voice_activity_detection"):
            result.voice_activity = self.vad.current_state(frame)

        if self._feature_ready("noise_reduction"):
            analysis = self.noise.analyze_noise(frame)
            result.noise_analysis = analysis
            if analysis is not None:
                if analysis.noise_level > 0.1:
                    result.recommendations.append("High noise level detected - consider using noise reduction")
                if self.noise.get_current_profile() is not None and analysis.signal_to_noise_ratio < 10:
                    result.recommendations.append("Poor signal-to-noise ratio - try speaking closer to microphone")

        if np.all(np.isfinite(frame)) and float(np.max(np.abs(frame))) >= CLIPPING_LEVEL:
            result.recommendations.append("Audio is clipping - reduce microphone gain or move further away")

        if self._feature_ready("language_detection"):
            audio_language = self.language.detect_language_from_audio(frame, sample_rate)
            if (
                self.last_language_detection is not None
                and audio_language.detected_language != self.last_language_detection.detected_language
                and audio_language.confidence > 0.6
            ):
                result.recommendations.append(
                    f"Audio analysis suggests different language: {audio_language.detected_language.value}"
                )

    def _generate_recommendations(self, result: VoiceProcessingResult) -> List[str]:
        recommendations = []

        if result.language_confidence < 0.6:
            recommendations.append("Language detection confidence is low - try speaking more clearly")

        if result.voice_activity is not None:
            if result.voice_activity.volume < 0.01:
                recommendations.append("Voice volume is low - try speaking louder")
            elif result.voice_activity.volume > 0.8:
                recommendations.append("Voice volume is high - try speaking softer")

        if result.noise_analysis is not None:
            if result.noise_analysis.noise_level > 0.05:
                recommendations.append("Background noise detected - consider using a quieter environment")
            if not result.noise_analysis.voice_present and result.original_text:
                recommendations.append("Voice not clearly detected in audio - check microphone positioning")

        with self._history_lock:
            recent = self.processing_history[-TREND_WINDOW:]
        if len(recent) >= TREND_WINDOW:
            average = sum(r.language_confidence for r in recent) / len(recent)
            if average < 0.5:
                recommendations.append("Consistent low language detection confidence - consider voice calibration")

        return recommendations

    def _dispatch(self, command: VoiceCommandResult) -> None:
        try:
            self.dispatcher.dispatch(command)
        except Exception as e:
            logger.error("Voice command handler failed", command_id=command.command.id, error=str(e))

    def get_active_voice_profile(self) -> Optional[VoiceProfile]:
        """Best calibrated profile: highest accuracy, most recently updated on ties"""
        if not self._feature_ready("voice_calibration"):
            return None
        calibrated = [profile for profile in self.calibration.get_all_profiles() if profile.sample_count > 0]
        if not calibrated:
            return None
        return max(calibrated, key=lambda profile: (profile.recognition_accuracy, profile.last_updated))

    # ------------------------------------------------------------------
    # Frame-path lifecycle
    # ------------------------------------------------------------------

    def start_voice_activity_detection(self) -> bool:
        if not self.config.enabled_features.voice_activity_detection:
            return False
        self.vad.start(self.config.voice_activity_detection)
        return True

    def stop_voice_activity_detection(self) -> None:
        self.vad.stop()

    def start_noise_reduction(self) -> bool:
        if not self.config.enabled_features.noise_reduction:
            return False
        self.noise.start(self.config.noise_reduction)
        return True

    def stop_noise_reduction(self) -> None:
        self.noise.stop()

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def create_voice_profile(self, name: str, language: Union[Language, str]) -> VoiceProfile:
        return self.calibration.create_profile(name, language)

    def start_calibration(self, profile_id: str, total_steps: Optional[int] = None) -> CalibrationSession:
        return self.calibration.start_calibration(profile_id, total_steps)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_config(self, config: Union[PipelineConfig, Mapping[str, Any]]) -> None:
        """Merge a partial config and push each changed section to its component"""
        updates = config.model_dump(exclude_unset=True) if isinstance(config, BaseModel) else dict(config)
        self.config = merge_config(self.config, updates)

        for section, component in CONFIG_SECTIONS.items():
            if section in updates:
                getattr(self, component).update_config(getattr(self.config, section))

    def get_config(self) -> PipelineConfig:
        return self.config.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_language_detected(self, callback: Callable[[LanguageDetectionResult], None]) -> None:
        self.language.on_language_detected(callback)

    def on_voice_command(self, callback: Callable[[VoiceCommandResult], None]) -> None:
        self.commands.on_command_detected(callback)

    def on_voice_activity(self, callback: Callable[[VoiceActivityResult], None]) -> None:
        self.vad.on_voice_activity(callback)

    def on_noise_analysis(self, callback: Callable[[NoiseAnalysis], None]) -> None:
        self.noise.on_noise_analysis(callback)

    def on_speech_start(self, callback: Callable[[], None]) -> None:
        self.vad.on_speech_start(callback)

    def on_speech_end(self, callback: Callable[[], None]) -> None:
        self.vad.on_speech_end(callback)

    def register_command_handler(self, action: Union[CommandAction, str], handler: CommandHandler) -> None:
        self.dispatcher.register(action, handler)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_recommendations(self) -> List[str]:
        with self._history_lock:
            return list(self.recommendations)

    def get_feature_status(self) -> Dict[str, bool]:
        return {
            "voice_activity_detection": self.vad.is_active(),
            "language_detection": self._feature_ready("language_detection"),
            "voice_commands": self._feature_ready("voice_commands"),
            "noise_reduction": self.noise.is_active(),
            "voice_calibration": self._feature_ready("voice_calibration"),
        }

    def get_stats(self) -> Dict[str, Any]:
        with self._history_lock:
            history = list(self.processing_history)
        average = sum(r.language_confidence for r in history) / len(history) if history else 0.0
        return {
            "processing_history": len(history),
            "average_language_confidence": average,
            "commands_detected": sum(1 for r in history if r.voice_command is not None),
            "recommendations_generated": sum(len(r.recommendations) for r in history),
            "active_features": [feature for feature, active in self.get_feature_status().items() if active],
        }

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    def export_config(self) -> str:
        return json.dumps(
            {
                "config": self.config.model_dump(mode="json"),
                "profiles": [profile.model_dump(mode="json") for profile in self.calibration.get_all_profiles()],
                "commands": [command.model_dump(mode="json") for command in self.commands.get_commands()],
            },
            indent=2,
            ensure_ascii=False,
        )

    def import_config(self, config_data: Union[str, Mapping[str, Any]]) -> None:
        """Restore config, profiles and commands; nothing is applied if the payload is malformed"""
        try:
            data = json.loads(config_data) if isinstance(config_data, str) else dict(config_data)
            if not isinstance(data, dict):
                raise InvalidImportData("Configuration payload must be an object")
            config_updates = data.get("config") or {}
            merge_config(self.config, config_updates)
            commands = [VoiceCommand.model_validate(item) for item in data.get("commands") or []]
            profiles = [parse_profile_payload(profile) for profile in data.get("profiles") or []]
        except (ValueError, TypeError, ValidationError) as e:
            raise InvalidImportData(f"Failed to import configuration: {e}") from e

        if config_updates:
            self.update_config(config_updates)
        for profile in profiles:
            self.calibration.import_profile(profile.model_dump())
        for command in commands:
            self.commands.add_command(command)
        logger.info("Configuration imported", profiles=len(profiles), commands=len(commands))
