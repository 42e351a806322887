"""Voice profile calibration sessions and profile management"""

import json
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import ValidationError

from .config import CalibrationConfig, merge_config
from .errors import (
    InvalidImportData,
    NoCalibrationSamples,
    ProfileNotFound,
    SessionFull,
    SessionNotActive,
)
from .models import (
    CalibrationData,
    CalibrationSample,
    CalibrationSampleInput,
    CalibrationSession,
    FrequencyRange,
    Language,
    OptimalSettings,
    PitchStats,
    SessionStatus,
    VoiceCharacteristics,
    VoiceProfile,
    utcnow,
)
from .profile_store import ProfileStore
from .text_utils import text_similarity

logger = structlog.get_logger(__name__)

PITCH_MIN_HZ = 80.0
PITCH_MAX_HZ = 500.0
FORMANT_RATIOS = (0.8, 1.2, 1.8)

CALIBRATION_PHRASES = {
    Language.BANGLA: [
        "আমি একজন কৃষক",
        "আমার জমিতে ধান চাষ করি",
        "আবহাওয়া কেমন আছে",
        "ফসলের যত্ন নিতে হবে",
        "বীজ বপনের সময় হয়েছে",
        "সার দিতে হবে জমিতে",
        "পানি সেচ দেওয়া দরকার",
        "কীটপতঙ্গ দমন করতে হবে",
        "ফসল কাটার সময় এসেছে",
        "বাজারে ভাল দাম পাওয়া যাবে",
    ],
    Language.ENGLISH: [
        "I am a farmer",
        "I grow rice in my field",
        "How is the weather today",
        "Need to take care of crops",
        "Time to plant the seeds",
        "Apply fertilizer to the soil",
        "Irrigation is necessary now",
        "Control pests and diseases",
        "Harvest time has arrived",
        "Good price in the market",
    ],
}

RECOGNITION_LOCALES = {
    Language.BANGLA: "bn-BD",
    Language.ENGLISH: "en-US",
}


def analyze_samples(samples: List[CalibrationSample], accuracy_threshold: float):
    """Derive calibration data and recognition accuracy from a non-empty sample list"""
    count = len(samples)
    frequencies = [sample.frequency for sample in samples]
    volumes = [sample.volume for sample in samples]

    total_words = sum(len(sample.expected_text.split()) for sample in samples)
    total_duration = sum(sample.duration for sample in samples)
    speech_rate = total_words / total_duration * 60 if total_duration > 0 else 0.0

    pitches = [f for f in frequencies if PITCH_MIN_HZ < f < PITCH_MAX_HZ]
    pitch = PitchStats()
    if pitches:
        pitch = PitchStats(min=min(pitches), max=max(pitches), average=sum(pitches) / len(pitches))

    mean_frequency = sum(frequencies) / count
    total_volume = sum(volumes)
    centroid = sum(f * v for f, v in zip(frequencies, volumes)) / total_volume if total_volume > 0 else 0.0

    correct = sum(
        1 for sample in samples
        if text_similarity(sample.expected_text, sample.recognized_text) > accuracy_threshold
    )

    data = CalibrationData(
        average_volume=total_volume / count,
        frequency_range=FrequencyRange(min=min(frequencies), max=max(frequencies)),
        speech_rate=speech_rate,
        pause_duration=total_duration / count,
        noise_floor=min(volumes),
        voice_characteristics=VoiceCharacteristics(
            pitch=pitch,
            formants=[mean_frequency * ratio for ratio in FORMANT_RATIOS],
            spectral_centroid=centroid,
        ),
    )
    return data, correct / count


def parse_profile_payload(profile_data: Union[str, Mapping[str, Any]]) -> VoiceProfile:
    """Validate an exported profile (JSON text or mapping) without registering it"""
    try:
        payload = json.loads(profile_data) if isinstance(profile_data, str) else dict(profile_data)
        if not isinstance(payload, dict) or not all(payload.get(key) for key in ("id", "name", "language")):
            raise InvalidImportData("Profile payload needs id, name and language")
        return VoiceProfile.model_validate(payload)
    except (ValueError, TypeError, ValidationError) as e:
        raise InvalidImportData(f"Failed to import profile: {e}") from e


class CalibrationManager:
    """Owns voice profiles and the calibration sessions that train them.

    Profiles and sessions are held in maps guarded by a manager lock; each
    session additionally has its own lock so samples for one session are
    appended one at a time while other sessions proceed independently.
    """

    PROFILES_KEY = "voice_profiles"

    def __init__(self, config: Optional[CalibrationConfig] = None, store: Optional[ProfileStore] = None):
        self.config = config or CalibrationConfig()
        self.store = store
        self._profiles: Dict[str, VoiceProfile] = {}
        self._sessions: Dict[str, CalibrationSession] = {}
        self._session_locks: Dict[str, threading.Lock] = {}
        self._lock = threading.RLock()
        self.load_profiles()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def create_profile(self, name: str, language: Union[Language, str]) -> VoiceProfile:
        profile = VoiceProfile(id=uuid.uuid4().hex, name=name, language=Language(language))
        with self._lock:
            self._profiles[profile.id] = profile
        logger.info("Voice profile created", profile_id=profile.id, language=profile.language.value)
        self._auto_save()
        return profile.model_copy(deep=True)

    def get_profile(self, profile_id: str) -> Optional[VoiceProfile]:
        with self._lock:
            profile = self._profiles.get(profile_id)
            return profile.model_copy(deep=True) if profile else None

    def get_all_profiles(self) -> List[VoiceProfile]:
        with self._lock:
            return [profile.model_copy(deep=True) for profile in self._profiles.values()]

    def delete_profile(self, profile_id: str) -> bool:
        with self._lock:
            deleted = self._profiles.pop(profile_id, None) is not None
        if deleted:
            self._auto_save()
        return deleted

    def update_profile(self, profile_id: str, updates: Mapping[str, Any]) -> bool:
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is None:
                return False
            merged = {**profile.model_dump(), **dict(updates), "id": profile_id, "last_updated": utcnow()}
            self._profiles[profile_id] = VoiceProfile.model_validate(merged)
        self._auto_save()
        return True

    def _require_profile(self, profile_id: str) -> VoiceProfile:
        profile = self._profiles.get(profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        return profile

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_calibration(self, profile_id: str, total_steps: Optional[int] = None) -> CalibrationSession:
        """Open a session for an existing profile.

        ``total_steps`` defaults to ``min_samples`` and is capped at
        ``max_samples``.
        """
        steps = self.config.min_samples if total_steps is None else max(1, min(total_steps, self.config.max_samples))
        with self._lock:
            self._require_profile(profile_id)
            session = CalibrationSession(id=uuid.uuid4().hex, profile_id=profile_id, total_steps=steps)
            self._sessions[session.id] = session
            self._session_locks[session.id] = threading.Lock()
        logger.info("Calibration started", session_id=session.id, profile_id=profile_id, total_steps=steps)
        return session.model_copy(deep=True)

    def add_calibration_sample(
        self, session_id: str, sample: Union[CalibrationSampleInput, Mapping[str, Any]]
    ) -> CalibrationSession:
        if not isinstance(sample, CalibrationSampleInput):
            sample = CalibrationSampleInput.model_validate(sample)

        with self._session_lock(session_id):
            session = self._active_session(session_id)
            if len(session.samples) >= session.total_steps:
                raise SessionFull(session_id, session.total_steps)

            session.samples.append(CalibrationSample(id=uuid.uuid4().hex, **sample.model_dump()))
            session.current_step = len(session.samples)
            session.progress = session.current_step / session.total_steps * 100
            return session.model_copy(deep=True)

    def complete_calibration(self, session_id: str) -> VoiceProfile:
        """Analyse the session's samples into its profile and close the session"""
        with self._session_lock(session_id):
            session = self._active_session(session_id)
            if not session.samples:
                raise NoCalibrationSamples(session_id)

            with self._lock:
                profile = self._require_profile(session.profile_id)
                calibration_data, accuracy = analyze_samples(session.samples, self.config.accuracy_threshold)
                profile = profile.model_copy(update={
                    "calibration_data": calibration_data,
                    "recognition_accuracy": accuracy,
                    "sample_count": len(session.samples),
                    "last_updated": utcnow(),
                })
                self._profiles[profile.id] = profile

            session.status = SessionStatus.COMPLETED
            session.end_time = utcnow()
            session.progress = 100.0

        self._prune_sessions()
        logger.info(
            "Calibration completed",
            session_id=session_id,
            profile_id=profile.id,
            samples=profile.sample_count,
            accuracy=accuracy,
        )
        self._auto_save()
        return profile.model_copy(deep=True)

    def cancel_calibration(self, session_id: str) -> bool:
        with self._lock:
            lock = self._session_locks.get(session_id)
        if lock is None:
            return False
        with lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != SessionStatus.ACTIVE:
                return False
            session.status = SessionStatus.CANCELLED
            session.end_time = utcnow()
        self._prune_sessions()
        logger.info("Calibration cancelled", session_id=session_id)
        return True

    def get_calibration_session(self, session_id: str) -> Optional[CalibrationSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._lock:
            lock = self._session_locks.get(session_id)
        if lock is None:
            raise SessionNotActive(session_id)
        return lock

    def _prune_sessions(self) -> None:
        """Forget the oldest finished sessions beyond ``max_finished_sessions``"""
        with self._lock:
            finished = [sid for sid, session in self._sessions.items() if session.status != SessionStatus.ACTIVE]
            for sid in finished[: max(0, len(finished) - self.config.max_finished_sessions)]:
                del self._sessions[sid]
                del self._session_locks[sid]

    def _active_session(self, session_id: str) -> CalibrationSession:
        session = self._sessions.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            raise SessionNotActive(session_id)
        return session

    # ------------------------------------------------------------------
    # Derived settings
    # ------------------------------------------------------------------

    def get_optimal_settings(self, profile_id: str) -> Optional[OptimalSettings]:
        profile = self.get_profile(profile_id)
        if profile is None or profile.sample_count == 0:
            return None

        data = profile.calibration_data
        # pause_duration is in seconds, VAD durations are in milliseconds
        pause_ms = data.pause_duration * 1000.0
        return OptimalSettings(
            speech_recognition={
                "continuous": True,
                "interim_results": True,
                "max_alternatives": 3,
                "lang": RECOGNITION_LOCALES[profile.language],
            },
            speech_synthesis={
                "rate": max(0.5, min(2.0, data.speech_rate)),
                "pitch": data.voice_characteristics.pitch.average / 100,
                "volume": max(0.1, min(1.0, data.average_volume * 2)),
            },
            voice_activity={
                "threshold": max(data.noise_floor * 2, 0.01),
                "min_speech_duration": max(200.0, pause_ms * 0.5),
                "max_silence_duration": max(1000.0, pause_ms * 2),
            },
        )

    def get_calibration_phrases(self, language: Union[Language, str], count: Optional[int] = None) -> List[str]:
        phrases = CALIBRATION_PHRASES[Language(language)]
        if not count or count >= len(phrases):
            return list(phrases)
        return phrases[:count]

    def get_recommended_calibration_settings(self, language: Union[Language, str]) -> Dict[str, Any]:
        return {
            "sample_count": self.config.min_samples,
            "phrases": self.get_calibration_phrases(language, self.config.min_samples),
            "duration": self.config.sample_duration,
        }

    def get_calibration_stats(self) -> Dict[str, Any]:
        profiles = self.get_all_profiles()
        by_language = {language.value: 0 for language in Language}
        for profile in profiles:
            by_language[profile.language.value] += 1
        return {
            "total_profiles": len(profiles),
            "profiles_by_language": by_language,
            "average_accuracy": sum(p.recognition_accuracy for p in profiles) / len(profiles) if profiles else 0.0,
            "total_samples": sum(p.sample_count for p in profiles),
        }

    # ------------------------------------------------------------------
    # Import / export and persistence
    # ------------------------------------------------------------------

    def export_profile(self, profile_id: str) -> str:
        profile = self.get_profile(profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        return profile.model_dump_json(indent=2)

    def import_profile(self, profile_data: Union[str, Mapping[str, Any]]) -> VoiceProfile:
        """Import an exported profile under a fresh id"""
        profile = parse_profile_payload(profile_data).model_copy(update={"id": uuid.uuid4().hex, "last_updated": utcnow()})
        with self._lock:
            self._profiles[profile.id] = profile
        logger.info("Voice profile imported", profile_id=profile.id)
        self._auto_save()
        return profile.model_copy(deep=True)

    def save_profiles(self) -> bool:
        if self.store is None:
            return False
        payload = json.dumps([profile.model_dump(mode="json") for profile in self.get_all_profiles()])
        try:
            self.store.save(self.PROFILES_KEY, payload)
            return True
        except Exception as e:
            logger.warning("Failed to save voice profiles", error=str(e))
            return False

    def load_profiles(self) -> int:
        if self.store is None:
            return 0
        try:
            raw = self.store.load(self.PROFILES_KEY)
        except Exception as e:
            logger.warning("Failed to load voice profiles", error=str(e))
            return 0
        if not raw:
            return 0
        try:
            profiles = [VoiceProfile.model_validate(item) for item in json.loads(raw)]
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning("Stored voice profiles are malformed", error=str(e))
            return 0
        with self._lock:
            self._profiles = {profile.id: profile for profile in profiles}
        return len(profiles)

    def _auto_save(self) -> None:
        if self.config.auto_save:
            self.save_profiles()

    def get_config(self) -> CalibrationConfig:
        return self.config.model_copy()

    def update_config(self, config: Union[CalibrationConfig, Mapping[str, Any]]) -> None:
        self.config = merge_config(self.config, config)
