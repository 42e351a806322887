"""Noise cancellation: spectral subtraction, noise gate and adaptive noise profiles"""

import json
import math
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import numpy as np
import structlog
from pydantic import ValidationError

from .capture import CaptureSource
from .config import NoiseCancellationConfig, merge_config
from .errors import DeviceUnavailable, ProfileNotFound
from .models import NoiseAnalysis, NoiseEnvironment, NoiseProfile
from .profile_store import ProfileStore
from .spectrum import (
    as_frame,
    bin_frequencies,
    complex_spectrum,
    inverse_spectrum,
    is_valid_frame,
    rms,
    spectrum,
)

logger = structlog.get_logger(__name__)

LEARNING_RATE = 0.1
SPECTRAL_FLOOR = 0.01
MIN_ADAPTIVE_THRESHOLD = 0.005
SMOOTHING_ALPHA = 0.1
DOMINANT_PEAK_RATIO = 0.7
VOICE_BAND = (80.0, 3400.0)
VOICE_ENERGY_RATIO = 0.3

DEFAULT_ENVIRONMENTS = [
    ("Quiet Indoor", NoiseEnvironment.QUIET),
    ("Moderate Indoor", NoiseEnvironment.MODERATE),
    ("Noisy Indoor", NoiseEnvironment.NOISY),
    ("Outdoor Environment", NoiseEnvironment.OUTDOOR),
]


def _match_bins(values: np.ndarray, n_bins: int) -> np.ndarray:
    """Resample a magnitude vector onto ``n_bins`` bins"""
    if values.size == n_bins:
        return values
    if values.size == 0 or n_bins == 0:
        return np.zeros(n_bins)
    return np.interp(np.linspace(0.0, 1.0, n_bins), np.linspace(0.0, 1.0, values.size), values)


class NoiseProfileRegistry:
    """Owner of all noise profiles.

    Readers get copies; every write goes through ``add``/``update``/``delete``
    under one lock so no caller ever sees a half-updated profile.
    """

    def __init__(self):
        self._profiles: Dict[str, NoiseProfile] = {}
        self._lock = threading.RLock()

    def add(self, profile: NoiseProfile) -> NoiseProfile:
        with self._lock:
            self._profiles[profile.id] = profile
            return profile.model_copy(deep=True)

    def get(self, profile_id: str) -> Optional[NoiseProfile]:
        with self._lock:
            profile = self._profiles.get(profile_id)
            return profile.model_copy(deep=True) if profile else None

    def update(self, profile_id: str, mutate: Callable[[NoiseProfile], NoiseProfile]) -> Optional[NoiseProfile]:
        with self._lock:
            profile = self._profiles.get(profile_id)
            if profile is None:
                return None
            updated = mutate(profile.model_copy(deep=True))
            self._profiles[profile_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, profile_id: str) -> bool:
        with self._lock:
            return self._profiles.pop(profile_id, None) is not None

    def all(self) -> List[NoiseProfile]:
        with self._lock:
            return [profile.model_copy(deep=True) for profile in self._profiles.values()]

    def replace_all(self, profiles: List[NoiseProfile]) -> None:
        with self._lock:
            self._profiles = {profile.id: profile for profile in profiles}

    def __contains__(self, profile_id: str) -> bool:
        with self._lock:
            return profile_id in self._profiles

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)


class NoiseCancellationEngine:
    """Noise reduction for voice input"""

    PROFILES_KEY = "noise_profiles"

    def __init__(
        self,
        config: Optional[NoiseCancellationConfig] = None,
        capture: Optional[CaptureSource] = None,
        store: Optional[ProfileStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or NoiseCancellationConfig()
        self.capture = capture
        self.store = store
        self.profiles = NoiseProfileRegistry()
        self._clock = clock or (lambda: time.monotonic() * 1000.0)
        self._current_profile_id: Optional[str] = None
        self._running = False
        self._last_update_time = 0.0
        self._analysis_callbacks: List[Callable[[NoiseAnalysis], None]] = []
        self._output_callbacks: List[Callable[[np.ndarray], None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, config: Union[NoiseCancellationConfig, Mapping[str, Any], None] = None) -> None:
        if self._running:
            return
        if config:
            self.update_config(config)
        if not self.config.enabled:
            logger.info("Noise cancellation disabled, not starting capture")
            return
        if self.capture is None:
            raise DeviceUnavailable("No capture source configured for noise cancellation")

        self.capture.open(self.config.sample_rate, self.config.buffer_size, self._on_capture_block)
        self._running = True
        logger.info(
            "Noise cancellation started",
            aggressiveness=self.config.aggressiveness,
            adaptive=self.config.adaptive_mode,
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self.capture is not None:
            self.capture.close()
        logger.info("Noise cancellation stopped")

    def is_active(self) -> bool:
        return self._running and self.config.enabled

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_audio_data(self, samples) -> np.ndarray:
        """Return a cleaned copy of the frame.

        Uses spectral subtraction against the current profile, or a noise gate
        with smoothing when no profile is selected.
        """
        frame = as_frame(samples)
        if not self.config.enabled or frame.size == 0:
            return frame.copy()
        if not is_valid_frame(frame):
            logger.warning("Skipping malformed audio frame", length=int(frame.size))
            return frame.copy()

        profile = self.get_current_profile()
        if profile is not None:
            return self._spectral_subtraction(frame, np.asarray(profile.frequency_profile, dtype=np.float64))
        return self._noise_gate(frame)

    def analyze_noise(self, samples) -> Optional[NoiseAnalysis]:
        frame = as_frame(samples)
        if not is_valid_frame(frame):
            logger.warning("Skipping noise analysis for malformed frame", length=int(frame.size))
            return None

        analysis = self._perform_analysis(frame)
        for callback in list(self._analysis_callbacks):
            try:
                callback(analysis)
            except Exception as e:
                logger.error("Noise analysis subscriber failed", error=str(e))
        return analysis

    def _spectral_subtraction(self, frame: np.ndarray, noise_profile: np.ndarray) -> np.ndarray:
        over_subtraction = 2.0 * self.config.aggressiveness
        fft_size = self.config.fft_size
        output = np.empty_like(frame)

        for start in range(0, frame.size, fft_size):
            block = frame[start:start + fft_size]
            coefficients, n = complex_spectrum(block, fft_size)
            if coefficients.size == 0:
                output[start:start + block.size] = block * math.sqrt(SPECTRAL_FLOOR)
                continue

            magnitudes = np.abs(coefficients) / n
            noise = _match_bins(noise_profile, magnitudes.size)

            signal_power = magnitudes ** 2
            noise_power = noise ** 2
            clean_power = np.maximum(signal_power - over_subtraction * noise_power, SPECTRAL_FLOOR * signal_power)

            gain = np.zeros_like(magnitudes)
            nonzero = magnitudes > 0
            gain[nonzero] = np.sqrt(clean_power[nonzero]) / magnitudes[nonzero]
            output[start:start + n] = inverse_spectrum(coefficients * gain, n)

        return output

    def _noise_gate(self, frame: np.ndarray) -> np.ndarray:
        aggressiveness = self.config.aggressiveness
        threshold = 0.01 * (1.0 - aggressiveness)
        gate_gain = 0.1 if self.config.preserve_voice_quality else 0.0
        compression = 1.0 - aggressiveness * 0.3

        gated = np.where(np.abs(frame) < threshold, frame * gate_gain, frame * compression)

        # Single-pole low-pass: y[i] = a*x[i] + (1-a)*y[i-1]
        smoothed = np.empty_like(gated)
        smoothed[0] = gated[0]
        for i in range(1, gated.size):
            smoothed[i] = SMOOTHING_ALPHA * gated[i] + (1.0 - SMOOTHING_ALPHA) * smoothed[i - 1]
        return smoothed

    def _perform_analysis(self, frame: np.ndarray) -> NoiseAnalysis:
        noise_level = rms(frame)
        magnitudes = spectrum(frame, self.config.fft_size)
        frequencies = bin_frequencies(magnitudes.size, self.config.sample_rate)

        dominant: List[float] = []
        if magnitudes.size:
            threshold = magnitudes.max() * DOMINANT_PEAK_RATIO
            band = self.config.frequency_range
            in_band = (frequencies >= band.min) & (frequencies <= band.max)
            dominant = [float(f) for f in frequencies[(magnitudes > threshold) & in_band]]

        energy = magnitudes ** 2
        total_energy = float(energy.sum())
        voice_mask = (frequencies >= VOICE_BAND[0]) & (frequencies <= VOICE_BAND[1])
        voice_energy = float(energy[voice_mask].sum())
        voice_present = total_energy > 0 and voice_energy / total_energy > VOICE_ENERGY_RATIO

        profile = self.get_current_profile()
        snr = 0.0
        if profile is not None and noise_level > 0:
            snr = max(0.0, 20.0 * math.log10(noise_level / max(profile.noise_floor, 0.001)))

        confidence = min(1.0, max(0.0, (noise_level - 0.001) / 0.1))

        return NoiseAnalysis(
            noise_level=noise_level,
            signal_to_noise_ratio=snr,
            dominant_noise_frequencies=dominant,
            voice_present=voice_present,
            confidence=confidence,
            timestamp=self._clock(),
        )

    def _on_capture_block(self, block: np.ndarray) -> None:
        if not self._running:
            return
        cleaned = self.process_audio_data(block)
        for callback in list(self._output_callbacks):
            try:
                callback(cleaned)
            except Exception as e:
                logger.error("Processed audio subscriber failed", error=str(e))

        now = self._clock()
        if now - self._last_update_time >= self.config.update_interval:
            self._last_update_time = now
            self.analyze_noise(block)
            if self.config.adaptive_mode and self._current_profile_id is not None:
                self.update_noise_profile(self._current_profile_id, block)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def create_noise_profile(self, name: str, environment: Union[NoiseEnvironment, str], seed=None) -> NoiseProfile:
        """Register a new profile, optionally seeded from a recording of the noise"""
        n_bins = self.config.fft_size // 2
        profile = NoiseProfile(
            id=uuid.uuid4().hex,
            name=name,
            environment=NoiseEnvironment(environment),
            frequency_profile=np.zeros(n_bins),
        )

        if seed is not None:
            frame = as_frame(seed)
            if is_valid_frame(frame):
                profile.noise_floor = rms(frame)
                profile.frequency_profile = _match_bins(spectrum(frame, self.config.fft_size), n_bins).tolist()
                profile.adaptive_threshold = max(MIN_ADAPTIVE_THRESHOLD, profile.noise_floor * 1.5)
            else:
                logger.warning("Ignoring malformed seed frame for noise profile", name=name)

        created = self.profiles.add(profile)
        logger.info("Noise profile created", profile_id=created.id, environment=created.environment.value)
        return created

    def update_noise_profile(self, profile_id: str, samples) -> Optional[NoiseProfile]:
        """Nudge a profile towards the noise observed in ``samples`` (EMA)"""
        frame = as_frame(samples)
        if not is_valid_frame(frame):
            logger.warning("Skipping profile update for malformed frame", profile_id=profile_id)
            return None
        if profile_id not in self.profiles:
            logger.warning("Noise profile update for unknown profile", profile_id=profile_id)
            return None

        analysis = self._perform_analysis(frame)
        observed = spectrum(frame, self.config.fft_size)

        def blend(profile: NoiseProfile) -> NoiseProfile:
            profile.noise_floor = profile.noise_floor * (1 - LEARNING_RATE) + analysis.noise_level * LEARNING_RATE
            current = np.asarray(profile.frequency_profile, dtype=np.float64)
            target = _match_bins(observed, current.size)
            profile.frequency_profile = (current * (1 - LEARNING_RATE) + target * LEARNING_RATE).tolist()
            profile.adaptive_threshold = max(MIN_ADAPTIVE_THRESHOLD, profile.noise_floor * 1.5)
            return profile

        return self.profiles.update(profile_id, blend)

    def set_noise_profile(self, profile_id: str) -> bool:
        if profile_id not in self.profiles:
            logger.warning("Cannot select unknown noise profile", profile_id=profile_id)
            return False
        self._current_profile_id = profile_id
        return True

    def clear_noise_profile(self) -> None:
        self._current_profile_id = None

    def get_current_profile(self) -> Optional[NoiseProfile]:
        if self._current_profile_id is None:
            return None
        return self.profiles.get(self._current_profile_id)

    def get_profile(self, profile_id: str) -> NoiseProfile:
        profile = self.profiles.get(profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        return profile

    def get_profiles(self) -> List[NoiseProfile]:
        return self.profiles.all()

    def delete_noise_profile(self, profile_id: str) -> bool:
        if self._current_profile_id == profile_id:
            self._current_profile_id = None
        return self.profiles.delete(profile_id)

    def create_default_profiles(self) -> List[NoiseProfile]:
        return [self.create_noise_profile(name, environment) for name, environment in DEFAULT_ENVIRONMENTS]

    def save_profiles(self) -> bool:
        if self.store is None:
            return False
        payload = json.dumps([profile.model_dump(mode="json") for profile in self.profiles.all()])
        try:
            self.store.save(self.PROFILES_KEY, payload)
            return True
        except Exception as e:
            logger.warning("Failed to save noise profiles", error=str(e))
            return False

    def load_profiles(self) -> int:
        if self.store is None:
            return 0
        try:
            raw = self.store.load(self.PROFILES_KEY)
        except Exception as e:
            logger.warning("Failed to load noise profiles", error=str(e))
            return 0
        if not raw:
            return 0
        try:
            profiles = [NoiseProfile.model_validate(item) for item in json.loads(raw)]
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning("Stored noise profiles are malformed", error=str(e))
            return 0
        self.profiles.replace_all(profiles)
        return len(profiles)

    # ------------------------------------------------------------------
    # Config, subscriptions, stats
    # ------------------------------------------------------------------

    def get_config(self) -> NoiseCancellationConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, config: Union[NoiseCancellationConfig, Mapping[str, Any]]) -> None:
        self.config = merge_config(self.config, config)

    def on_noise_analysis(self, callback: Callable[[NoiseAnalysis], None]) -> None:
        self._analysis_callbacks.append(callback)

    def on_processed_audio(self, callback: Callable[[np.ndarray], None]) -> None:
        self._output_callbacks.append(callback)

    def get_stats(self) -> Dict[str, Any]:
        profile = self.get_current_profile()
        return {
            "is_active": self.is_active(),
            "current_noise_level": profile.noise_floor if profile else 0.0,
            "profiles_count": len(self.profiles),
            "processing_latency_ms": self.config.buffer_size / self.config.sample_rate * 1000.0,
        }
