"""Voice Activity Detection processor"""

import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import structlog

from .capture import CaptureSource
from .config import VADConfig, merge_config
from .errors import DeviceUnavailable
from .models import VoiceActivityResult
from .spectrum import as_frame, dominant_frequency, is_valid_frame, rms, spectrum

logger = structlog.get_logger(__name__)

HUMAN_VOICE_MIN_HZ = 80.0
HUMAN_VOICE_MAX_HZ = 8000.0


class VoiceActivityDetector:
    """Energy-threshold voice activity detection with debounced speech edges.

    Idle becomes Active once energy stays above threshold for at least
    ``min_speech_duration`` ms, and Active returns to Idle once energy stays at
    or below threshold for at least ``max_silence_duration`` ms. Shorter dips
    and bursts do not change state.
    """

    def __init__(
        self,
        config: Optional[VADConfig] = None,
        capture: Optional[CaptureSource] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or VADConfig()
        self.capture = capture
        self._clock = clock or (lambda: time.monotonic() * 1000.0)
        self._lock = threading.Lock()
        self._running = False

        self.current_volume = 0.0
        self.current_frequency = 0.0
        self._speech_start_time: Optional[float] = None
        self._last_voice_time: Optional[float] = None
        self._speech_active = False
        self._latest_result: Optional[VoiceActivityResult] = None

        self._activity_callbacks: List[Callable[[VoiceActivityResult], None]] = []
        self._speech_start_callbacks: List[Callable[[], None]] = []
        self._speech_end_callbacks: List[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, config: Union[VADConfig, Mapping[str, Any], None] = None) -> None:
        """Open the capture source and analyse every delivered block"""
        if self._running:
            return
        if config:
            self.update_config(config)
        if self.capture is None:
            raise DeviceUnavailable("No capture source configured for voice activity detection")

        self.capture.open(self.config.sample_rate, self.config.fft_size, self._on_capture_block)
        self._running = True
        logger.info(
            "Voice activity detection started",
            threshold=self.config.threshold,
            sample_rate=self.config.sample_rate,
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        try:
            if self.capture is not None:
                self.capture.close()
        finally:
            self.reset()
            logger.info("Voice activity detection stopped")

    def reset(self) -> None:
        """Return the state machine to Idle"""
        with self._lock:
            self.current_volume = 0.0
            self.current_frequency = 0.0
            self._speech_start_time = None
            self._last_voice_time = None
            self._speech_active = False
            self._latest_result = None

    def is_active(self) -> bool:
        return self._running

    def is_speech_active(self) -> bool:
        return self._speech_active

    # ------------------------------------------------------------------
    # Subscriptions and config
    # ------------------------------------------------------------------

    def on_voice_activity(self, callback: Callable[[VoiceActivityResult], None]) -> None:
        self._activity_callbacks.append(callback)

    def on_speech_start(self, callback: Callable[[], None]) -> None:
        self._speech_start_callbacks.append(callback)

    def on_speech_end(self, callback: Callable[[], None]) -> None:
        self._speech_end_callbacks.append(callback)

    def get_current_volume(self) -> float:
        return self.current_volume

    def get_config(self) -> VADConfig:
        return self.config.model_copy()

    def update_config(self, config: Union[VADConfig, Mapping[str, Any]]) -> None:
        self.config = merge_config(self.config, config)

    def get_capabilities(self) -> Optional[Dict[str, Any]]:
        if not self._running or self.capture is None:
            return None
        return self.capture.capabilities()

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_frame(self, frame: np.ndarray) -> Tuple[float, float, float]:
        """Volume (RMS), dominant frequency in Hz and confidence for one frame"""
        volume = rms(frame)
        frequency = dominant_frequency(spectrum(frame, self.config.fft_size), self.config.sample_rate)

        threshold = self.config.threshold
        if threshold > 0:
            volume_confidence = min(volume / threshold, 1.0)
        else:
            volume_confidence = 1.0 if volume > 0 else 0.0
        frequency_confidence = 1.0 if HUMAN_VOICE_MIN_HZ <= frequency <= HUMAN_VOICE_MAX_HZ else 0.5
        return volume, frequency, (volume_confidence + frequency_confidence) / 2

    def process_frame(self, samples, timestamp: Optional[float] = None) -> Optional[VoiceActivityResult]:
        """Analyse one frame and advance the speech state machine.

        ``timestamp`` is in milliseconds; the detector clock is used when it is
        omitted. Malformed frames are skipped and produce no result.
        """
        frame = as_frame(samples)
        if not is_valid_frame(frame):
            logger.warning("Skipping malformed audio frame", length=int(frame.size))
            return None

        volume, frequency, confidence = self.analyze_frame(frame)
        now = self._clock() if timestamp is None else float(timestamp)
        is_voice = volume > self.config.threshold

        speech_started = False
        speech_ended = False
        with self._lock:
            self.current_volume = volume
            self.current_frequency = frequency

            if is_voice:
                self._last_voice_time = now
                if not self._speech_active:
                    if self._speech_start_time is None:
                        self._speech_start_time = now
                    if now - self._speech_start_time >= self.config.min_speech_duration:
                        self._speech_active = True
                        speech_started = True
            elif self._speech_active:
                if now - self._last_voice_time >= self.config.max_silence_duration:
                    self._speech_active = False
                    self._speech_start_time = None
                    speech_ended = True
            else:
                self._speech_start_time = None

            result = VoiceActivityResult(
                is_voice_active=is_voice,
                volume=volume,
                frequency=frequency,
                confidence=confidence,
                timestamp=now,
            )
            self._latest_result = result

        if speech_started:
            logger.debug("Speech started", volume=volume)
            self._emit(self._speech_start_callbacks)
        if speech_ended:
            logger.debug("Speech ended")
            self._emit(self._speech_end_callbacks)
        self._emit(self._activity_callbacks, result)
        return result

    def current_state(self, samples=None) -> Optional[VoiceActivityResult]:
        """Latest live result, or a stateless reading of ``samples`` when idle"""
        if self._running and self._latest_result is not None:
            return self._latest_result
        if samples is None:
            return None

        frame = as_frame(samples)
        if not is_valid_frame(frame):
            return None
        volume, frequency, confidence = self.analyze_frame(frame)
        return VoiceActivityResult(
            is_voice_active=volume > self.config.threshold,
            volume=volume,
            frequency=frequency,
            confidence=confidence,
            timestamp=self._clock(),
        )

    def _on_capture_block(self, block: np.ndarray) -> None:
        if self._running:
            self.process_frame(block)

    def _emit(self, callbacks: List[Callable], *args) -> None:
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception as e:
                logger.error("Voice activity subscriber failed", error=str(e))
