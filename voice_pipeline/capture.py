"""Audio capture boundary and host capability probing"""

import threading
from typing import Any, Callable, Dict, Optional, Protocol

import numpy as np
import structlog

from .errors import DeviceUnavailable
from .profile_store import ProfileStore
from .spectrum import dominant_frequency, spectrum

logger = structlog.get_logger(__name__)

FrameCallback = Callable[[np.ndarray], None]


class CaptureSource(Protocol):
    """Delivers fixed-size mono float blocks to a callback"""

    def open(self, sample_rate: int, block_size: int, callback: FrameCallback) -> None:
        ...

    def close(self) -> None:
        ...

    def is_available(self) -> bool:
        ...

    def capabilities(self) -> Optional[Dict[str, Any]]:
        ...


class SoundDeviceCapture:
    """Microphone input through PortAudio (sounddevice)"""

    def __init__(self, device: Optional[Any] = None):
        self.device = device
        self._stream = None
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        try:
            # PortAudio is loaded on import, so a missing host library surfaces here
            import sounddevice as sd

            sd.query_devices(self.device, kind="input")
            return True
        except Exception as e:
            logger.warning("No usable capture device", device=self.device, error=str(e))
            return False

    def open(self, sample_rate: int, block_size: int, callback: FrameCallback) -> None:
        with self._lock:
            if self._stream is not None:
                return

            def on_block(indata, frames, time_info, status):
                if status and "overflow" not in str(status).lower():
                    logger.warning("Capture stream status", status=str(status))
                callback(np.array(indata[:, 0], dtype=np.float64))

            try:
                import sounddevice as sd

                stream = sd.InputStream(
                    samplerate=sample_rate,
                    blocksize=block_size,
                    channels=1,
                    dtype="float32",
                    device=self.device,
                    callback=on_block,
                )
                stream.start()
            except Exception as e:
                raise DeviceUnavailable(f"Could not open capture device: {e}") from e

            self._stream = stream
            logger.info("Capture stream opened", sample_rate=sample_rate, block_size=block_size)

    def close(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        finally:
            logger.info("Capture stream closed")

    def capabilities(self) -> Optional[Dict[str, Any]]:
        stream = self._stream
        if stream is None:
            return None
        return {
            "sample_rate": float(stream.samplerate),
            "channel_count": int(stream.channels),
            "latency": float(stream.latency),
            "device": self.device,
        }


class EnvironmentProbe:
    """Reports which pipeline features this host can run.

    Constructed explicitly and handed to the pipeline so tests and embedders
    can substitute their own view of the host.
    """

    def __init__(
        self,
        capture_factory: Callable[[], CaptureSource] = SoundDeviceCapture,
        profile_store: Optional[ProfileStore] = None,
    ):
        self.capture_factory = capture_factory
        self.profile_store = profile_store

    def probe(self) -> Dict[str, bool]:
        return {
            "audio_capture": self._check("audio_capture", self._capture_available),
            "voice_activity_detection": self._check("voice_activity_detection", self._spectrum_self_test),
            "noise_reduction": self._check("noise_reduction", self._spectrum_self_test),
            "language_detection": self._check("language_detection", self._unicode_self_test),
            "voice_commands": True,
            "voice_calibration": self._check("voice_calibration", self._store_reachable),
        }

    def _check(self, feature: str, check: Callable[[], bool]) -> bool:
        try:
            return bool(check())
        except Exception as e:
            logger.warning("Feature support probe failed", feature=feature, error=str(e))
            return False

    def _capture_available(self) -> bool:
        return self.capture_factory().is_available()

    @staticmethod
    def _spectrum_self_test() -> bool:
        # A 1 kHz tone at 16 kHz must land on the 1 kHz bin
        sample_rate = 16000
        t = np.arange(256) / sample_rate
        tone = np.sin(2 * np.pi * 1000 * t)
        peak = dominant_frequency(spectrum(tone, 256), sample_rate)
        return abs(peak - 1000.0) < sample_rate / 256

    @staticmethod
    def _unicode_self_test() -> bool:
        return "ক".isalpha()

    def _store_reachable(self) -> bool:
        if self.profile_store is None:
            return True
        self.profile_store.load("__probe__")
        return True
