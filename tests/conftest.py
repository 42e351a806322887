import numpy as np
import pytest

from voice_pipeline.capture import EnvironmentProbe
from voice_pipeline.profile_store import InMemoryProfileStore


class FakeCapture:
    """Capture source that delivers blocks only when a test pushes them"""

    def __init__(self, available: bool = True, fail_on_open: bool = False):
        self.available = available
        self.fail_on_open = fail_on_open
        self.callback = None
        self.opened_with = None
        self.open_count = 0
        self.close_count = 0

    def open(self, sample_rate, block_size, callback):
        if self.fail_on_open:
            from voice_pipeline.errors import DeviceUnavailable

            raise DeviceUnavailable("permission denied")
        self.callback = callback
        self.opened_with = (sample_rate, block_size)
        self.open_count += 1

    def close(self):
        self.callback = None
        self.close_count += 1

    def is_available(self):
        return self.available

    def capabilities(self):
        if self.opened_with is None:
            return None
        return {"sample_rate": float(self.opened_with[0]), "channel_count": 1, "latency": 0.0, "device": None}

    def push(self, block):
        assert self.callback is not None, "capture is not open"
        self.callback(np.asarray(block, dtype=np.float64))


class StaticProbe:
    """Probe with a fixed view of the host"""

    def __init__(self, **overrides):
        self.support = {
            "audio_capture": True,
            "voice_activity_detection": True,
            "noise_reduction": True,
            "language_detection": True,
            "voice_commands": True,
            "voice_calibration": True,
        }
        self.support.update(overrides)

    def probe(self):
        return dict(self.support)


class FakeClock:
    """Millisecond clock advanced by hand"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms: float):
        self.now += ms


def sine(frequency, amplitude=0.5, sample_rate=16000, length=800):
    t = np.arange(length) / sample_rate
    return amplitude * np.sin(2 * np.pi * frequency * t)


def frame_with_rms(rms_value, sample_rate=16000, length=800, frequency=440.0):
    # A sine of amplitude A has RMS A / sqrt(2) over whole periods
    return sine(frequency, rms_value * np.sqrt(2), sample_rate, length)


@pytest.fixture
def store():
    return InMemoryProfileStore()


@pytest.fixture
def fake_capture():
    return FakeCapture()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def probe():
    return EnvironmentProbe(capture_factory=FakeCapture)
