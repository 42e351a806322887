import numpy as np
import pytest

from voice_pipeline.config import VADConfig
from voice_pipeline.errors import DeviceUnavailable
from voice_pipeline.vad_processor import VoiceActivityDetector

from conftest import FakeCapture, frame_with_rms, sine

FRAME_MS = 50


@pytest.fixture
def detector(clock):
    config = VADConfig(threshold=0.01, min_speech_duration=300, max_silence_duration=2000, sample_rate=16000, fft_size=2048)
    vad = VoiceActivityDetector(config, FakeCapture(), clock)
    events = []
    vad.on_speech_start(lambda: events.append("start"))
    vad.on_speech_end(lambda: events.append("end"))
    vad.events = events
    return vad


def feed(vad, level, duration_ms, start_ms):
    """Feed frames of the given RMS every FRAME_MS, returning the next timestamp"""
    t = start_ms
    end = start_ms + duration_ms
    while t < end:
        vad.process_frame(frame_with_rms(level), timestamp=t)
        t += FRAME_MS
    return t


def test_debounced_speech_start_and_end(detector):
    t = feed(detector, 0.05, 250, 0)
    assert detector.events == []
    assert not detector.is_speech_active()

    t = feed(detector, 0.05, 400, t)
    assert detector.events == ["start"]
    assert detector.is_speech_active()

    feed(detector, 0.001, 2100, t)
    assert detector.events == ["start", "end"]
    assert not detector.is_speech_active()


def test_short_burst_does_not_start_speech(detector):
    t = feed(detector, 0.05, 200, 0)
    t = feed(detector, 0.001, 100, t)
    feed(detector, 0.05, 200, t)
    assert detector.events == []


def test_short_dip_does_not_end_speech(detector):
    t = feed(detector, 0.05, 500, 0)
    t = feed(detector, 0.001, 1500, t)
    feed(detector, 0.05, 200, t)
    assert detector.events == ["start"]
    assert detector.is_speech_active()


def test_edges_alternate_for_arbitrary_sequences(detector):
    rng = np.random.default_rng(3)
    t = 0
    for _ in range(60):
        level = 0.05 if rng.random() < 0.5 else 0.001
        t = feed(detector, level, int(rng.integers(1, 60)) * FRAME_MS, t)

    events = detector.events
    for i, event in enumerate(events):
        assert event == ("start" if i % 2 == 0 else "end")


def test_frame_result_fields(detector):
    result = detector.process_frame(sine(440, amplitude=0.2), timestamp=10)

    assert result.is_voice_active
    assert result.volume == pytest.approx(0.2 / np.sqrt(2), rel=1e-3)
    assert result.frequency == pytest.approx(440, abs=16000 / 2048)
    assert result.confidence == pytest.approx(1.0)
    assert result.timestamp == 10


def test_confidence_halves_outside_voice_band(detector):
    # A quiet 20 Hz hum: volume term 0.5, frequency term 0.5
    hum = sine(20, amplitude=0.005 * np.sqrt(2), length=3200)
    result = detector.process_frame(hum, timestamp=0)

    assert not result.is_voice_active
    assert result.confidence == pytest.approx(0.5, abs=0.02)


def test_malformed_frame_is_skipped(detector):
    received = []
    detector.on_voice_activity(received.append)

    assert detector.process_frame([0.1, float("nan"), 0.2]) is None
    assert detector.process_frame([]) is None
    assert received == []


def test_start_requires_capture(clock):
    with pytest.raises(DeviceUnavailable):
        VoiceActivityDetector(capture=None, clock=clock).start()


def test_start_propagates_device_failure(clock):
    vad = VoiceActivityDetector(capture=FakeCapture(fail_on_open=True), clock=clock)
    with pytest.raises(DeviceUnavailable):
        vad.start()
    assert not vad.is_active()


def test_capture_blocks_drive_the_detector(clock):
    capture = FakeCapture()
    vad = VoiceActivityDetector(VADConfig(sample_rate=16000, fft_size=1024), capture, clock)
    results = []
    vad.on_voice_activity(results.append)

    vad.start()
    assert capture.opened_with == (16000, 1024)
    assert vad.get_capabilities()["sample_rate"] == 16000.0

    capture.push(frame_with_rms(0.05))
    assert len(results) == 1
    assert vad.get_current_volume() == pytest.approx(0.05, rel=1e-3)
    assert vad.current_state() is results[0]


def test_stop_is_idempotent_and_resets(detector):
    capture = detector.capture
    detector.start()
    feed(detector, 0.05, 500, 0)
    assert detector.is_speech_active()

    detector.stop()
    detector.stop()
    assert capture.close_count == 1
    assert not detector.is_active()
    assert not detector.is_speech_active()
    assert detector.get_current_volume() == 0.0


def test_stateless_reading_when_idle(detector):
    result = detector.current_state(frame_with_rms(0.05))
    assert result.is_voice_active
    assert detector.current_state() is None


def test_update_config_merges(detector):
    detector.update_config({"threshold": 0.2})
    config = detector.get_config()
    assert config.threshold == 0.2
    assert config.min_speech_duration == 300
