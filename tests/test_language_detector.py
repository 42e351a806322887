import numpy as np
import pytest

from voice_pipeline.config import LanguageDetectionConfig
from voice_pipeline.language_detector import ENGLISH_COMMON_WORDS, LanguageDetector, get_language_name
from voice_pipeline.models import DetectionMethod, Language

from conftest import sine


@pytest.fixture
def detector():
    return LanguageDetector(LanguageDetectionConfig(confidence_threshold=0.7, fallback_language="bn"))


def assert_consistent(result):
    assert max(alt.confidence for alt in result.alternatives) == pytest.approx(result.confidence)


@pytest.mark.parametrize("text", [
    "আমি একজন কৃষক",
    "ধান   চাষ\nকরি",
    "বাজারে ভাল দাম পাওয়া যাবে",
])
def test_bangla_script_is_detected_with_high_confidence(detector, text):
    result = detector.detect_language(text)
    assert result.detected_language == Language.BANGLA
    assert result.confidence >= 0.9
    assert result.method == DetectionMethod.PATTERN
    assert_consistent(result)


def test_english_common_words_are_detected(detector):
    words = sorted(ENGLISH_COMMON_WORDS)
    for start in range(0, len(words), 5):
        result = detector.detect_language(" ".join(words[start:start + 5]))
        assert result.detected_language == Language.ENGLISH
        assert result.confidence >= detector.config.confidence_threshold
        assert_consistent(result)


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_blank_text_falls_back(detector, text):
    result = detector.detect_language(text)
    assert result.detected_language == Language.BANGLA
    assert result.confidence == 0.5
    assert result.method == DetectionMethod.FALLBACK
    assert_consistent(result)


def test_fallback_language_is_configurable(detector):
    detector.update_config({"fallback_language": "en"})
    assert detector.detect_language("").detected_language == Language.ENGLISH


def test_mixed_text_falls_through_to_fusion(detector):
    # Script ratio 4/7, one word each, letter weights below threshold
    result = detector.detect_language("কখগঘ you")

    assert result.method == DetectionMethod.PATTERN
    assert result.detected_language == Language.ENGLISH
    assert result.confidence < detector.config.confidence_threshold
    assert_consistent(result)


def test_character_frequency_method_wins_for_english_heavy_mix(detector):
    result = detector.detect_language("কখ the")
    assert result.method == DetectionMethod.FREQUENCY
    assert result.detected_language == Language.ENGLISH
    assert_consistent(result)


def test_every_detection_notifies_subscribers(detector):
    seen = []
    detector.on_language_detected(seen.append)

    detector.detect_language("আমি")
    detector.detect_language("")
    detector.detect_language("কখগঘ you")

    assert [r.method for r in seen] == [DetectionMethod.PATTERN, DetectionMethod.FALLBACK, DetectionMethod.PATTERN]


def test_switch_policy(detector):
    assert detector.is_language_switch_recommended("en", "bn", 0.8)
    assert detector.is_language_switch_recommended(Language.ENGLISH, Language.BANGLA, 0.7)
    assert not detector.is_language_switch_recommended("en", "bn", 0.69)
    assert not detector.is_language_switch_recommended("bn", "bn", 1.0)

    detector.update_config({"enable_auto_switch": False})
    assert not detector.is_language_switch_recommended("en", "bn", 1.0)


def test_audio_detection_is_deterministic(detector):
    frame = sine(800, amplitude=0.3, length=2048) + sine(2500, amplitude=0.1, length=2048)

    first = detector.detect_language_from_audio(frame, 16000)
    second = detector.detect_language_from_audio(frame, 16000)

    assert first == second
    assert first.method == DetectionMethod.FREQUENCY
    assert_consistent(first)


def test_audio_detection_only_analyses_configured_block():
    detector = LanguageDetector(LanguageDetectionConfig(fft_size=256))
    head = sine(800, amplitude=0.3, length=256)
    tail = np.random.default_rng(7).normal(0.0, 0.4, 1792)

    assert detector.detect_language_from_audio(np.concatenate([head, tail]), 16000) == \
        detector.detect_language_from_audio(head, 16000)


def test_audio_detection_of_malformed_frame_falls_back(detector):
    result = detector.detect_language_from_audio(np.array([np.inf, 0.0]), 16000)
    assert result.method == DetectionMethod.FALLBACK


def test_language_names():
    assert get_language_name("bn") == "বাংলা"
    assert get_language_name(Language.ENGLISH) == "English"
