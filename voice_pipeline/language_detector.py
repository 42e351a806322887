"""Bangla / English language detection from text and, heuristically, from audio"""

import re
from typing import Any, Callable, List, Mapping, Optional, Union

import librosa
import numpy as np
import structlog
from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException

from .config import LanguageDetectionConfig, merge_config, settings
from .models import DetectionMethod, Language, LanguageAlternative, LanguageDetectionResult
from .spectrum import as_frame, bin_frequencies, dominant_frequency, is_valid_frame, spectrum

logger = structlog.get_logger(__name__)

# langdetect is non-deterministic unless seeded
DetectorFactory.seed = 0

BANGLA_CHAR = re.compile("[\u0980-\u09FF]")
WHITESPACE = re.compile(r"\s")
UNICODE_SHORT_CIRCUIT = 0.9

BANGLA_COMMON_WORDS = [
    "আমি", "তুমি", "সে", "আমরা", "তোমরা", "তারা",
    "এই", "সেই", "যে", "কি", "কী", "কেন", "কোথায়", "কখন",
    "হ্যাঁ", "না", "ভাল", "ভালো", "খারাপ",
    "ধন্যবাদ", "দয়া", "করে", "অনুগ্রহ", "সাহায্য",
    "কৃষি", "ফসল", "জমি", "চাষ", "বীজ", "সার",
]

ENGLISH_COMMON_WORDS = frozenset([
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "i", "you", "he", "she", "it", "we", "they",
    "is", "are", "was", "were", "have", "has", "had",
    "what", "where", "when", "why", "how", "who",
    "yes", "no", "good", "bad", "help", "please", "thank",
    "agriculture", "crop", "farm", "seed", "fertilizer", "harvest",
])

# Relative frequency (%) of the most common English letters
ENGLISH_LETTER_FREQUENCY = {
    "e": 12.7, "t": 9.1, "a": 8.2, "o": 7.5, "i": 7.0, "n": 6.7,
    "s": 6.3, "h": 6.1, "r": 6.0, "d": 4.3, "l": 4.0, "c": 2.8,
}

FUSION_WEIGHTS = {
    DetectionMethod.PATTERN: 0.5,
    DetectionMethod.FREQUENCY: 0.3,
    DetectionMethod.FALLBACK: 0.2,
}
DEFAULT_FUSION_WEIGHT = 0.1

LANGUAGE_NAMES = {
    Language.BANGLA: "বাংলা",
    Language.ENGLISH: "English",
}

AUDIO_BANDS = (0.0, 500.0, 2000.0)


def get_language_name(language: Union[Language, str]) -> str:
    return LANGUAGE_NAMES[Language(language)]


class LanguageDetector:
    """Detects whether an utterance is Bangla or English.

    Text detection tries, in order, the Unicode-script ratio (returned at
    once when it is at least 0.9 confident), the common-word method, the
    character-frequency method and, when enabled, the statistical detector.
    The first to clear ``confidence_threshold`` wins; otherwise the results
    are fused by method weight.
    """

    def __init__(self, config: Optional[LanguageDetectionConfig] = None):
        self.config = config or LanguageDetectionConfig()
        self._callbacks: List[Callable[[LanguageDetectionResult], None]] = []

    def detect_language(self, text: str) -> LanguageDetectionResult:
        if not text or not text.strip():
            return self._notify(self._fallback_result())

        clean_text = text.strip().lower()
        threshold = self.config.confidence_threshold

        unicode_result = self._detect_by_unicode(clean_text)
        if unicode_result.confidence >= UNICODE_SHORT_CIRCUIT:
            return self._notify(unicode_result)

        word_result = self._detect_by_words(clean_text)
        if word_result.confidence > threshold:
            return self._notify(word_result)

        frequency_result = self._detect_by_character_frequency(clean_text)
        if frequency_result.confidence > threshold:
            return self._notify(frequency_result)

        results = [unicode_result, word_result, frequency_result]
        if self.config.enable_statistical_detector:
            statistical_result = self._detect_statistically(text)
            if statistical_result is not None:
                if statistical_result.confidence > threshold:
                    return self._notify(statistical_result)
                results.append(statistical_result)

        return self._notify(self._fuse(results))

    def detect_language_from_audio(self, samples, sample_rate: Optional[int] = None) -> LanguageDetectionResult:
        """Weak spectral heuristic; not a trained classifier"""
        sample_rate = sample_rate or settings.sample_rate
        frame = as_frame(samples)
        if not is_valid_frame(frame):
            logger.warning("Audio language detection skipped malformed frame", length=int(frame.size))
            return self._notify(self._fallback_result())

        frame = frame[: self.config.fft_size]
        magnitudes = spectrum(frame, self.config.fft_size)
        frequencies = bin_frequencies(magnitudes.size, sample_rate)
        dominant = dominant_frequency(magnitudes, sample_rate)

        energy = magnitudes ** 2
        bands = [
            float(energy[(frequencies >= low) & (frequencies < high)].sum())
            for low, high in zip(AUDIO_BANDS, AUDIO_BANDS[1:] + (float("inf"),))
        ]
        # Fraction of sign changes; voiced, vowel-heavy speech crosses zero less often
        crossing_rate = float(np.mean(librosa.zero_crossings(frame, pad=False)))

        bangla_score = self._bangla_audio_score(dominant, bands, crossing_rate)
        english_score = self._english_audio_score(dominant, bands, crossing_rate)
        return self._notify(self._scored_result(bangla_score, english_score, DetectionMethod.FREQUENCY))

    def is_language_switch_recommended(
        self, current: Union[Language, str], detected: Union[Language, str], confidence: float
    ) -> bool:
        if not self.config.enable_auto_switch:
            return False
        if Language(current) == Language(detected):
            return False
        return confidence >= self.config.confidence_threshold

    def on_language_detected(self, callback: Callable[[LanguageDetectionResult], None]) -> None:
        self._callbacks.append(callback)

    def get_config(self) -> LanguageDetectionConfig:
        return self.config.model_copy()

    def update_config(self, config: Union[LanguageDetectionConfig, Mapping[str, Any]]) -> None:
        self.config = merge_config(self.config, config)

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def _detect_by_unicode(self, text: str) -> LanguageDetectionResult:
        total_chars = len(WHITESPACE.sub("", text))
        if total_chars == 0:
            return self._fallback_result()

        bangla_ratio = len(BANGLA_CHAR.findall(text)) / total_chars
        english_ratio = 1.0 - bangla_ratio
        return self._result(
            Language.BANGLA if bangla_ratio > 0.5 else Language.ENGLISH,
            bangla_ratio,
            english_ratio,
            DetectionMethod.PATTERN,
        )

    def _detect_by_words(self, text: str) -> LanguageDetectionResult:
        words = text.split()
        if not words:
            return self._fallback_result()

        bangla_count = 0
        english_count = 0
        for word in words:
            if any(bangla_word in word for bangla_word in BANGLA_COMMON_WORDS):
                bangla_count += 1
            elif word in ENGLISH_COMMON_WORDS:
                english_count += 1
            elif BANGLA_CHAR.search(word):
                bangla_count += 1

        total = bangla_count + english_count
        if total == 0:
            return self._fallback_result()
        return self._scored_result(bangla_count, english_count, DetectionMethod.PATTERN)

    def _detect_by_character_frequency(self, text: str) -> LanguageDetectionResult:
        chars = WHITESPACE.sub("", text)[: self.config.analysis_window_size]
        if not chars:
            return self._fallback_result()

        english_score = 0.0
        for char in set(chars):
            weight = ENGLISH_LETTER_FREQUENCY.get(char)
            if weight:
                english_score += chars.count(char) / len(chars) * weight

        bangla_score = len(BANGLA_CHAR.findall(chars)) / len(chars)
        return self._scored_result(bangla_score, english_score, DetectionMethod.FREQUENCY)

    def _detect_statistically(self, text: str) -> Optional[LanguageDetectionResult]:
        try:
            guesses = detect_langs(text)
        except LangDetectException as e:
            logger.debug("Statistical language detection had no features", error=str(e))
            return None

        probabilities = {guess.lang: guess.prob for guess in guesses}
        bangla = probabilities.get(Language.BANGLA.value, 0.0)
        english = probabilities.get(Language.ENGLISH.value, 0.0)
        if bangla == 0.0 and english == 0.0:
            return None
        return self._result(
            Language.BANGLA if bangla > english else Language.ENGLISH,
            bangla,
            english,
            DetectionMethod.API,
        )

    def _fuse(self, results: List[LanguageDetectionResult]) -> LanguageDetectionResult:
        bangla_score = 0.0
        english_score = 0.0
        total_weight = 0.0

        for result in results:
            weight = FUSION_WEIGHTS.get(result.method, DEFAULT_FUSION_WEIGHT)
            total_weight += weight
            if result.detected_language == Language.BANGLA:
                bangla_score += result.confidence * weight
            else:
                english_score += result.confidence * weight

        if total_weight > 0:
            bangla_score /= total_weight
            english_score /= total_weight

        return self._result(
            Language.BANGLA if bangla_score > english_score else Language.ENGLISH,
            bangla_score,
            english_score,
            DetectionMethod.PATTERN,
        )

    @staticmethod
    def _bangla_audio_score(dominant: float, bands: List[float], crossing_rate: float) -> float:
        score = 0.0
        if 200 < dominant < 1500:
            score += 0.3
        if bands[1] > bands[0]:
            score += 0.4
        score += 0.3 * (1.0 - min(crossing_rate / 0.3, 1.0))
        return min(score, 1.0)

    @staticmethod
    def _english_audio_score(dominant: float, bands: List[float], crossing_rate: float) -> float:
        score = 0.0
        if 300 < dominant < 2000:
            score += 0.3
        total = sum(bands)
        if total > 0 and bands[2] / total > 0.2:
            score += 0.4
        score += 0.3 * min(crossing_rate / 0.3, 1.0)
        return min(score, 1.0)

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    def _scored_result(self, bangla_score: float, english_score: float, method: DetectionMethod) -> LanguageDetectionResult:
        total = bangla_score + english_score
        bangla = bangla_score / total if total > 0 else 0.5
        english = english_score / total if total > 0 else 0.5
        return self._result(Language.BANGLA if bangla > english else Language.ENGLISH, bangla, english, method)

    @staticmethod
    def _result(language: Language, bangla: float, english: float, method: DetectionMethod) -> LanguageDetectionResult:
        return LanguageDetectionResult(
            detected_language=language,
            confidence=max(bangla, english),
            alternatives=[
                LanguageAlternative(language=Language.BANGLA, confidence=bangla),
                LanguageAlternative(language=Language.ENGLISH, confidence=english),
            ],
            method=method,
        )

    def _fallback_result(self) -> LanguageDetectionResult:
        return LanguageDetectionResult(
            detected_language=Language(self.config.fallback_language),
            confidence=0.5,
            alternatives=[
                LanguageAlternative(language=Language.BANGLA, confidence=0.5),
                LanguageAlternative(language=Language.ENGLISH, confidence=0.5),
            ],
            method=DetectionMethod.FALLBACK,
        )

    def _notify(self, result: LanguageDetectionResult) -> LanguageDetectionResult:
        for callback in list(self._callbacks):
            try:
                callback(result)
            except Exception as e:
                logger.error("Language detection subscriber failed", error=str(e))
        return result
