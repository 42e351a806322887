import numpy as np
import pytest

from voice_pipeline.spectrum import (
    as_frame,
    bin_frequency,
    complex_spectrum,
    dominant_frequency,
    inverse_spectrum,
    is_valid_frame,
    rms,
    spectrum,
)

from conftest import sine


def test_complex_spectrum_matches_windowed_fft():
    frame = np.random.default_rng(7).normal(scale=0.1, size=256)
    coefficients, n = complex_spectrum(frame, 256)

    expected = np.fft.rfft(frame * np.hamming(256))[:128]
    assert n == 256
    assert np.allclose(coefficients, expected, atol=1e-9)


def test_spectrum_uses_first_fft_size_samples():
    frame = np.concatenate([sine(1000, length=512), np.zeros(512)])
    assert spectrum(frame, 512).shape == (256,)
    assert np.allclose(spectrum(frame, 512), spectrum(frame[:512], 512))


def test_inverse_spectrum_reconstructs_frame():
    frame = sine(1000, amplitude=0.5, length=512)
    coefficients, n = complex_spectrum(frame, 512)

    rebuilt = inverse_spectrum(coefficients, n)
    assert np.allclose(rebuilt, frame, atol=1e-2)


def test_dominant_frequency_of_pure_tone():
    frame = sine(1000, sample_rate=16000, length=512)
    assert dominant_frequency(spectrum(frame, 512), 16000) == pytest.approx(1000.0)


def test_bin_frequency_spans_half_the_sample_rate():
    assert bin_frequency(0, 1024, 44100) == 0.0
    assert bin_frequency(512, 1024, 44100) == pytest.approx(11025.0)
    assert bin_frequency(3, 0, 44100) == 0.0


def test_rms_and_frame_validation():
    assert rms(np.full(100, 0.5)) == pytest.approx(0.5)
    assert rms(np.zeros(0)) == 0.0

    assert is_valid_frame(as_frame([0.1, 0.2, 0.3]))
    assert not is_valid_frame(as_frame([0.1]))
    assert not is_valid_frame(as_frame([0.1, float("nan")]))


def test_as_frame_folds_channels():
    stereo = np.stack([np.ones(64), np.zeros(64)], axis=1)
    frame = as_frame(stereo)
    assert frame.shape == (64,)
    assert np.allclose(frame, 0.5)


def test_short_frames_have_empty_spectrum():
    assert spectrum(np.array([0.3]), 2048).size == 0
