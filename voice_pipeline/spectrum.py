"""Frequency analysis primitives shared by the frame-path components.

Every caller goes through ``spectrum`` / ``complex_spectrum`` /
``inverse_spectrum`` so the naive O(n^2) DFT used here can be swapped for a
real FFT without touching the detectors.
"""

from functools import lru_cache
from typing import Tuple

import numpy as np


@lru_cache(maxsize=4)
def _hamming(n: int) -> np.ndarray:
    return np.hamming(n)


@lru_cache(maxsize=4)
def _dft_basis(n: int) -> Tuple[np.ndarray, np.ndarray]:
    """Cosine and sine tables for the one-sided DFT of size n"""
    k = np.arange(n // 2)
    t = np.arange(n)
    angle = 2.0 * np.pi * np.outer(k, t) / n
    return np.cos(angle), np.sin(angle)


def as_frame(samples) -> np.ndarray:
    """Coerce caller samples into a 1-D float64 frame"""
    frame = np.asarray(samples, dtype=np.float64)
    if frame.ndim > 1:
        # Mono is expected; fold any channel axis down
        frame = frame.mean(axis=1) if frame.shape[0] > frame.shape[1] else frame.mean(axis=0)
    return frame


def is_valid_frame(frame: np.ndarray) -> bool:
    return frame.ndim == 1 and frame.size > 1 and bool(np.all(np.isfinite(frame)))


def rms(frame: np.ndarray) -> float:
    if frame.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(frame))))


def complex_spectrum(frame: np.ndarray, fft_size: int) -> Tuple[np.ndarray, int]:
    """Hamming-windowed one-sided DFT of the first ``min(len, fft_size)`` samples.

    Returns the complex coefficients (unnormalised) and the transform size N.
    """
    n = min(len(frame), fft_size)
    if n < 2:
        return np.zeros(0, dtype=np.complex128), n

    windowed = frame[:n] * _hamming(n)
    cos_table, sin_table = _dft_basis(n)
    real = cos_table @ windowed
    imag = -(sin_table @ windowed)
    return real + 1j * imag, n


def spectrum(frame: np.ndarray, fft_size: int) -> np.ndarray:
    """Magnitude spectrum, normalised by the transform size"""
    coefficients, n = complex_spectrum(frame, fft_size)
    if n < 2:
        return np.zeros(0)
    return np.abs(coefficients) / n


def inverse_spectrum(coefficients: np.ndarray, n: int) -> np.ndarray:
    """Rebuild N time-domain samples from one-sided coefficients and undo the window"""
    if n < 2 or coefficients.size == 0:
        return np.zeros(n)

    cos_table, sin_table = _dft_basis(n)
    # x[t] = (X0 + 2 * sum_k Re(X_k e^{+i2πkt/N})) / N
    weights = np.full(coefficients.size, 2.0)
    weights[0] = 1.0
    contribution = (weights * coefficients.real) @ cos_table - (weights * coefficients.imag) @ sin_table
    return contribution / n / _hamming(n)


def bin_frequency(index: int, n_bins: int, sample_rate: float) -> float:
    """Centre frequency in Hz of a one-sided spectrum bin"""
    if n_bins <= 0:
        return 0.0
    return index * sample_rate / (2.0 * n_bins)


def bin_frequencies(n_bins: int, sample_rate: float) -> np.ndarray:
    if n_bins <= 0:
        return np.zeros(0)
    return np.arange(n_bins) * sample_rate / (2.0 * n_bins)


def dominant_frequency(magnitudes: np.ndarray, sample_rate: float) -> float:
    if magnitudes.size == 0:
        return 0.0
    return bin_frequency(int(np.argmax(magnitudes)), magnitudes.size, sample_rate)
