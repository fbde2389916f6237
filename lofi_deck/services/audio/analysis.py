"""Analysis taps on the mixed signal — FFT, waveform, loudness meter.

Taps receive a copy of each mixed block through ``write()`` (audio side) and
are sampled through ``read()`` (render side).  ``write()`` only ever swaps
a buffer reference, so ``read()`` never waits on the audio thread.
"""
from __future__ import annotations

import math

import numpy as np


def to_mono(block: np.ndarray) -> np.ndarray:
    """Average a (frames, channels) block down to (frames,)."""
    if block.ndim == 1:
        return block.astype(np.float32, copy=False)
    return block.mean(axis=1, dtype=np.float32)


def gain_to_db(gain: float) -> float:
    if gain <= 0:
        return -math.inf
    return 20.0 * math.log10(gain)


def db_to_gain(db: float) -> float:
    if db == -math.inf:
        return 0.0
    return 10.0 ** (db / 20.0)


class _HistoryTap:
    """Keeps the most recent ``history`` mono samples."""

    def __init__(self, history: int):
        self._history = history
        self._samples = np.zeros(history, dtype=np.float32)

    def write(self, block: np.ndarray) -> None:
        mono = to_mono(block)
        if len(mono) >= self._history:
            self._samples = mono[-self._history:].copy()
        else:
            self._samples = np.concatenate([self._samples[len(mono):], mono])


class FFTTap(_HistoryTap):
    """Spectrum analyser: ``size`` bins in dB from a ``2 * size`` window.

    Blackman window, magnitude scaled by 1/N, exponential smoothing across
    reads, floored at ``min_decibels``.
    """

    def __init__(self, size: int = 1024, smoothing: float = 0.8, min_decibels: float = -100.0):
        super().__init__(size * 2)
        self.size = size
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self._window = np.blackman(size * 2).astype(np.float32)
        self._smoothed = np.zeros(size, dtype=np.float32)

    def read(self) -> np.ndarray:
        samples = self._samples
        spectrum = np.fft.rfft(samples * self._window)[: self.size]
        magnitude = np.abs(spectrum).astype(np.float32) / len(samples)
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitude
        with np.errstate(divide="ignore"):
            db = 20.0 * np.log10(self._smoothed)
        return np.maximum(db, self.min_decibels).astype(np.float32)


class WaveformTap(_HistoryTap):
    """Oscilloscope buffer: the last ``size`` samples, clipped to [-1, 1]."""

    def __init__(self, size: int = 1024):
        super().__init__(size)
        self.size = size

    def read(self) -> np.ndarray:
        return np.clip(self._samples, -1.0, 1.0)


class MeterTap:
    """RMS loudness in dB with peak-hold decay between reads."""

    def __init__(self, smoothing: float = 0.8):
        self.smoothing = smoothing
        self._block_rms = 0.0
        self._held = 0.0

    def write(self, block: np.ndarray) -> None:
        mono = to_mono(block)
        self._block_rms = float(np.sqrt(np.mean(np.square(mono)))) if len(mono) else 0.0

    def read(self) -> float:
        self._held = max(self._block_rms, self._held * self.smoothing)
        return gain_to_db(self._held)
