"""Data types for the Lofi Deck audio engine."""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np


class DeckId(str, enum.Enum):
    """One of the two crossfader inputs."""
    A = "A"
    B = "B"

    @property
    def other(self) -> "DeckId":
        return DeckId.B if self is DeckId.A else DeckId.A

    @property
    def crossfade_extreme(self) -> float:
        """Crossfade position at which only this deck is heard."""
        return 0.0 if self is DeckId.A else 1.0


def _read_only(values: np.ndarray) -> np.ndarray:
    arr = np.array(values, dtype=np.float32, copy=True)
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True)
class AnalysisSnapshot:
    """One render tick's view of the mixed signal.

    Buffers are read-only copies; consumers get a fresh snapshot every tick.
    """
    frequency_data: np.ndarray   # spectral magnitude per bin, dB
    waveform_data: np.ndarray    # linear amplitude, [-1, 1]
    volume: float                # RMS loudness, dB (-inf = silence)

    @classmethod
    def create(cls, frequency_data: np.ndarray, waveform_data: np.ndarray,
               volume: float) -> "AnalysisSnapshot":
        return cls(_read_only(frequency_data), _read_only(waveform_data), float(volume))

    @classmethod
    def silent(cls, fft_size: int = 1024, waveform_size: int = 1024) -> "AnalysisSnapshot":
        """Default returned before the graph exists or after teardown."""
        return cls.create(np.zeros(fft_size), np.zeros(waveform_size), -math.inf)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form; ``volume`` is None for silence."""
        volume: Optional[float] = self.volume if math.isfinite(self.volume) else None
        return {
            "frequency_data": [float(v) for v in self.frequency_data],
            "waveform_data": [float(v) for v in self.waveform_data],
            "volume": volume,
        }


@dataclass
class AudioSettings:
    """Engine and analysis settings (``audio.*`` and ``analysis.*``)."""
    sample_rate: int = 44100
    block_size: int = 1024
    channels: int = 2
    output: str = "offline"          # "offline" | "sounddevice" | "null"
    device: Optional[str] = None
    fft_size: int = 1024
    waveform_size: int = 1024
    smoothing: float = 0.8
    min_decibels: float = -100.0

    @classmethod
    def from_config(cls, config: Any) -> "AudioSettings":
        return cls(
            sample_rate=int(config.get("audio.sample_rate", 44100)),
            block_size=int(config.get("audio.block_size", 1024)),
            channels=int(config.get("audio.channels", 2)),
            output=str(config.get("audio.output", "offline")),
            device=config.get("audio.device"),
            fft_size=int(config.get("analysis.fft_size", 1024)),
            waveform_size=int(config.get("analysis.waveform_size", 1024)),
            smoothing=float(config.get("analysis.smoothing", 0.8)),
            min_decibels=float(config.get("analysis.min_decibels", -100.0)),
        )
