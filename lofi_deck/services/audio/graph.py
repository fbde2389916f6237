"""AudioRoutingGraph — two deck inputs → crossfade → master → output.

Signal path::

    deck A ports ─┐
                  ├─ crossfade (equal power) ─ master gain ─ engine output
    deck B ports ─┘        │
                           ├─ FFTTap       (analysis only)
                           ├─ WaveformTap  (analysis only)
                           └─ MeterTap     (analysis only)

The taps read the crossfade output but never feed back into the main path.
Only the DeckController mutates the graph.
"""
from __future__ import annotations

import math
from typing import Callable, Dict, List, Optional, Union

import numpy as np

from lofi_deck.services.audio.analysis import (
    FFTTap,
    MeterTap,
    WaveformTap,
    db_to_gain,
)
from lofi_deck.services.audio.engine import AudioEngine, AudioParam
from lofi_deck.services.audio.types import AnalysisSnapshot, DeckId
from lofi_deck.services.shared.logging import get_logger

logger = get_logger("audio.graph")

SideLike = Union[DeckId, str]


class SignalPort:
    """A song's audio output: a block source behind a dB volume control.

    ``source(frames)`` returns ``(frames,)`` mono or ``(frames, channels)``
    float samples.
    """

    def __init__(
        self,
        source: Callable[[int], np.ndarray],
        channels: int = 2,
        volume_db: float = 0.0,
    ):
        self._source = source
        self.channels = channels
        self.volume_db = volume_db

    def pull(self, frames: int) -> np.ndarray:
        block = np.asarray(self._source(frames), dtype=np.float32)
        if block.ndim == 1:
            block = np.repeat(block[:, None], self.channels, axis=1)
        gain = db_to_gain(self.volume_db)
        if gain != 1.0:
            block = block * gain
        return block


class AudioRoutingGraph:
    """Crossfading mixer with analysis taps.

    Usage::

        graph = AudioRoutingGraph(engine)
        graph.initialize()
        graph.connect_input(song.get_master_output(), DeckId.A)
        graph.set_crossfade_position(1.0, ramp_seconds=4.0)
        snapshot = graph.read_analysis_snapshot()
    """

    def __init__(
        self,
        engine: AudioEngine,
        fft_size: int = 1024,
        waveform_size: int = 1024,
        smoothing: float = 0.8,
        min_decibels: float = -100.0,
    ):
        self.engine = engine
        self.fft_size = fft_size
        self.waveform_size = waveform_size
        self.smoothing = smoothing
        self.min_decibels = min_decibels

        self._fade: Optional[AudioParam] = None
        self._inputs: Dict[DeckId, List[SignalPort]] = {DeckId.A: [], DeckId.B: []}
        self._fft: Optional[FFTTap] = None
        self._waveform: Optional[WaveformTap] = None
        self._meter: Optional[MeterTap] = None
        self._master_db = 0.0
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ── construction / teardown ──────────────────────────────────────────────

    def initialize(self) -> None:
        """Build the nodes and register with the engine.  Idempotent."""
        if self._initialized:
            return
        self._fade = AudioParam(lambda: self.engine.current_time, 0.0, 0.0, 1.0)
        self._fft = FFTTap(self.fft_size, self.smoothing, self.min_decibels)
        self._waveform = WaveformTap(self.waveform_size)
        self._meter = MeterTap(self.smoothing)
        self._inputs = {DeckId.A: [], DeckId.B: []}
        self.engine.set_renderer(self.render)
        self._initialized = True
        logger.debug("Routing graph initialized (fft=%d, waveform=%d)",
                     self.fft_size, self.waveform_size)

    def teardown(self) -> None:
        """Release every node.  Analysis reads return defaults afterwards."""
        if self._initialized:
            self.engine.set_renderer(None)
        self._initialized = False
        self._fade = None
        self._fft = None
        self._waveform = None
        self._meter = None
        self._inputs = {DeckId.A: [], DeckId.B: []}

    # ── routing ──────────────────────────────────────────────────────────────

    def connect_input(self, port: SignalPort, side: SideLike) -> None:
        """Attach ``port`` to crossfade input ``side``.

        Previously connected ports stay connected; the caller disconnects
        them when replacing a deck's song.
        """
        if not self._initialized:
            logger.warning("connect_input(%s) before initialize() ignored", side)
            return
        deck = DeckId(side)
        if port not in self._inputs[deck]:
            # Rebind instead of append so render() iterates a stable list
            self._inputs[deck] = self._inputs[deck] + [port]

    def disconnect_input(self, port: SignalPort, side: SideLike) -> None:
        if not self._initialized:
            return
        deck = DeckId(side)
        self._inputs[deck] = [p for p in self._inputs[deck] if p is not port]

    def connected_ports(self, side: SideLike) -> List[SignalPort]:
        return list(self._inputs[DeckId(side)])

    # ── crossfade / master ───────────────────────────────────────────────────

    @property
    def crossfade_position(self) -> float:
        return self._fade.value if self._fade is not None else 0.0

    @property
    def crossfade_target(self) -> float:
        return self._fade.target if self._fade is not None else 0.0

    def set_crossfade_position(self, target: float, ramp_seconds: float = 0.0) -> None:
        """Move the crossfader to ``target`` (clamped to [0, 1]).

        A positive ``ramp_seconds`` ramps linearly on the engine clock from
        the current position; a later call re-targets from wherever the
        ramp has got to.
        """
        if self._fade is None:
            logger.warning("set_crossfade_position before initialize() ignored")
            return
        if ramp_seconds > 0:
            self._fade.ramp_to(target, ramp_seconds)
        else:
            self._fade.set_value(target)

    @property
    def master_level(self) -> float:
        return self._master_db

    def set_master_level(self, decibels: float) -> None:
        self._master_db = float(decibels)

    # ── audio side ───────────────────────────────────────────────────────────

    def _pull_side(self, side: DeckId, frames: int) -> np.ndarray:
        mix = np.zeros((frames, self.engine.channels), dtype=np.float32)
        for port in self._inputs[side]:
            block = port.pull(frames)[:frames, : self.engine.channels]
            mix[: len(block)] += block
        return mix

    def render(self, frames: int) -> np.ndarray:
        """Produce one output block (called from the engine)."""
        fade, fft, waveform, meter = self._fade, self._fft, self._waveform, self._meter
        if fade is None or fft is None or waveform is None or meter is None:
            return np.zeros((frames, self.engine.channels), dtype=np.float32)

        x = fade.values_for_block(self.engine.current_time, frames, self.engine.sample_rate)
        gain_a = np.cos(x * (math.pi / 2))[:, None]
        gain_b = np.sin(x * (math.pi / 2))[:, None]
        mixed = self._pull_side(DeckId.A, frames) * gain_a + self._pull_side(DeckId.B, frames) * gain_b

        fft.write(mixed)
        waveform.write(mixed)
        meter.write(mixed)

        return (mixed * db_to_gain(self._master_db)).astype(np.float32)

    # ── analysis ─────────────────────────────────────────────────────────────

    def read_analysis_snapshot(self) -> AnalysisSnapshot:
        """Current spectrum, waveform and loudness.  Never blocks or raises."""
        fft, waveform, meter = self._fft, self._waveform, self._meter
        if not self._initialized or fft is None or waveform is None or meter is None:
            return AnalysisSnapshot.silent(self.fft_size, self.waveform_size)
        return AnalysisSnapshot.create(fft.read(), waveform.read(), meter.read())
