"""Built-in demo song — a synthesized lofi loop.

Four-chord progression with drums, bass and keys tracks, arranged as
intro → verse → chorus → outro and looping.  Audio is generated block by
block from the playhead, so tempo changes and section jumps take effect on
the next block.
"""
from __future__ import annotations

import asyncio
import math
from typing import Dict, List, Set, Tuple

import numpy as np

from lofi_deck.services.audio.graph import SignalPort
from lofi_deck.services.plugins.base import PluginContext, SongEvents, SongPlugin, TransportState
from lofi_deck.services.shared.logging import get_logger

logger = get_logger("plugins.demo_song")

BEATS_PER_BAR = 4
MIN_BPM, MAX_BPM = 40.0, 200.0

# (section name, length in bars)
ARRANGEMENT: List[Tuple[str, int]] = [("intro", 4), ("verse", 8), ("chorus", 8), ("outro", 4)]

# Dm7 → G7 → Cmaj7 → Am7, one chord per bar (Hz)
PROGRESSION: List[Tuple[float, ...]] = [
    (146.83, 174.61, 220.00, 261.63),
    (196.00, 246.94, 293.66, 349.23),
    (130.81, 164.81, 196.00, 246.94),
    (220.00, 261.63, 329.63, 392.00),
]

TRACKS = ("drums", "bass", "keys")


class DemoSong(SongEvents, SongPlugin):
    """Procedural lofi loop implementing every optional song capability."""

    name = "demo"

    def __init__(self, context: PluginContext = PluginContext(), bpm: float = 75.0, seed: int = 7):
        SongEvents.__init__(self)
        self.sample_rate = context.sample_rate
        self.channels = context.channels
        self._bpm = float(bpm)
        self._seed = seed
        self._position = 0              # playhead in samples
        self._playing = False
        self._muted: Set[str] = set()
        self._output: SignalPort = SignalPort(self._generate, channels=self.channels, volume_db=-6.0)
        self._rng = np.random.default_rng(seed)
        self._last_bar = -1
        self._last_section = ""
        self._disposed = False

    # ── timing helpers ───────────────────────────────────────────────────────

    @property
    def _beat_seconds(self) -> float:
        return 60.0 / self._bpm

    @property
    def _loop_bars(self) -> int:
        return sum(bars for _, bars in ARRANGEMENT)

    def _beats_at(self, position: int) -> float:
        return position / self.sample_rate / self._beat_seconds

    def _section_for_bar(self, bar: int) -> str:
        bar %= self._loop_bars
        for section, length in ARRANGEMENT:
            if bar < length:
                return section
            bar -= length
        return ARRANGEMENT[-1][0]

    def _section_start_bar(self, name: str) -> int:
        start = 0
        for section, length in ARRANGEMENT:
            if section == name:
                return start
            start += length
        raise KeyError(name)

    # ── SongPlugin ───────────────────────────────────────────────────────────

    async def init(self) -> None:
        self.bind_loop(asyncio.get_running_loop())
        logger.debug("Demo song ready at %.0f bpm", self._bpm)

    async def play(self) -> None:
        self._playing = True

    def pause(self) -> None:
        self._playing = False

    def stop(self) -> None:
        self._playing = False
        self._position = 0
        self._last_bar = -1
        self._last_section = ""

    def get_state(self) -> TransportState:
        beats = self._beats_at(self._position)
        bar = int(beats // BEATS_PER_BAR)
        return TransportState(
            section=self._section_for_bar(bar),
            bar=bar,
            beat=int(beats % BEATS_PER_BAR),
            bpm=self._bpm,
            is_playing=self._playing,
        )

    def get_master_output(self) -> SignalPort:
        return self._output

    def dispose(self) -> None:
        self._playing = False
        self._disposed = True
        self._listeners.clear()

    # ── optional capabilities ────────────────────────────────────────────────

    def jump_to_section(self, name: str) -> None:
        try:
            bar = self._section_start_bar(name)
        except KeyError:
            logger.warning("Demo song has no section '%s'", name)
            return
        self._position = math.ceil(bar * BEATS_PER_BAR * self._beat_seconds * self.sample_rate)
        self._last_bar = bar
        self._last_section = name
        self.emit("sectionChange", name)

    def mute_track(self, name: str) -> None:
        if name in TRACKS:
            self._muted.add(name)

    def unmute_track(self, name: str) -> None:
        self._muted.discard(name)

    def set_tempo(self, bpm: float) -> None:
        """Change tempo, keeping the musical position of the playhead."""
        beats = self._beats_at(self._position)
        self._bpm = float(min(MAX_BPM, max(MIN_BPM, bpm)))
        self._position = math.ceil(beats * self._beat_seconds * self.sample_rate)

    @property
    def muted_tracks(self) -> Set[str]:
        return set(self._muted)

    # ── synthesis ────────────────────────────────────────────────────────────

    def _generate(self, frames: int) -> np.ndarray:
        if not self._playing or self._disposed:
            return np.zeros(frames, dtype=np.float32)

        start = self._position
        n = np.arange(start, start + frames, dtype=np.float64)
        t = n / self.sample_rate
        beats = t / self._beat_seconds
        beat_in_bar = np.floor(beats) % BEATS_PER_BAR
        since_beat = (beats % 1.0) * self._beat_seconds
        bar = (beats // BEATS_PER_BAR).astype(np.int64)
        chords = np.array(PROGRESSION)[bar % len(PROGRESSION)]

        voices: Dict[str, np.ndarray] = {}

        # kick on 1 and 3, hats on every eighth
        kick = np.sin(2 * math.pi * 55.0 * since_beat) * np.exp(-since_beat * 9.0)
        kick *= (beat_in_bar % 2 == 0)
        since_eighth = ((beats * 2) % 1.0) * self._beat_seconds / 2
        hats = self._rng.standard_normal(frames) * np.exp(-since_eighth * 60.0) * 0.08
        voices["drums"] = 0.6 * kick + hats

        voices["bass"] = 0.25 * np.sin(2 * math.pi * (chords[:, 0] / 2) * t)

        tremolo = 0.75 + 0.25 * np.sin(2 * math.pi * 0.5 * t)
        keys = sum(np.sin(2 * math.pi * chords[:, i] * t) for i in range(1, chords.shape[1]))
        voices["keys"] = 0.06 * keys * tremolo

        mix = np.zeros(frames, dtype=np.float64)
        for track, signal in voices.items():
            if track not in self._muted:
                mix += signal

        self._position = start + frames
        self._announce(int(bar[-1]))
        return np.clip(mix, -1.0, 1.0).astype(np.float32)

    def _announce(self, bar: int) -> None:
        if bar == self._last_bar:
            return
        self._last_bar = bar
        self.emit("bar", bar)
        section = self._section_for_bar(bar)
        if section != self._last_section:
            self._last_section = section
            self.emit("sectionChange", section)
