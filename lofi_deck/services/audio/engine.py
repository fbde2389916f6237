"""AudioEngine — sample clock, block renderer and output backend.

The engine's clock (``current_time``) counts rendered audio, not wall time,
so parameter ramps advance exactly as fast as audio is produced.  Output
backends:

  "sounddevice" — PortAudio output stream; the stream callback renders.
  "offline"     — asyncio task rendering one block per block-duration.
  "null"        — nothing renders automatically; call ``render()`` directly.
"""
from __future__ import annotations

import asyncio
from typing import Callable, NamedTuple, Optional

import numpy as np

from lofi_deck.services.shared.logging import get_logger

logger = get_logger("audio.engine")

# ── optional PortAudio binding ────────────────────────────────────────────────
try:
    import sounddevice as sd
except (ImportError, OSError):  # pragma: no cover
    sd = None  # type: ignore[assignment]

OUTPUT_BACKENDS = ("offline", "sounddevice", "null")


class AudioEngineError(Exception):
    """Raised when the output backend cannot be opened."""


class _Ramp(NamedTuple):
    start_value: float
    start_time: float
    end_value: float
    end_time: float


class AudioParam:
    """A scalar parameter automated on the engine clock.

    Values are clamped to ``[min_value, max_value]``.  ``ramp_to`` moves
    linearly from wherever the parameter currently is; calling it again
    mid-ramp re-targets from the value reached so far.
    """

    def __init__(
        self,
        clock: Callable[[], float],
        value: float = 0.0,
        min_value: float = 0.0,
        max_value: float = 1.0,
    ):
        self._clock = clock
        self.min_value = min_value
        self.max_value = max_value
        self._ramp = _Ramp(self._clamp(value), 0.0, self._clamp(value), 0.0)

    def _clamp(self, value: float) -> float:
        return float(min(self.max_value, max(self.min_value, value)))

    @property
    def value(self) -> float:
        return self.value_at(self._clock())

    @property
    def target(self) -> float:
        return self._ramp.end_value

    def value_at(self, t: float) -> float:
        ramp = self._ramp
        if t >= ramp.end_time:
            return ramp.end_value
        if t <= ramp.start_time:
            return ramp.start_value
        frac = (t - ramp.start_time) / (ramp.end_time - ramp.start_time)
        return ramp.start_value + (ramp.end_value - ramp.start_value) * frac

    def values_for_block(self, start_time: float, frames: int, sample_rate: int) -> np.ndarray:
        """Per-sample values for a block starting at ``start_time``."""
        ramp = self._ramp
        if start_time >= ramp.end_time:
            return np.full(frames, ramp.end_value, dtype=np.float32)
        times = start_time + np.arange(frames, dtype=np.float64) / sample_rate
        values = np.interp(
            times,
            [ramp.start_time, ramp.end_time],
            [ramp.start_value, ramp.end_value],
        )
        return values.astype(np.float32)

    def set_value(self, value: float) -> None:
        """Jump immediately, abandoning any ramp in progress."""
        v = self._clamp(value)
        now = self._clock()
        self._ramp = _Ramp(v, now, v, now)

    def ramp_to(self, target: float, duration: float) -> None:
        if duration <= 0:
            self.set_value(target)
            return
        now = self._clock()
        # Single assignment: the audio thread sees either the old or new ramp
        self._ramp = _Ramp(self.value_at(now), now, self._clamp(target), now + duration)


class AudioEngine:
    """Owns the audio clock and drives the output backend.

    Usage::

        engine = AudioEngine(sample_rate=44100, block_size=1024, output="offline")
        engine.set_renderer(graph.render)
        await engine.start()
        ...
        await engine.close()
    """

    def __init__(
        self,
        sample_rate: int = 44100,
        block_size: int = 1024,
        channels: int = 2,
        output: str = "offline",
        device: Optional[str] = None,
    ):
        if output not in OUTPUT_BACKENDS:
            raise ValueError(f"Unknown output backend {output!r}. Use one of {OUTPUT_BACKENDS}")
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.channels = channels
        self.output = output
        self.device = device
        self._frames_rendered = 0
        self._renderer: Optional[Callable[[int], np.ndarray]] = None
        self._stream = None
        self._pump_task: Optional[asyncio.Task] = None
        self._running = False

    # ── clock ────────────────────────────────────────────────────────────────

    @property
    def current_time(self) -> float:
        """Seconds of audio rendered since the engine was created."""
        return self._frames_rendered / self.sample_rate

    @property
    def is_running(self) -> bool:
        return self._running

    # ── rendering ────────────────────────────────────────────────────────────

    def set_renderer(self, renderer: Optional[Callable[[int], np.ndarray]]) -> None:
        """Register the graph function that produces each output block."""
        self._renderer = renderer

    def render(self, frames: int) -> np.ndarray:
        """Render ``frames`` samples and advance the clock."""
        renderer = self._renderer
        if renderer is None:
            block = np.zeros((frames, self.channels), dtype=np.float32)
        else:
            block = renderer(frames)
        self._frames_rendered += frames
        return block

    # ── lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the output backend.  No-op if already running."""
        if self._running:
            return
        if self.output == "sounddevice":
            self._open_stream()
        elif self.output == "offline":
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())
        self._running = True
        logger.info(
            "Audio engine started: output=%s sr=%d block=%d",
            self.output, self.sample_rate, self.block_size,
        )

    async def close(self) -> None:
        """Stop the output backend.  Safe to call when not running."""
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        self._close_stream()
        if self._running:
            logger.info("Audio engine stopped at t=%.3fs", self.current_time)
        self._running = False

    def close_nowait(self) -> None:
        """Synchronous variant of :meth:`close` for teardown paths."""
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None
        self._close_stream()
        self._running = False

    # ── backends ─────────────────────────────────────────────────────────────

    def _open_stream(self) -> None:
        if sd is None:
            raise AudioEngineError("sounddevice is not available (PortAudio missing?)")

        def callback(outdata, frames, time_info, status):  # noqa: ARG001
            if status:
                logger.debug("Output stream status: %s", status)
            outdata[:] = self.render(frames)

        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                channels=self.channels,
                dtype="float32",
                device=self.device,
                callback=callback,
            )
            self._stream.start()
        except Exception as exc:
            self._stream = None
            raise AudioEngineError(f"Could not open output device {self.device!r}: {exc}") from exc

    def _close_stream(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Closing output stream raised: %s", exc)
        self._stream = None

    async def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        block_seconds = self.block_size / self.sample_rate
        deadline = loop.time()
        while True:
            self.render(self.block_size)
            deadline += block_seconds
            await asyncio.sleep(max(0.0, deadline - loop.time()))


def list_output_devices() -> list:
    """Return ``[{index, name, channels, default_samplerate}]`` for output devices."""
    if sd is None:
        return []
    devices = []
    for index, dev in enumerate(sd.query_devices()):
        if dev.get("max_output_channels", 0) > 0:
            devices.append({
                "index": index,
                "name": dev.get("name", ""),
                "channels": int(dev.get("max_output_channels", 0)),
                "default_samplerate": float(dev.get("default_samplerate", 0.0)),
            })
    return devices
