"""Built-in visuals: a bar spectrum and a waveform scope."""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

from lofi_deck.services.audio.types import AnalysisSnapshot
from lofi_deck.services.display.surfaces import Surface
from lofi_deck.services.plugins.base import PluginContext, TransportState, VisualPlugin
from lofi_deck.services.shared.logging import get_logger

logger = get_logger("plugins.visuals")

# Tint per arrangement section
SECTION_COLORS: Dict[str, Tuple[int, int, int]] = {
    "intro": (120, 160, 255),
    "verse": (255, 170, 120),
    "chorus": (255, 110, 170),
    "outro": (150, 230, 180),
}
_DEFAULT_COLOR = (200, 200, 220)


def _set_checked(options: Dict[str, Any], key: str, value: Any,
                 valid: Callable[[Any], bool]) -> None:
    """Coerce ``value`` to the option's current type and store it if ``valid``.

    Raises:
        ValueError: The value cannot be coerced or is out of range.
    """
    kind = type(options[key])
    try:
        coerced = kind(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Option '{key}' expects {kind.__name__}, got {value!r}") from exc
    if not valid(coerced):
        raise ValueError(f"Option '{key}' out of range: {coerced!r}")
    options[key] = coerced


class SpectrumVisual(VisualPlugin):
    """Vertical bars, one per frequency band, height from dB magnitude.

    Options:
        bars: number of bands (default 48)
        floor_db: magnitude drawn as zero height, below 0 dB (default -100)
        alpha: bar opacity 0-255 (default 220)
    """

    name = "spectrum"
    _LIMITS = {
        "bars": lambda v: v >= 1,
        "floor_db": lambda v: v < 0,
        "alpha": lambda v: 0 <= v <= 255,
    }

    def __init__(self, context: PluginContext = PluginContext()):
        self._surface: Optional[Surface] = None
        self._color = _DEFAULT_COLOR
        self._options: Dict[str, Any] = {"bars": 48, "floor_db": -100.0, "alpha": 220}

    def init(self, surface: Surface) -> None:
        self._surface = surface

    def render(self, analysis: AnalysisSnapshot, transport: TransportState) -> None:
        surface = self._surface
        if surface is None or surface.released or surface.width == 0:
            return
        bars = max(1, int(self._options["bars"]))
        floor_db = float(self._options["floor_db"])

        # Log-spaced bands so the low end is not squeezed into one bar
        freq = analysis.frequency_data
        edges = np.unique(np.geomspace(1, len(freq), bars + 1).astype(int))
        levels = np.array([freq[a:b].max() for a, b in zip(edges[:-1], edges[1:])])
        norm = np.clip((levels - floor_db) / -floor_db, 0.0, 1.0)

        columns = np.minimum((np.arange(surface.width) * len(norm)) // surface.width, len(norm) - 1)
        heights = (norm[columns] * surface.height).astype(int)
        rows = np.arange(surface.height)[:, None]
        mask = rows >= (surface.height - heights)[None, :]

        surface.clear()
        surface.pixels[mask] = (*self._color, int(self._options["alpha"]))

    def on_section_change(self, section: str) -> None:
        self._color = SECTION_COLORS.get(section, _DEFAULT_COLOR)

    def set_option(self, key: str, value: Any) -> None:
        if key not in self._options:
            logger.warning("Spectrum has no option '%s'", key)
            return
        _set_checked(self._options, key, value, self._LIMITS[key])

    def get_options(self) -> Dict[str, Any]:
        return dict(self._options)

    def dispose(self) -> None:
        self._surface = None


class ScopeVisual(VisualPlugin):
    """Oscilloscope trace of the mixed waveform."""

    name = "scope"
    _LIMITS = {
        "thickness": lambda v: v >= 1,
        "gain": lambda v: v >= 0,
    }

    def __init__(self, context: PluginContext = PluginContext()):
        self._surface: Optional[Surface] = None
        self._options: Dict[str, Any] = {"thickness": 2, "gain": 1.0}

    def init(self, surface: Surface) -> None:
        self._surface = surface

    def render(self, analysis: AnalysisSnapshot, transport: TransportState) -> None:
        surface = self._surface
        if surface is None or surface.released or surface.width == 0:
            return
        wave = analysis.waveform_data
        xs = np.arange(surface.width)
        samples = wave[(xs * len(wave)) // surface.width] * float(self._options["gain"])
        ys = ((1.0 - np.clip(samples, -1.0, 1.0)) * 0.5 * (surface.height - 1)).astype(int)

        surface.clear()
        # brighter on the downbeat
        shade = 255 if transport.beat == 0 and transport.is_playing else 190
        for dy in range(int(self._options["thickness"])):
            surface.pixels[np.clip(ys + dy, 0, surface.height - 1), xs] = (shade, shade, shade, 255)

    def set_option(self, key: str, value: Any) -> None:
        if key in self._options:
            _set_checked(self._options, key, value, self._LIMITS[key])

    def get_options(self) -> Dict[str, Any]:
        return dict(self._options)

    def dispose(self) -> None:
        self._surface = None
