"""Song and visual plugin contracts.

Plugins are duck-typed: the controller only relies on the abstract methods
below.  The optional capabilities (``jump_to_section``, ``mute_track``,
``unmute_track``, ``set_tempo``, ``on``/``off`` for songs;
``on_section_change``, ``set_option``, ``get_options`` for visuals) may be
absent, so every call site looks them up with :func:`capability` first.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from lofi_deck.services.shared.logging import get_logger

if TYPE_CHECKING:
    from lofi_deck.services.audio.graph import SignalPort
    from lofi_deck.services.audio.types import AnalysisSnapshot
    from lofi_deck.services.display.surfaces import Surface

logger = get_logger("plugins")

SONG_EVENTS = ("sectionChange", "bar")


@dataclass(frozen=True)
class TransportState:
    """A song's reported playback position and tempo."""
    section: str = "unknown"
    bar: int = 0
    beat: int = 0
    bpm: float = 75.0
    is_playing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_TRANSPORT = TransportState()


@dataclass(frozen=True)
class PluginContext:
    """Engine facts handed to plugin factories."""
    sample_rate: int = 44100
    channels: int = 2
    block_size: int = 1024


def capability(plugin: Any, name: str) -> Optional[Callable[..., Any]]:
    """Return ``plugin.<name>`` if it is a callable capability, else None."""
    attr = getattr(plugin, name, None)
    return attr if callable(attr) else None


def plugin_name(plugin: Any) -> str:
    return str(getattr(plugin, "name", None) or "unknown")


class SongPlugin(ABC):
    """Abstract base for song plugins (one per deck)."""

    name: str = "unknown"

    @abstractmethod
    async def init(self) -> None:
        """Prepare instruments and buffers.  Awaited before the song is decked."""

    @abstractmethod
    async def play(self) -> None:
        """Start or resume playback."""

    @abstractmethod
    def pause(self) -> None:
        """Pause, keeping the playhead."""

    @abstractmethod
    def stop(self) -> None:
        """Stop and rewind."""

    @abstractmethod
    def get_state(self) -> TransportState:
        """Current section, bar, beat, tempo and playing flag."""

    @abstractmethod
    def get_master_output(self) -> "SignalPort":
        """The port the controller connects to a crossfade input."""

    @abstractmethod
    def dispose(self) -> None:
        """Release audio resources.  Called once when the song leaves its deck."""


class VisualPlugin(ABC):
    """Abstract base for visual plugins."""

    name: str = "unknown"

    @abstractmethod
    def init(self, surface: "Surface") -> None:
        """Bind to the surface this visual will draw into."""

    @abstractmethod
    def render(self, analysis: "AnalysisSnapshot", transport: TransportState) -> None:
        """Draw one frame.  Called every render tick."""

    @abstractmethod
    def dispose(self) -> None:
        """Release anything held besides the surface."""


class SongEvents:
    """Mixin giving a song the optional ``on``/``off`` event surface.

    Events raised from the audio thread are marshalled onto the event loop
    captured by :meth:`bind_loop`.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[[Any], None]]] = defaultdict(list)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def on(self, event: str, handler: Callable[[Any], None]) -> None:
        self._listeners[event].append(handler)

    def off(self, event: str, handler: Callable[[Any], None]) -> None:
        if handler in self._listeners.get(event, ()):
            self._listeners[event].remove(handler)

    def emit(self, event: str, value: Any) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._dispatch, event, value)
        else:
            self._dispatch(event, value)

    def _dispatch(self, event: str, value: Any) -> None:
        for handler in list(self._listeners.get(event, ())):
            try:
                handler(value)
            except Exception:  # noqa: BLE001
                logger.exception("Song event handler failed for '%s'", event)
