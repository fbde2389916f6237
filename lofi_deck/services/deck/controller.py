"""DeckController — two-deck crossfade orchestrator.

Owns deck slots A and B, the active-deck flag, the visual stack and the
render loop, and is the only writer of the AudioRoutingGraph.

Crossfades are single-flight: while one is in progress another
``start_crossfade()`` is refused with a warning, so the completion callback
always flips to the deck its own fade was heading for.  ``switch_deck()``
and ``dispose()`` cancel a pending completion.
"""
from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from lofi_deck.services.audio.engine import AudioEngine
from lofi_deck.services.audio.graph import AudioRoutingGraph, SignalPort
from lofi_deck.services.audio.types import AudioSettings, DeckId
from lofi_deck.services.deck.render_loop import RenderLoop
from lofi_deck.services.deck.types import ControllerState, DeckState, VisualSummary
from lofi_deck.services.display.surfaces import Compositor, Surface
from lofi_deck.services.plugins.base import (
    DEFAULT_TRANSPORT,
    SONG_EVENTS,
    PluginContext,
    TransportState,
    capability,
    plugin_name,
)
from lofi_deck.services.plugins.registry import (
    PluginLoadError,
    PluginRegistry,
    PluginResolutionError,
    PluginSource,
)
from lofi_deck.services.shared.events import MessageBus
from lofi_deck.services.shared.logging import get_logger

logger = get_logger("deck.controller")

DeckLike = Union[DeckId, str]


@dataclass
class _Fade:
    target: DeckId
    duration: float
    ends_at: float = 0.0
    handle: Optional[asyncio.TimerHandle] = None


@dataclass
class _VisualSlot:
    plugin: Any
    surface: Surface
    layer: int
    render_failed: bool = False


@dataclass
class _DeckSlot:
    song: Any = None
    port: Optional[SignalPort] = None
    handlers: Dict[str, Callable[[Any], None]] = field(default_factory=dict)


async def _await_if_needed(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


def _fire(result: Any) -> None:
    """Let a plugin's async pause/stop run without blocking the caller."""
    if inspect.isawaitable(result):
        asyncio.ensure_future(result)


class DeckController:
    """Mixes two decks and drives the visual stack.

    Usage::

        controller = DeckController.from_config(get_config())
        controller.initialize()
        await controller.load_song("demo", "A")
        await controller.load_visual("spectrum", layer=0)
        await controller.play()
        await controller.load_song("demo", "B")
        await controller.start_crossfade(4.0)
        ...
        controller.dispose()
    """

    def __init__(
        self,
        registry: PluginRegistry,
        engine: Optional[AudioEngine] = None,
        graph: Optional[AudioRoutingGraph] = None,
        compositor: Optional[Compositor] = None,
        bus: Optional[MessageBus] = None,
        fps: float = 60.0,
        crossfade_seconds: float = 4.0,
    ):
        self.registry = registry
        self.engine = engine or AudioEngine()
        self.graph = graph or AudioRoutingGraph(self.engine)
        self.compositor = compositor or Compositor()
        self.bus = bus or MessageBus()
        self.crossfade_seconds = crossfade_seconds
        self.render_loop = RenderLoop(self._render_tick, fps=fps)

        self.active_deck: DeckId = DeckId.A
        self._decks: Dict[DeckId, _DeckSlot] = {DeckId.A: _DeckSlot(), DeckId.B: _DeckSlot()}
        self._load_locks: Dict[DeckId, asyncio.Lock] = {}
        self._visuals: List[_VisualSlot] = []
        self._fade: Optional[_Fade] = None
        self._initialized = False
        # bumped by dispose(); loads that straddle it are discarded
        self._generation = 0

    @classmethod
    def from_config(cls, config: Any, registry: Optional[PluginRegistry] = None) -> "DeckController":
        """Wire engine, graph, compositor and registry from settings."""
        settings = AudioSettings.from_config(config)
        engine = AudioEngine(
            sample_rate=settings.sample_rate,
            block_size=settings.block_size,
            channels=settings.channels,
            output=settings.output,
            device=settings.device,
        )
        graph = AudioRoutingGraph(
            engine,
            fft_size=settings.fft_size,
            waveform_size=settings.waveform_size,
            smoothing=settings.smoothing,
            min_decibels=settings.min_decibels,
        )
        graph.set_master_level(float(config.get("mixer.master_db", 0.0)))
        if registry is None:
            context = PluginContext(settings.sample_rate, settings.channels, settings.block_size)
            registry = PluginRegistry.from_config(config, context)
        return cls(
            registry=registry,
            engine=engine,
            graph=graph,
            compositor=Compositor(
                int(config.get("display.width", 1280)),
                int(config.get("display.height", 720)),
            ),
            fps=float(config.get("render.fps", 60)),
            crossfade_seconds=float(config.get("mixer.crossfade_seconds", 4.0)),
        )

    # ── lifecycle ────────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Build the routing graph and park the crossfader on deck A.  Idempotent."""
        if self._initialized:
            return
        self.graph.initialize()
        self.graph.set_crossfade_position(self.active_deck.crossfade_extreme)
        self._initialized = True
        logger.info("Deck controller initialized")

    def dispose(self) -> None:
        """Tear everything down.  Safe before ``initialize()`` and when repeated."""
        self.render_loop.stop()
        self._cancel_fade()
        self._generation += 1

        for slot in self._visuals:
            self._dispose_plugin(slot.plugin)
        self._visuals = []
        self.compositor.clear()

        for deck in DeckId:
            slot = self._decks[deck]
            if slot.song is not None:
                self._release_song(deck, slot)

        self.graph.teardown()
        self.engine.close_nowait()
        self.bus.clear()
        self._initialized = False
        logger.info("Deck controller disposed")

    # ── decks ────────────────────────────────────────────────────────────────

    def song_in(self, deck: DeckLike) -> Any:
        return self._decks[DeckId(deck)].song

    @property
    def active_song(self) -> Any:
        return self._decks[self.active_deck].song

    def _lock_for(self, deck: DeckId) -> asyncio.Lock:
        lock = self._load_locks.get(deck)
        if lock is None:
            lock = self._load_locks[deck] = asyncio.Lock()
        return lock

    async def load_song(self, source: PluginSource, deck: DeckLike = DeckId.A) -> Any:
        """Resolve, initialize and deck a song.

        The previous occupant is only released once the new song has
        initialized and subscribed; on failure the deck keeps what it had.
        A load that is still awaiting ``init()`` when ``dispose()`` runs
        disposes its song instead of decking it.

        Raises:
            PluginResolutionError: Unknown song or its factory failed.
            PluginLoadError: The song's ``init()`` or event subscription
                raised, or the controller was disposed mid-load.
        """
        deck = DeckId(deck)
        self.initialize()
        generation = self._generation
        async with self._lock_for(deck):
            logger.info("Loading song into deck %s: %s", deck.value, source)
            try:
                song = self.registry.create_song(source)
            except PluginResolutionError as exc:
                logger.error("Failed to load song into deck %s: %s", deck.value, exc)
                raise

            name = plugin_name(song)
            try:
                await _await_if_needed(song.init())
                port = song.get_master_output()
            except Exception as exc:
                logger.exception("Song '%s' failed to initialize", name)
                self._dispose_plugin(song)
                raise PluginLoadError(f"Song '{name}' failed to initialize: {exc}") from exc

            if generation != self._generation:
                logger.warning("Controller disposed while '%s' was loading; discarding it", name)
                self._dispose_plugin(song)
                raise PluginLoadError(f"Song '{name}' was discarded: controller disposed during load")

            try:
                handlers = self._subscribe(deck, song)
            except Exception as exc:
                logger.exception("Song '%s' rejected event subscription", name)
                self._dispose_plugin(song)
                raise PluginLoadError(f"Song '{name}' failed to subscribe to events: {exc}") from exc

            self._swap_song(deck, song, port, handlers)

        self.bus.emit("songLoaded", {"deck": deck.value, "song": plugin_name(song)})
        logger.info("Song '%s' loaded into deck %s", plugin_name(song), deck.value)
        return song

    def _swap_song(self, deck: DeckId, song: Any, port: SignalPort,
                   handlers: Dict[str, Callable[[Any], None]]) -> None:
        slot = self._decks[deck]
        if slot.song is not None:
            self._release_song(deck, slot)

        self._decks[deck] = _DeckSlot(song=song, port=port, handlers=handlers)
        self.graph.connect_input(port, deck)

    def _subscribe(self, deck: DeckId, song: Any) -> Dict[str, Callable[[Any], None]]:
        on = capability(song, "on")
        if on is None:
            return {}

        def on_section(section: Any) -> None:
            self.bus.emit("sectionChange", {"deck": deck.value, "section": section})
            if deck is not self.active_deck:
                return
            for slot in list(self._visuals):
                hook = capability(slot.plugin, "on_section_change")
                if hook is not None:
                    try:
                        hook(section)
                    except Exception:  # noqa: BLE001
                        logger.exception("on_section_change failed in visual '%s'",
                                         plugin_name(slot.plugin))

        def on_bar(bar: Any) -> None:
            self.bus.emit("bar", {"deck": deck.value, "bar": bar})

        handlers = dict(zip(SONG_EVENTS, (on_section, on_bar)))
        registered: Dict[str, Callable[[Any], None]] = {}
        try:
            for event, handler in handlers.items():
                on(event, handler)
                registered[event] = handler
        except Exception:
            self._unsubscribe(song, registered)
            raise
        return handlers

    @staticmethod
    def _unsubscribe(song: Any, handlers: Dict[str, Callable[[Any], None]]) -> None:
        off = capability(song, "off")
        if off is None:
            return
        for event, handler in handlers.items():
            try:
                off(event, handler)
            except Exception as exc:  # noqa: BLE001
                logger.warning("off('%s') raised in '%s': %s", event, plugin_name(song), exc)

    def _release_song(self, deck: DeckId, slot: _DeckSlot) -> None:
        self._unsubscribe(slot.song, slot.handlers)
        if slot.port is not None:
            self.graph.disconnect_input(slot.port, deck)
        self._dispose_plugin(slot.song)
        self._decks[deck] = _DeckSlot()
        logger.debug("Released song '%s' from deck %s", plugin_name(slot.song), deck.value)

    @staticmethod
    def _dispose_plugin(plugin: Any) -> None:
        dispose = capability(plugin, "dispose")
        if dispose is None:
            return
        try:
            _fire(dispose())
        except Exception as exc:  # noqa: BLE001
            logger.warning("dispose() raised in '%s': %s", plugin_name(plugin), exc)

    # ── visuals ──────────────────────────────────────────────────────────────

    @property
    def visuals(self) -> List[Any]:
        return [slot.plugin for slot in self._visuals]

    def find_visual(self, name: str) -> Any:
        for slot in self._visuals:
            if plugin_name(slot.plugin) == name:
                return slot.plugin
        return None

    def surface_of(self, visual: Any) -> Optional[Surface]:
        for slot in self._visuals:
            if slot.plugin is visual:
                return slot.surface
        return None

    async def load_visual(self, source: PluginSource, layer: int = 0) -> Any:
        """Resolve a visual, give it a viewport-sized surface and stack it.

        Raises:
            PluginResolutionError: Unknown visual or its factory failed.
            PluginLoadError: The visual's ``init()`` raised.
        """
        logger.info("Loading visual: %s (layer %d)", source, layer)
        try:
            visual = self.registry.create_visual(source)
        except PluginResolutionError as exc:
            logger.error("Failed to load visual: %s", exc)
            raise

        name = plugin_name(visual)
        generation = self._generation
        surface = self.compositor.create_surface(layer=layer, owner=name)
        try:
            await _await_if_needed(visual.init(surface))
        except Exception as exc:
            logger.exception("Visual '%s' failed to initialize", name)
            self.compositor.remove_surface(surface)
            self._dispose_plugin(visual)
            raise PluginLoadError(f"Visual '{name}' failed to initialize: {exc}") from exc

        if generation != self._generation:
            logger.warning("Controller disposed while visual '%s' was loading; discarding it", name)
            self.compositor.remove_surface(surface)
            self._dispose_plugin(visual)
            raise PluginLoadError(f"Visual '{name}' was discarded: controller disposed during load")

        self._visuals.append(_VisualSlot(plugin=visual, surface=surface, layer=layer))
        self.bus.emit("visualLoaded", {"name": name, "layer": layer})
        logger.info("Visual '%s' loaded at layer %d", name, layer)
        return visual

    def remove_visual(self, visual: Any) -> bool:
        """Unstack ``visual``, free its surface and dispose it.  False if absent."""
        for slot in self._visuals:
            if slot.plugin is visual:
                self._visuals.remove(slot)
                self.compositor.remove_surface(slot.surface)
                self._dispose_plugin(visual)
                return True
        return False

    def set_visual_option(self, name: str, key: str, value: Any) -> bool:
        visual = self.find_visual(name)
        setter = capability(visual, "set_option") if visual is not None else None
        if setter is None:
            return False
        setter(key, value)
        return True

    def get_visual_options(self, name: str) -> Optional[Dict[str, Any]]:
        visual = self.find_visual(name)
        getter = capability(visual, "get_options") if visual is not None else None
        if getter is None:
            return None
        return dict(getter())

    # ── transport ────────────────────────────────────────────────────────────

    async def play(self) -> None:
        """Start the engine clock, the active song and the render loop."""
        self.initialize()
        await self.engine.start()
        song = self.active_song
        if song is not None:
            await _await_if_needed(song.play())
        self.render_loop.start()
        self.bus.emit("play", {"deck": self.active_deck.value})

    def pause(self) -> None:
        song = self.active_song
        if song is not None:
            _fire(song.pause())
        self.bus.emit("pause", {"deck": self.active_deck.value})

    def stop(self) -> None:
        song = self.active_song
        if song is not None:
            _fire(song.stop())
        self.render_loop.stop()
        self.bus.emit("stop", {"deck": self.active_deck.value})

    def _forward(self, method: str, *args: Any) -> bool:
        song = self.active_song
        if song is None:
            return False
        fn = capability(song, method)
        if fn is None:
            return False
        _fire(fn(*args))
        return True

    def jump_to_section(self, section: str) -> bool:
        return self._forward("jump_to_section", section)

    def mute_track(self, track: str) -> bool:
        return self._forward("mute_track", track)

    def unmute_track(self, track: str) -> bool:
        return self._forward("unmute_track", track)

    def set_tempo(self, bpm: float) -> bool:
        return self._forward("set_tempo", bpm)

    def set_master_level(self, decibels: float) -> None:
        self.graph.set_master_level(decibels)

    # ── crossfade ────────────────────────────────────────────────────────────

    @property
    def crossfade_in_flight(self) -> bool:
        return self._fade is not None

    async def start_crossfade(self, duration: Optional[float] = None) -> bool:
        """Fade from the active deck to the other one.

        Returns False (and logs a warning) when the other deck is empty or a
        fade is already running.  Otherwise the incoming song is started,
        the crossfader ramps over ``duration`` seconds, and after exactly
        ``duration`` seconds the outgoing song is stopped and the active
        deck flips.
        """
        duration = max(0.0, float(self.crossfade_seconds if duration is None else duration))
        if self._fade is not None:
            logger.warning("Crossfade to deck %s already in flight; ignoring request",
                           self._fade.target.value)
            return False

        source = self.active_deck
        target = source.other
        incoming = self._decks[target].song
        if incoming is None:
            logger.warning("No song loaded in deck %s; crossfade skipped", target.value)
            return False

        self.initialize()
        fade = self._fade = _Fade(target=target, duration=duration)
        self.bus.emit("crossfadeStart", {"from": source.value, "to": target.value,
                                         "duration": duration})
        try:
            await _await_if_needed(incoming.play())
        except Exception:
            if self._fade is fade:
                self._fade = None
            raise
        if self._fade is not fade:
            # switch_deck() or dispose() ran while the incoming song started
            return False

        loop = asyncio.get_running_loop()
        self.graph.set_crossfade_position(target.crossfade_extreme, duration)
        fade.ends_at = loop.time() + duration
        fade.handle = loop.call_later(duration, self._complete_crossfade, fade)
        logger.info("Crossfade %s → %s over %.2fs", source.value, target.value, duration)
        return True

    def _complete_crossfade(self, fade: _Fade) -> None:
        if self._fade is not fade:
            return
        self._fade = None
        outgoing = self._decks[fade.target.other].song
        if outgoing is not None:
            try:
                _fire(outgoing.stop())
            except Exception as exc:  # noqa: BLE001
                logger.warning("stop() raised in '%s': %s", plugin_name(outgoing), exc)
        self.graph.set_crossfade_position(fade.target.crossfade_extreme)
        self.active_deck = fade.target
        self.bus.emit("crossfadeComplete", {"activeDeck": fade.target.value})
        logger.info("Crossfade complete; deck %s active", fade.target.value)

    def _cancel_fade(self) -> None:
        fade, self._fade = self._fade, None
        if fade is not None and fade.handle is not None:
            fade.handle.cancel()

    def switch_deck(self) -> None:
        """Cut to the other deck immediately (no ramp, no timer)."""
        if self._fade is not None:
            logger.info("switch_deck() cancels the crossfade in flight")
            self._cancel_fade()
        target = self.active_deck.other
        self.graph.set_crossfade_position(target.crossfade_extreme)
        self.active_deck = target
        self.bus.emit("deckSwitch", {"activeDeck": target.value})

    # ── render loop ──────────────────────────────────────────────────────────

    def current_transport(self) -> TransportState:
        song = self.active_song
        get_state = capability(song, "get_state") if song is not None else None
        if get_state is None:
            return DEFAULT_TRANSPORT
        return get_state() or DEFAULT_TRANSPORT

    def _render_tick(self) -> None:
        analysis = self.graph.read_analysis_snapshot()
        transport = self.current_transport()
        for slot in list(self._visuals):
            try:
                slot.plugin.render(analysis, transport)
            except Exception:  # noqa: BLE001
                # One traceback per visual, not one per frame
                if not slot.render_failed:
                    slot.render_failed = True
                    logger.exception("Visual '%s' failed to render", plugin_name(slot.plugin))

    def composite_frame(self):
        """Flatten every visual surface into one RGBA frame."""
        return self.compositor.composite()

    # ── state ────────────────────────────────────────────────────────────────

    def get_state(self) -> ControllerState:
        decks: Dict[DeckId, Optional[DeckState]] = {}
        for deck in DeckId:
            song = self._decks[deck].song
            if song is None:
                decks[deck] = None
                continue
            get_state = capability(song, "get_state")
            decks[deck] = DeckState(name=plugin_name(song),
                                    state=get_state() if get_state else None)

        active = decks[self.active_deck]
        is_playing = bool(active and active.state and active.state.is_playing)
        return ControllerState(
            active_deck=self.active_deck,
            decks=decks,
            visuals=[VisualSummary(plugin_name(s.plugin), s.layer) for s in self._visuals],
            is_playing=is_playing,
            crossfade_position=self.graph.crossfade_position,
            crossfade_in_flight=self._fade is not None,
        )
