"""Shared test fixtures for Lofi Deck."""
import asyncio
import shutil
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Generator

import numpy as np
import pytest
import yaml

from lofi_deck.services.audio.engine import AudioEngine
from lofi_deck.services.audio.graph import AudioRoutingGraph, SignalPort
from lofi_deck.services.deck.controller import DeckController
from lofi_deck.services.display.surfaces import Compositor
from lofi_deck.services.plugins.base import PluginContext, TransportState
from lofi_deck.services.plugins.registry import PluginRegistry


@pytest.fixture(scope="session")
def project_root() -> Path:
    return Path(__file__).parent.parent.parent


@pytest.fixture
def tmp_dir() -> Generator[Path, None, None]:
    d = Path(tempfile.mkdtemp())
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def sample_settings(tmp_dir: Path) -> Path:
    """Write a minimal settings.yaml to a temp dir and return its path."""
    settings = {
        "audio": {
            "sample_rate": 8000,
            "block_size": 256,
            "channels": 2,
            "output": "null",
            "device": None,
        },
        "analysis": {"fft_size": 256, "waveform_size": 128, "smoothing": 0.5, "min_decibels": -90.0},
        "mixer": {"master_db": -3.0, "crossfade_seconds": 0.05},
        "render": {"fps": 100},
        "display": {"width": 64, "height": 36},
        "plugins": {
            "songs": {"demo": "lofi_deck.services.plugins.demo_song:DemoSong"},
            "visuals": {
                "spectrum": "lofi_deck.services.plugins.visuals:SpectrumVisual",
                "scope": "lofi_deck.services.plugins.visuals:ScopeVisual",
            },
        },
        "startup": {
            "song": "demo",
            "deck": "A",
            "visuals": [{"name": "spectrum", "layer": 0}],
            "autoplay": False,
        },
        "logging": {"level": "DEBUG", "file": str(tmp_dir / "test.log")},
    }
    cfg_path = tmp_dir / "settings.yaml"
    cfg_path.write_text(yaml.dump(settings))
    return cfg_path


# ─────────────────────────────────────────────────────────────────────────────
# Fake plugins
# ─────────────────────────────────────────────────────────────────────────────


class FakeSong:
    """Song recording every call; implements all optional capabilities."""

    def __init__(self, context: PluginContext = PluginContext(), name: str = "fake", level: float = 0.5):
        self.name = name
        self.calls = defaultdict(int)
        self.playing = False
        self.section = "intro"
        self.tempo = 75.0
        self.muted = set()
        self.jumped_to = []
        self.listeners = defaultdict(list)
        self.port = SignalPort(lambda frames: np.full(frames, level, dtype=np.float32), channels=context.channels)

    async def init(self):
        self.calls["init"] += 1

    async def play(self):
        self.calls["play"] += 1
        self.playing = True

    def pause(self):
        self.calls["pause"] += 1
        self.playing = False

    def stop(self):
        self.calls["stop"] += 1
        self.playing = False

    def get_state(self):
        return TransportState(section=self.section, bar=3, beat=1, bpm=self.tempo, is_playing=self.playing)

    def get_master_output(self):
        return self.port

    def dispose(self):
        self.calls["dispose"] += 1

    def jump_to_section(self, name):
        self.jumped_to.append(name)

    def mute_track(self, name):
        self.muted.add(name)

    def unmute_track(self, name):
        self.muted.discard(name)

    def set_tempo(self, bpm):
        self.tempo = bpm

    def on(self, event, handler):
        self.listeners[event].append(handler)

    def off(self, event, handler):
        self.listeners[event].remove(handler)

    def fire(self, event, value):
        for handler in list(self.listeners[event]):
            handler(value)


class MinimalSong:
    """Only the required song methods, all synchronous."""

    name = "minimal"

    def __init__(self, context: PluginContext = PluginContext()):
        self.disposed = 0
        self.port = SignalPort(lambda frames: np.zeros(frames, dtype=np.float32))

    def init(self):
        pass

    def play(self):
        pass

    def pause(self):
        pass

    def stop(self):
        pass

    def get_state(self):
        return None

    def get_master_output(self):
        return self.port

    def dispose(self):
        self.disposed += 1


class FailingSong(FakeSong):
    async def init(self):
        self.calls["init"] += 1
        raise RuntimeError("instrument samples missing")


class EventSurfaceBrokenSong(FakeSong):
    """Accepts the first event subscription, then rejects the next one."""

    def on(self, event, handler):
        if self.listeners:
            raise RuntimeError("event surface broken")
        super().on(event, handler)


class SlowSong(FakeSong):
    async def init(self):
        self.calls["init"] += 1
        await asyncio.sleep(0.05)


class FakeVisual:
    """Visual recording render calls, section changes and options."""

    def __init__(self, context: PluginContext = PluginContext(), name: str = "v1"):
        self.name = name
        self.surface = None
        self.frames = []
        self.sections = []
        self.disposed = 0
        self.options = {"speed": 1.0}

    def init(self, surface):
        self.surface = surface

    def render(self, analysis, transport):
        self.frames.append((analysis, transport))

    def dispose(self):
        self.disposed += 1

    def on_section_change(self, section):
        self.sections.append(section)

    def set_option(self, key, value):
        self.options[key] = value

    def get_options(self):
        return dict(self.options)


class BareVisual:
    name = "bare"

    def __init__(self, context: PluginContext = PluginContext()):
        self.disposed = 0

    def init(self, surface):
        pass

    def render(self, analysis, transport):
        pass

    def dispose(self):
        self.disposed += 1


class FailingVisual(FakeVisual):
    def init(self, surface):
        raise RuntimeError("shader compile failed")


class BrokenRenderVisual(FakeVisual):
    def render(self, analysis, transport):
        raise ValueError("bad frame")


class SlowVisual(FakeVisual):
    async def init(self, surface):
        await asyncio.sleep(0.05)
        self.surface = surface


@pytest.fixture
def fake_registry() -> PluginRegistry:
    registry = PluginRegistry(PluginContext(sample_rate=8000, channels=2, block_size=256))
    registry.register_song("fake", FakeSong)
    registry.register_song("other", lambda ctx: FakeSong(ctx, name="other"))
    registry.register_song("minimal", MinimalSong)
    registry.register_song("failing", FailingSong)
    registry.register_song("broken_events", EventSurfaceBrokenSong)
    registry.register_song("slow", SlowSong)
    registry.register_visual("v1", FakeVisual)
    registry.register_visual("v2", lambda ctx: FakeVisual(ctx, name="v2"))
    registry.register_visual("bare", BareVisual)
    registry.register_visual("failing", FailingVisual)
    registry.register_visual("broken", BrokenRenderVisual)
    registry.register_visual("slow", SlowVisual)
    return registry


@pytest.fixture
def make_deck(fake_registry):
    """Build DeckControllers on a null-output engine (clock advances only on render())."""
    created = []

    def _make(**kwargs) -> DeckController:
        engine = AudioEngine(sample_rate=8000, block_size=256, output="null")
        graph = AudioRoutingGraph(engine, fft_size=256, waveform_size=128)
        kwargs.setdefault("fps", 100.0)
        kwargs.setdefault("crossfade_seconds", 0.05)
        ctrl = DeckController(fake_registry, engine=engine, graph=graph,
                              compositor=Compositor(64, 36), **kwargs)
        created.append(ctrl)
        return ctrl

    yield _make
    for ctrl in created:
        ctrl.dispose()


@pytest.fixture
def controller(make_deck) -> DeckController:
    return make_deck()
