"""Tests for DeckController: deck slots, crossfade state machine, visuals, transport."""
import asyncio
import logging

import pytest

from lofi_deck.services.audio.types import DeckId
from lofi_deck.services.deck.controller import DeckController
from lofi_deck.services.plugins.base import DEFAULT_TRANSPORT
from lofi_deck.services.plugins.demo_song import DemoSong
from lofi_deck.services.plugins.registry import PluginLoadError, PluginResolutionError
from lofi_deck.services.shared.config import Config

TOPICS = (
    "songLoaded", "sectionChange", "bar", "play", "pause", "stop",
    "crossfadeStart", "crossfadeComplete", "visualLoaded", "deckSwitch",
)


def record(bus):
    events = []
    for topic in TOPICS:
        bus.on(topic, lambda payload, topic=topic: events.append((topic, payload)))
    return events


def topics(events):
    return [topic for topic, _ in events]


# ═══════════════════════════════════════════════════════════════════════════════
# Initial state and invariants
# ═══════════════════════════════════════════════════════════════════════════════


class TestInitialState:
    def test_starts_on_deck_a(self, controller):
        state = controller.get_state()
        assert state.active_deck is DeckId.A
        assert state.decks == {DeckId.A: None, DeckId.B: None}
        assert state.is_playing is False
        assert state.crossfade_in_flight is False

    def test_initialize_parks_crossfader_at_zero(self, controller):
        controller.initialize()
        assert controller.graph.crossfade_position == 0.0

    def test_initialize_is_idempotent(self, controller):
        controller.initialize()
        controller.graph.set_crossfade_position(0.3)
        controller.initialize()
        assert controller.graph.crossfade_position == pytest.approx(0.3)

    def test_state_to_dict(self, controller):
        body = controller.get_state().to_dict()
        assert body["active_deck"] == "A"
        assert body["decks"] == {"A": None, "B": None}
        assert body["visuals"] == []

    def test_analysis_before_initialize_is_silent(self, controller):
        snapshot = controller.graph.read_analysis_snapshot()
        assert not snapshot.frequency_data.any()
        assert not snapshot.waveform_data.any()


class TestFromConfig:
    def test_builds_from_settings(self, sample_settings):
        ctrl = DeckController.from_config(Config(str(sample_settings)))
        try:
            assert ctrl.engine.output == "null"
            assert ctrl.engine.sample_rate == 8000
            assert ctrl.graph.fft_size == 256
            assert ctrl.graph.master_level == -3.0
            assert ctrl.compositor.viewport == (64, 36)
            assert ctrl.render_loop.fps == 100
            assert ctrl.crossfade_seconds == 0.05
            assert ctrl.registry.song_names() == ["demo"]
            assert ctrl.registry.visual_names() == ["scope", "spectrum"]
        finally:
            ctrl.dispose()


# ═══════════════════════════════════════════════════════════════════════════════
# loadSong
# ═══════════════════════════════════════════════════════════════════════════════


class TestLoadSong:
    def test_load_and_play_demo(self, controller, fake_registry):
        """loadSong('demo', 'A') then play() → playing on deck A."""
        fake_registry.register_song("demo", DemoSong)

        async def scenario():
            await controller.load_song("demo", "A")
            await controller.play()
            state = controller.get_state()
            controller.dispose()
            return state

        state = asyncio.run(scenario())
        assert state.is_playing is True
        assert state.active_deck is DeckId.A
        assert state.decks[DeckId.A].name == "demo"

    def test_emits_song_loaded(self, controller):
        events = record(controller.bus)
        asyncio.run(controller.load_song("fake", "B"))
        assert ("songLoaded", {"deck": "B", "song": "fake"}) in events

    def test_connects_port_to_matching_side(self, controller):
        song = asyncio.run(controller.load_song("fake", DeckId.B))
        assert controller.graph.connected_ports("B") == [song.port]
        assert controller.graph.connected_ports("A") == []

    def test_replacing_song_disposes_previous_once(self, controller):
        async def scenario():
            first = await controller.load_song("fake", "A")
            second = await controller.load_song("other", "A")
            return first, second

        first, second = asyncio.run(scenario())
        assert first.calls["dispose"] == 1
        assert second.calls["dispose"] == 0
        assert controller.song_in("A") is second
        assert controller.graph.connected_ports("A") == [second.port]

    def test_replacing_song_unsubscribes_previous(self, controller):
        async def scenario():
            first = await controller.load_song("fake", "A")
            await controller.load_song("other", "A")
            return first

        first = asyncio.run(scenario())
        assert first.listeners["sectionChange"] == []
        assert first.listeners["bar"] == []

    def test_unknown_song_leaves_deck_untouched(self, controller):
        async def scenario():
            first = await controller.load_song("fake", "A")
            with pytest.raises(PluginResolutionError):
                await controller.load_song("nope", "A")
            return first

        first = asyncio.run(scenario())
        assert controller.song_in("A") is first
        assert first.calls["dispose"] == 0

    def test_failed_init_leaves_deck_untouched(self, controller):
        async def scenario():
            first = await controller.load_song("fake", "A")
            with pytest.raises(PluginLoadError) as excinfo:
                await controller.load_song("failing", "A")
            return first, excinfo.value

        first, error = asyncio.run(scenario())
        assert controller.song_in("A") is first
        assert first.calls["dispose"] == 0
        assert isinstance(error.__cause__, RuntimeError)
        assert controller.graph.connected_ports("A") == [first.port]

    def test_failed_init_disposes_new_song(self, controller, fake_registry):
        song = fake_registry.create_song("failing")
        with pytest.raises(PluginLoadError):
            asyncio.run(controller.load_song(lambda ctx: song, "A"))
        assert song.calls["dispose"] == 1
        assert controller.song_in("A") is None

    def test_failed_subscription_leaves_deck_untouched(self, controller, fake_registry):
        broken = fake_registry.create_song("broken_events")

        async def scenario():
            first = await controller.load_song("fake", "A")
            with pytest.raises(PluginLoadError) as excinfo:
                await controller.load_song(lambda ctx: broken, "A")
            return first, excinfo.value

        first, error = asyncio.run(scenario())
        assert controller.song_in("A") is first
        assert first.calls["dispose"] == 0
        assert controller.graph.connected_ports("A") == [first.port]
        assert isinstance(error.__cause__, RuntimeError)
        assert broken.calls["dispose"] == 1
        assert broken.listeners["sectionChange"] == []

    def test_factory_callable_accepted(self, controller, fake_registry):
        minimal = fake_registry.create_song("minimal")
        song = asyncio.run(controller.load_song(lambda ctx: minimal, "A"))
        assert song is minimal
        assert controller.song_in("A") is minimal

    def test_concurrent_loads_into_same_deck_are_serialized(self, controller):
        async def scenario():
            return await asyncio.gather(
                controller.load_song("fake", "A"),
                controller.load_song("other", "A"),
            )

        first, second = asyncio.run(scenario())
        assert first.calls["dispose"] == 1
        assert controller.song_in("A") is second
        assert controller.graph.connected_ports("A") == [second.port]


# ═══════════════════════════════════════════════════════════════════════════════
# Song events relayed onto the bus
# ═══════════════════════════════════════════════════════════════════════════════


class TestSongEvents:
    def test_section_change_reaches_bus_and_visuals(self, controller):
        async def scenario():
            song = await controller.load_song("fake", "A")
            visual = await controller.load_visual("v1", 0)
            return song, visual

        song, visual = asyncio.run(scenario())
        events = record(controller.bus)
        song.fire("sectionChange", "verse")
        assert ("sectionChange", {"deck": "A", "section": "verse"}) in events
        assert visual.sections == ["verse"]

    def test_inactive_deck_section_change_not_forwarded_to_visuals(self, controller):
        async def scenario():
            await controller.load_song("fake", "A")
            inactive = await controller.load_song("other", "B")
            visual = await controller.load_visual("v1", 0)
            return inactive, visual

        inactive, visual = asyncio.run(scenario())
        events = record(controller.bus)
        inactive.fire("sectionChange", "chorus")
        assert ("sectionChange", {"deck": "B", "section": "chorus"}) in events
        assert visual.sections == []

    def test_bar_relayed(self, controller):
        song = asyncio.run(controller.load_song("fake", "B"))
        events = record(controller.bus)
        song.fire("bar", 12)
        assert events == [("bar", {"deck": "B", "bar": 12})]

    def test_song_without_event_surface_loads(self, controller):
        song = asyncio.run(controller.load_song("minimal", "A"))
        assert controller.song_in("A") is song


# ═══════════════════════════════════════════════════════════════════════════════
# Crossfade
# ═══════════════════════════════════════════════════════════════════════════════


class TestCrossfade:
    def test_crossfade_flips_deck_after_duration(self, controller):
        """Songs in both decks, startCrossfade → event now, flip after duration."""
        events = record(controller.bus)

        async def scenario():
            a = await controller.load_song("fake", "A")
            b = await controller.load_song("other", "B")
            started = await controller.start_crossfade(0.05)
            during = (controller.active_deck, controller.crossfade_in_flight, list(events))
            await asyncio.sleep(0.2)
            return a, b, started, during

        a, b, started, during = asyncio.run(scenario())
        active_during, in_flight_during, events_during = during

        assert started is True
        assert active_during is DeckId.A
        assert in_flight_during is True
        assert ("crossfadeStart", {"from": "A", "to": "B", "duration": 0.05}) in events_during
        assert b.calls["play"] == 1

        assert controller.active_deck is DeckId.B
        assert controller.crossfade_in_flight is False
        assert a.calls["stop"] == 1
        assert b.calls["stop"] == 0
        assert ("crossfadeComplete", {"activeDeck": "B"}) in events
        assert controller.graph.crossfade_position == 1.0

    def test_crossfade_back_to_a(self, controller):
        async def scenario():
            await controller.load_song("fake", "A")
            await controller.load_song("other", "B")
            await controller.start_crossfade(0.01)
            await asyncio.sleep(0.05)
            await controller.start_crossfade(0.01)
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        assert controller.active_deck is DeckId.A
        assert controller.graph.crossfade_position == 0.0

    def test_default_duration_from_settings(self, controller):
        events = record(controller.bus)

        async def scenario():
            await controller.load_song("fake", "A")
            await controller.load_song("other", "B")
            await controller.start_crossfade()
            await asyncio.sleep(0.15)

        asyncio.run(scenario())
        assert ("crossfadeStart", {"from": "A", "to": "B", "duration": 0.05}) in events
        assert controller.active_deck is DeckId.B

    def test_empty_target_deck_is_a_warning_noop(self, controller, caplog):
        events = record(controller.bus)

        async def scenario():
            await controller.load_song("fake", "A")
            with caplog.at_level(logging.WARNING, logger="lofi_deck"):
                return await controller.start_crossfade(0.01)

        assert asyncio.run(scenario()) is False
        assert controller.active_deck is DeckId.A
        assert "crossfadeStart" not in topics(events)
        assert any("crossfade skipped" in r.getMessage() for r in caplog.records)

    def test_second_crossfade_in_flight_is_refused(self, controller):
        events = record(controller.bus)

        async def scenario():
            await controller.load_song("fake", "A")
            await controller.load_song("other", "B")
            first = await controller.start_crossfade(0.05)
            second = await controller.start_crossfade(0.01)
            await asyncio.sleep(0.2)
            return first, second

        first, second = asyncio.run(scenario())
        assert (first, second) == (True, False)
        assert controller.active_deck is DeckId.B
        assert topics(events).count("crossfadeStart") == 1
        assert topics(events).count("crossfadeComplete") == 1

    def test_ramp_runs_on_engine_clock(self, controller):
        async def scenario():
            await controller.load_song("fake", "A")
            await controller.load_song("other", "B")
            await controller.start_crossfade(1.0)
            controller.engine.render(4000)   # 0.5 s at 8 kHz
            position = controller.graph.crossfade_position
            controller.dispose()
            return position

        assert asyncio.run(scenario()) == pytest.approx(0.5, abs=1e-6)

    def test_position_always_in_unit_range(self, controller):
        controller.initialize()
        for target in (-2.0, 0.4, 7.0):
            controller.graph.set_crossfade_position(target)
            assert 0.0 <= controller.graph.crossfade_position <= 1.0


class TestSwitchDeck:
    def test_switch_is_immediate(self, controller):
        events = record(controller.bus)
        controller.switch_deck()
        assert controller.active_deck is DeckId.B
        assert controller.graph.crossfade_position == 1.0
        assert events == [("deckSwitch", {"activeDeck": "B"})]

    def test_switch_twice_returns_to_a(self, controller):
        controller.switch_deck()
        controller.switch_deck()
        assert controller.active_deck is DeckId.A
        assert controller.graph.crossfade_position == 0.0

    def test_switch_cancels_crossfade_in_flight(self, controller):
        events = record(controller.bus)

        async def scenario():
            a = await controller.load_song("fake", "A")
            await controller.load_song("other", "B")
            await controller.start_crossfade(0.05)
            controller.switch_deck()
            await asyncio.sleep(0.15)
            return a

        a = asyncio.run(scenario())
        assert controller.active_deck is DeckId.B
        assert controller.crossfade_in_flight is False
        assert "crossfadeComplete" not in topics(events)
        assert a.calls["stop"] == 0


# ═══════════════════════════════════════════════════════════════════════════════
# Visuals
# ═══════════════════════════════════════════════════════════════════════════════


class TestVisuals:
    def test_load_visual_gets_viewport_surface(self, controller):
        events = record(controller.bus)
        visual = asyncio.run(controller.load_visual("v1", 2))
        surface = controller.surface_of(visual)
        assert visual.surface is surface
        assert (surface.width, surface.height, surface.layer) == (64, 36, 2)
        assert controller.compositor.surfaces == [surface]
        assert events == [("visualLoaded", {"name": "v1", "layer": 2})]

    def test_visuals_kept_in_load_order(self, controller):
        async def scenario():
            await controller.load_visual("v2", 5)
            await controller.load_visual("v1", 0)

        asyncio.run(scenario())
        assert [v.name for v in controller.visuals] == ["v2", "v1"]
        assert [s.owner for s in controller.compositor.surfaces] == ["v1", "v2"]

    def test_dispose_right_after_load_visual(self, controller):
        visual = asyncio.run(controller.load_visual("v1", 0))
        surface = controller.surface_of(visual)
        controller.dispose()
        assert visual.disposed == 1
        assert surface.released is True
        assert controller.compositor.surfaces == []
        assert controller.visuals == []

    def test_remove_visual_twice(self, controller):
        visual = asyncio.run(controller.load_visual("v1", 0))
        surface = controller.surface_of(visual)
        assert controller.remove_visual(visual) is True
        assert controller.remove_visual(visual) is False
        assert visual.disposed == 1
        assert surface.released is True

    def test_remove_unknown_visual_is_noop(self, controller):
        assert controller.remove_visual(object()) is False

    def test_failed_visual_not_added(self, controller):
        with pytest.raises(PluginLoadError):
            asyncio.run(controller.load_visual("failing", 0))
        assert controller.visuals == []
        assert controller.compositor.surfaces == []

    def test_unknown_visual_raises(self, controller):
        with pytest.raises(PluginResolutionError):
            asyncio.run(controller.load_visual("nope", 0))
        assert controller.compositor.surfaces == []

    def test_visual_options(self, controller):
        asyncio.run(controller.load_visual("v1", 0))
        assert controller.set_visual_option("v1", "speed", 2.5) is True
        assert controller.get_visual_options("v1") == {"speed": 2.5}

    def test_visual_options_missing_capability(self, controller):
        asyncio.run(controller.load_visual("bare", 0))
        assert controller.set_visual_option("bare", "speed", 2) is False
        assert controller.get_visual_options("bare") is None
        assert controller.get_visual_options("absent") is None


# ═══════════════════════════════════════════════════════════════════════════════
# Transport
# ═══════════════════════════════════════════════════════════════════════════════


class TestTransport:
    def test_play_with_empty_deck_still_starts_loop(self, controller):
        events = record(controller.bus)

        async def scenario():
            await controller.play()
            running = controller.render_loop.is_running, controller.engine.is_running
            controller.stop()
            return running

        assert asyncio.run(scenario()) == (True, True)
        assert topics(events) == ["play", "stop"]

    def test_pause_and_stop_forward_to_active_song(self, controller):
        events = record(controller.bus)

        async def scenario():
            a = await controller.load_song("fake", "A")
            b = await controller.load_song("other", "B")
            await controller.play()
            controller.pause()
            controller.stop()
            return a, b

        a, b = asyncio.run(scenario())
        assert (a.calls["play"], a.calls["pause"], a.calls["stop"]) == (1, 1, 1)
        assert (b.calls["play"], b.calls["pause"], b.calls["stop"]) == (0, 0, 0)
        assert controller.render_loop.is_running is False
        assert controller.render_loop.has_pending_frame is False
        assert ("pause", {"deck": "A"}) in events
        assert ("stop", {"deck": "A"}) in events

    def test_mute_with_empty_deck_does_not_raise(self, controller):
        assert controller.mute_track("drums") is False

    def test_delegation_with_missing_capabilities(self, controller):
        asyncio.run(controller.load_song("minimal", "A"))
        assert controller.mute_track("drums") is False
        assert controller.unmute_track("drums") is False
        assert controller.jump_to_section("verse") is False
        assert controller.set_tempo(90) is False

    def test_delegation_reaches_active_song_only(self, controller):
        async def scenario():
            a = await controller.load_song("fake", "A")
            b = await controller.load_song("other", "B")
            return a, b

        a, b = asyncio.run(scenario())
        assert controller.mute_track("drums") is True
        assert controller.jump_to_section("chorus") is True
        assert controller.set_tempo(90.0) is True
        assert a.muted == {"drums"}
        assert a.jumped_to == ["chorus"]
        assert a.tempo == 90.0
        assert b.muted == set()
        assert controller.unmute_track("drums") is True
        assert a.muted == set()

    def test_master_level(self, controller):
        controller.set_master_level(-12.0)
        assert controller.graph.master_level == -12.0


# ═══════════════════════════════════════════════════════════════════════════════
# State and render loop
# ═══════════════════════════════════════════════════════════════════════════════


class TestStateAndRendering:
    def test_state_reports_decks_and_visuals(self, controller):
        async def scenario():
            await controller.load_song("fake", "A")
            await controller.load_song("minimal", "B")
            await controller.load_visual("v1", 1)

        asyncio.run(scenario())
        state = controller.get_state()
        assert state.decks[DeckId.A].name == "fake"
        assert state.decks[DeckId.A].state.section == "intro"
        assert state.decks[DeckId.B].name == "minimal"
        assert state.decks[DeckId.B].state is None
        assert [(v.name, v.layer) for v in state.visuals] == [("v1", 1)]

    def test_is_playing_defaults_false_without_transport(self, controller):
        async def scenario():
            await controller.load_song("minimal", "A")
            await controller.play()
            state = controller.get_state()
            controller.stop()
            return state

        assert asyncio.run(scenario()).is_playing is False

    def test_render_tick_passes_snapshot_and_transport(self, controller):
        async def scenario():
            await controller.load_song("fake", "A")
            visual = await controller.load_visual("v1", 0)
            await controller.play()
            await asyncio.sleep(0.05)
            controller.stop()
            return visual

        visual = asyncio.run(scenario())
        assert len(visual.frames) >= 2
        analysis, transport = visual.frames[-1]
        assert analysis.frequency_data.shape == (256,)
        assert analysis.waveform_data.shape == (128,)
        assert transport.section == "intro"
        assert transport.is_playing is True

    def test_transport_fallback_without_song(self, controller):
        assert controller.current_transport() == DEFAULT_TRANSPORT
        assert DEFAULT_TRANSPORT.section == "unknown"
        assert DEFAULT_TRANSPORT.bpm == 75.0

    def test_failing_visual_does_not_stop_others(self, controller, caplog):
        async def scenario():
            await controller.load_visual("broken", 0)
            return await controller.load_visual("v1", 1)

        good = asyncio.run(scenario())
        with caplog.at_level(logging.ERROR, logger="lofi_deck"):
            controller._render_tick()
            controller._render_tick()
        assert len(good.frames) == 2
        failures = [r for r in caplog.records if "failed to render" in r.getMessage()]
        assert len(failures) == 1

    def test_composite_frame_shape(self, controller):
        asyncio.run(controller.load_visual("v1", 0))
        frame = controller.composite_frame()
        assert frame.shape == (36, 64, 4)


# ═══════════════════════════════════════════════════════════════════════════════
# dispose
# ═══════════════════════════════════════════════════════════════════════════════


class TestDispose:
    def test_dispose_before_initialize(self, controller):
        controller.dispose()
        assert controller.get_state().active_deck is DeckId.A

    def test_dispose_twice(self, controller):
        asyncio.run(controller.load_song("fake", "A"))
        controller.dispose()
        controller.dispose()

    def test_dispose_releases_everything(self, controller):
        async def scenario():
            a = await controller.load_song("fake", "A")
            b = await controller.load_song("other", "B")
            await controller.play()
            await controller.start_crossfade(10.0)
            controller.dispose()
            return a, b

        controller.bus.on("crossfadeComplete", lambda payload: None)
        a, b = asyncio.run(scenario())
        assert a.calls["dispose"] == 1
        assert b.calls["dispose"] == 1
        assert controller.song_in("A") is None
        assert controller.song_in("B") is None
        assert controller.crossfade_in_flight is False
        assert controller.render_loop.has_pending_frame is False
        assert controller.bus.subscriber_count("crossfadeComplete") == 0
        assert controller.graph.is_initialized is False

    def test_dispose_during_song_init_discards_song(self, controller, fake_registry):
        slow = fake_registry.create_song("slow")

        async def scenario():
            task = asyncio.ensure_future(controller.load_song(lambda ctx: slow, "A"))
            await asyncio.sleep(0.01)
            controller.dispose()
            with pytest.raises(PluginLoadError):
                await task

        asyncio.run(scenario())
        assert slow.calls["init"] == 1
        assert slow.calls["dispose"] == 1
        assert controller.song_in("A") is None
        controller.initialize()
        assert controller.graph.connected_ports("A") == []

    def test_dispose_during_visual_init_discards_visual(self, controller, fake_registry):
        slow = fake_registry.create_visual("slow")

        async def scenario():
            task = asyncio.ensure_future(controller.load_visual(lambda ctx: slow, 0))
            await asyncio.sleep(0.01)
            controller.dispose()
            with pytest.raises(PluginLoadError):
                await task

        asyncio.run(scenario())
        assert slow.disposed == 1
        assert controller.visuals == []
        assert controller.compositor.surfaces == []

    def test_dispose_clears_compositor(self, controller):
        overlay = controller.compositor.create_surface(layer=5, owner="overlay")
        asyncio.run(controller.load_visual("v1", 0))
        controller.dispose()
        assert overlay.released is True
        assert controller.compositor.surfaces == []

    def test_load_after_dispose_works(self, controller):
        controller.dispose()
        song = asyncio.run(controller.load_song("fake", "A"))
        assert controller.song_in("A") is song
        assert controller.graph.connected_ports("A") == [song.port]

    def test_render_failure_logged_again_after_dispose(self, controller, caplog):
        with caplog.at_level(logging.ERROR, logger="lofi_deck"):
            asyncio.run(controller.load_visual("broken", 0))
            controller._render_tick()
            controller.dispose()
            asyncio.run(controller.load_visual("broken", 0))
            controller._render_tick()
            controller._render_tick()
        failures = [r for r in caplog.records if "failed to render" in r.getMessage()]
        assert len(failures) == 2

    def test_analysis_after_dispose_is_silent(self, controller):
        async def scenario():
            await controller.load_song("fake", "A")
            await controller.play()
            controller.engine.render(512)
            controller.dispose()

        asyncio.run(scenario())
        snapshot = controller.graph.read_analysis_snapshot()
        assert not snapshot.waveform_data.any()
