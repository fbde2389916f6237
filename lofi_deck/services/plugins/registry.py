"""Plugin registry — name → factory for songs and visuals.

Factories are resolved once at startup (``from_config``) so the controller
never imports modules by path at load time.  A factory is any callable
taking a :class:`PluginContext` and returning a plugin instance.
"""
from __future__ import annotations

import importlib
from typing import Any, Callable, Dict, List, Union

from lofi_deck.services.plugins.base import PluginContext
from lofi_deck.services.shared.logging import get_logger

logger = get_logger("plugins.registry")

PluginFactory = Callable[[PluginContext], Any]
PluginSource = Union[str, PluginFactory]


class PluginResolutionError(Exception):
    """A requested plugin is unknown or its factory failed."""


class PluginLoadError(Exception):
    """A plugin was built but its ``init()`` failed."""


def load_factory(target: str) -> PluginFactory:
    """Import ``"package.module:attr"`` and return the attribute.

    Raises:
        PluginResolutionError: If the string is malformed or the import fails.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise PluginResolutionError(f"Factory must look like 'module:attr', got {target!r}")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise PluginResolutionError(f"Cannot import factory {target!r}: {exc}") from exc
    if not callable(factory):
        raise PluginResolutionError(f"Factory {target!r} is not callable")
    return factory


class PluginRegistry:
    """Registered song and visual factories.

    Usage::

        reg = PluginRegistry.from_config(config, PluginContext(sample_rate=44100))
        reg.register_song("my_song", MySong)
        song = reg.create_song("my_song")
    """

    def __init__(self, context: PluginContext = PluginContext()):
        self.context = context
        self._songs: Dict[str, PluginFactory] = {}
        self._visuals: Dict[str, PluginFactory] = {}

    # ── registration ──────────────────────────────────────────────────────────

    def register_song(self, name: str, factory: PluginFactory) -> None:
        if name in self._songs:
            logger.info("Replacing song factory '%s'", name)
        self._songs[name] = factory

    def register_visual(self, name: str, factory: PluginFactory) -> None:
        if name in self._visuals:
            logger.info("Replacing visual factory '%s'", name)
        self._visuals[name] = factory

    def song_names(self) -> List[str]:
        return sorted(self._songs)

    def visual_names(self) -> List[str]:
        return sorted(self._visuals)

    # ── resolution ────────────────────────────────────────────────────────────

    def create_song(self, source: PluginSource) -> Any:
        return self._create(source, self._songs, "song")

    def create_visual(self, source: PluginSource) -> Any:
        return self._create(source, self._visuals, "visual")

    def _create(self, source: PluginSource, table: Dict[str, PluginFactory], kind: str) -> Any:
        if callable(source):
            factory, label = source, getattr(source, "__name__", repr(source))
        else:
            factory = table.get(source)
            label = source
            if factory is None:
                raise PluginResolutionError(
                    f"Unknown {kind} '{source}'. Registered: {sorted(table)}"
                )
        try:
            return factory(self.context)
        except Exception as exc:
            raise PluginResolutionError(f"Could not construct {kind} '{label}': {exc}") from exc

    # ── construction from settings ────────────────────────────────────────────

    @classmethod
    def from_config(cls, config: Any, context: PluginContext = PluginContext()) -> "PluginRegistry":
        """Build from ``plugins.songs`` / ``plugins.visuals`` mappings.

        Entries whose factory cannot be imported are logged and skipped.
        """
        registry = cls(context)
        for section, register in (
            ("plugins.songs", registry.register_song),
            ("plugins.visuals", registry.register_visual),
        ):
            for name, target in config.section(section).items():
                try:
                    register(name, load_factory(str(target)))
                except PluginResolutionError as exc:
                    logger.error("Skipping plugin '%s': %s", name, exc)
        logger.debug("Registry ready: songs=%s visuals=%s",
                     registry.song_names(), registry.visual_names())
        return registry
