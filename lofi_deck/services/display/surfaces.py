"""Rendering surfaces for visual plugins and the compositor that stacks them.

Each loaded visual owns exactly one ``Surface``; the ``Compositor`` creates
it at the current viewport size, removes it when the visual goes away, and
flattens all live surfaces in layer order for display.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from itertools import count
from typing import List, Tuple

import numpy as np

from lofi_deck.services.shared.logging import get_logger

logger = get_logger("display.surfaces")

_creation_order = count()


@dataclass(eq=False)
class Surface:
    """An RGBA pixel buffer owned by one visual.

    Attributes:
        width: Pixels across.
        height: Pixels down.
        layer: Stacking index; higher layers are drawn on top.
        owner: Name of the visual that draws into it.
        pixels: ``(height, width, 4)`` uint8 array.
    """
    width: int
    height: int
    layer: int = 0
    owner: str = ""
    pixels: np.ndarray = field(default=None, repr=False)  # type: ignore[assignment]
    released: bool = False
    order: int = field(default_factory=lambda: next(_creation_order))

    def __post_init__(self) -> None:
        if self.pixels is None:
            self.pixels = np.zeros((self.height, self.width, 4), dtype=np.uint8)

    def clear(self, rgba: Tuple[int, int, int, int] = (0, 0, 0, 0)) -> None:
        self.pixels[:, :] = rgba

    def release(self) -> None:
        self.pixels = np.zeros((0, 0, 4), dtype=np.uint8)
        self.released = True


class Compositor:
    """Allocates surfaces and composites them bottom-to-top.

    Usage::

        comp = Compositor(1280, 720)
        surface = comp.create_surface(layer=1, owner="spectrum")
        frame = comp.composite()         # (720, 1280, 4) uint8
        comp.remove_surface(surface)
    """

    def __init__(self, width: int = 1280, height: int = 720):
        self.width = width
        self.height = height
        self._surfaces: List[Surface] = []

    @property
    def surfaces(self) -> List[Surface]:
        """Live surfaces in draw order (layer, then creation)."""
        return sorted(self._surfaces, key=lambda s: (s.layer, s.order))

    def create_surface(self, layer: int = 0, owner: str = "") -> Surface:
        surface = Surface(width=self.width, height=self.height, layer=layer, owner=owner)
        self._surfaces.append(surface)
        logger.debug("Surface %dx%d created for '%s' at layer %d",
                     self.width, self.height, owner, layer)
        return surface

    def remove_surface(self, surface: Surface) -> bool:
        """Detach and release ``surface``.  Returns False if it was not attached."""
        if surface not in self._surfaces:
            return False
        self._surfaces.remove(surface)
        surface.release()
        return True

    def clear(self) -> None:
        for surface in self._surfaces:
            surface.release()
        self._surfaces = []

    def composite(self) -> np.ndarray:
        """Alpha-blend every live surface into one RGBA frame."""
        out = np.zeros((self.height, self.width, 3), dtype=np.float32)
        for surface in self.surfaces:
            h = min(self.height, surface.height)
            w = min(self.width, surface.width)
            if h == 0 or w == 0:
                continue
            src = surface.pixels[:h, :w].astype(np.float32) / 255.0
            alpha = src[..., 3:4]
            out[:h, :w] = src[..., :3] * alpha + out[:h, :w] * (1.0 - alpha)
        rgba = np.empty((self.height, self.width, 4), dtype=np.uint8)
        rgba[..., :3] = np.round(out * 255.0).astype(np.uint8)
        rgba[..., 3] = 255
        return rgba
