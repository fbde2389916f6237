"""RenderLoop — frame-paced callback on the asyncio event loop.

At most one frame callback is scheduled at any time; ``start()`` while
running is a no-op and ``stop()`` cancels the pending callback.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

from lofi_deck.services.shared.logging import get_logger

logger = get_logger("deck.render_loop")


class RenderLoop:
    """Calls ``tick()`` once per frame until stopped.

    The first tick runs synchronously inside ``start()``; each later tick is
    scheduled with ``loop.call_later(1 / fps)`` after the previous one
    returns, so ticks never overlap.
    """

    def __init__(
        self,
        tick: Callable[[], None],
        fps: float = 60.0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        if fps <= 0:
            raise ValueError(f"fps must be positive, got {fps}")
        self._tick = tick
        self.fps = fps
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._active = False
        self.frames = 0

    @property
    def interval(self) -> float:
        return 1.0 / self.fps

    @property
    def is_running(self) -> bool:
        return self._active

    @property
    def has_pending_frame(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        if self._active:
            return
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.get_running_loop()
        self._active = True
        logger.debug("Render loop started at %.1f fps", self.fps)
        self._run()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._active:
            logger.debug("Render loop stopped after %d frames", self.frames)
        self._active = False

    def _run(self) -> None:
        self._handle = None
        try:
            self._tick()
        except Exception:  # noqa: BLE001
            logger.exception("Render tick failed")
        self.frames += 1
        # tick() may have called stop()
        if self._active and self._loop is not None:
            self._handle = self._loop.call_later(self.interval, self._run)
