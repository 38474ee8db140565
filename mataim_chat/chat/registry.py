import asyncio
import logging
import time
import uuid
from typing import Callable

from .controller import ChatController
from .errors import ScreenNotFound


logger = logging.getLogger(__name__)


class ScreenRegistry:
    """
    Open chat screens by id. Each screen belongs to the viewer that opened it.

    A client that crashes never sends its DELETE, so screens idle for longer
    than `idle_ttl` seconds are disposed by `sweep()`. Sweeps run on every
    `add` and periodically from `sweep_forever`.
    """

    def __init__(self, idle_ttl: float = 1800.0, clock: Callable[[], float] = time.monotonic):
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._screens: dict[str, ChatController] = {}
        self._last_seen: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._screens)

    async def add(self, controller: ChatController) -> str:
        await self.sweep()

        screen_id = str(uuid.uuid4())
        self._screens[screen_id] = controller
        self._last_seen[screen_id] = self._clock()
        logger.info(f"screen_opened id={screen_id} viewer={controller.viewer.id} role={controller.viewer.role.value}")
        return screen_id

    def get(self, screen_id: str, viewer_id: str) -> ChatController:
        controller = self._screens.get(screen_id)
        # a foreign screen is reported exactly like a missing one
        if controller is None or controller.viewer.id != viewer_id:
            raise ScreenNotFound(screen_id)
        self._last_seen[screen_id] = self._clock()
        return controller

    async def close(self, screen_id: str, viewer_id: str) -> None:
        controller = self.get(screen_id, viewer_id)
        self._forget(screen_id)
        await controller.dispose()
        logger.info(f"screen_closed id={screen_id}")

    async def sweep(self) -> int:
        """Dispose screens not accessed within `idle_ttl`; returns how many."""
        cutoff = self._clock() - self.idle_ttl
        expired = [sid for sid, seen in self._last_seen.items() if seen < cutoff]

        for screen_id in expired:
            controller = self._forget(screen_id)
            await controller.dispose()

        if expired:
            logger.info(f"screens_expired count={len(expired)} open={len(self._screens)}")
        return len(expired)

    async def sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("screen_sweep_failed")

    async def close_all(self) -> None:
        screens, self._screens = self._screens, {}
        self._last_seen = {}
        for controller in screens.values():
            await controller.dispose()
        if screens:
            logger.info(f"screens_closed count={len(screens)}")

    def _forget(self, screen_id: str) -> ChatController:
        self._last_seen.pop(screen_id, None)
        return self._screens.pop(screen_id)
