"""Timer-reset-on-activity primitive for coalescing bursts of changes."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Runs `callback` once, `delay` seconds after the last `trigger()`.

    Every trigger inside the quiet period restarts the timer, so a burst of
    notifications produces a single call.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]], name: str = "debouncer"):
        self.delay = delay
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._fire_later())

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()
        self._task = None

    async def flush(self) -> None:
        """Run a pending callback immediately."""
        if self.pending:
            self.cancel()
            await self.callback()

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.delay)
        # Detach so a trigger during the callback starts a new timer instead of cancelling this run
        self._task = None
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"{self.name} callback failed: {e}")
