"""
Auto-save Scheduler
Periodically flushes an in-progress draft so edits are not lost.

One repeating asyncio task per scheduler. A failed flush is logged and
left for the next tick; nothing is retried early.
"""

import asyncio
import inspect
from typing import Any, Callable, Optional

from poultry_erp.utils.logging import setup_logging
from poultry_erp.config import get_config


logger = setup_logging(__name__)
config = get_config()


class AutoSaveScheduler:
    """Runs a flush callback every ``interval_minutes`` on the running loop."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, flush_callback: Callable[[], Any], interval_minutes: float = None) -> None:
        """
        Arm the timer, replacing any timer already running.

        Must be called from inside a running event loop. The callback may be
        a plain function or a coroutine function.
        """
        if interval_minutes is None:
            interval_minutes = config.AUTO_SAVE_INTERVAL_MINUTES
        if interval_minutes <= 0:
            raise ValueError(f"Auto-save interval must be positive: {interval_minutes}")

        self.stop()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(flush_callback, interval_minutes * 60))
        logger.info(f"Auto-save armed every {interval_minutes} minute(s)")

    def stop(self) -> None:
        """Cancel the timer if one is armed."""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
            logger.info("Auto-save stopped")
        self._task = None

    async def _run(self, flush_callback: Callable[[], Any], interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.ticks += 1
            try:
                result = flush_callback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.failures += 1
                logger.warning(f"Auto-save flush failed, will try again next tick: {e}")
