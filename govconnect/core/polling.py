"""
Periodic polling tasks.

A PeriodicTask is an asyncio task bound to a scope (pairing dialog open,
conversation view visible). Leaving the scope cancels it, so no timer keeps
firing for a session or conversation that is no longer selected.
"""
import asyncio
import contextlib
from typing import Awaitable, Callable

from govconnect.core.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """
    Runs `callback` every `interval` seconds until stopped.

    Ticks never overlap: the next sleep starts after the previous tick ends.
    An exception inside a tick is logged and the loop continues; a poll
    failure is not a reason to stop polling.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
        *,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self.tick_count = 0
        self.error_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop; a no-op if it is already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"poll:{self.name}")
        logger.debug("Polling started", extra_data={"task": self.name, "interval": self.interval})

    async def stop(self) -> None:
        """
        Stop the loop and wait for it to finish.

        Safe to call from inside a tick: the loop notices it was detached and
        exits after the current tick instead of cancelling itself.
        """
        task, self._task = self._task, None
        if task is None:
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Polling stopped", extra_data={"task": self.name, "ticks": self.tick_count})

    async def trigger(self) -> None:
        """Run one tick now, outside the schedule."""
        await self._tick()

    async def _run(self) -> None:
        me = asyncio.current_task()
        if self._run_immediately:
            await self._tick()
        while self._task is me:
            await asyncio.sleep(self.interval)
            if self._task is not me:
                break
            await self._tick()

    async def _tick(self) -> None:
        self.tick_count += 1
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.error_count += 1
            logger.warning(
                "Polling tick failed",
                extra_data={
                    "task": self.name,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )

    async def __aenter__(self) -> "PeriodicTask":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
