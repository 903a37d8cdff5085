"""Supervised periodic tasks for Script Agent."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class PeriodicTask:
    """Runs an async action repeatedly on its own task.

    The interval is re-evaluated before every wait, so a callable interval
    picks up changes on the next cycle without disturbing the current one.
    ``stop()`` cancels the loop and waits for it, so once it returns the
    action will not fire again. ``trigger()`` cuts the current wait short.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        interval: Union[float, Callable[[], float]],
        *,
        run_immediately: bool = False,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self._action = action
        self._interval = interval if callable(interval) else (lambda: interval)
        self._run_immediately = run_immediately
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop. No-op if it is already running."""
        if self.running:
            return
        self._wake.clear()
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.debug("Periodic task %s started", self.name)

    async def stop(self) -> None:
        """Cancel the loop and wait until it has fully exited."""
        task, self._task = self._task, None
        if task is None:
            return
        if task is asyncio.current_task():
            task.cancel()
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Periodic task %s stopped", self.name)

    def trigger(self) -> None:
        """Run the action as soon as possible instead of waiting out the interval."""
        self._wake.set()

    async def _run(self) -> None:
        if not self._run_immediately:
            await self._pause()
        while True:
            self._wake.clear()
            try:
                await self._action()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error in periodic task %s", self.name)
            await self._pause()

    async def _pause(self) -> None:
        if self._wake.is_set():
            return
        delay = self._interval()
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waker.cancel()
