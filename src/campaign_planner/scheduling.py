"""Timer ownership for the storage core.

Every debounce timer, polling loop and background task is created through a
``Scheduler`` so its owner can cancel all of them in one call on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class Scheduler:
    """Tracks timer handles and tasks created on the running event loop."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._handles: set[asyncio.TimerHandle] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        """Schedule ``callback`` after ``delay`` seconds.

        Raises ``RuntimeError`` when there is no running loop or the scheduler
        has been closed.
        """
        if self._closed:
            raise RuntimeError(f"Scheduler {self._name} is closed")
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def _run() -> None:
            if handle is not None:
                self._handles.discard(handle)
            callback()

        handle = loop.call_later(delay, _run)
        self._handles.add(handle)
        return handle

    def cancel(self, handle: asyncio.TimerHandle | None) -> bool:
        if handle is None:
            return False
        was_pending = handle in self._handles
        handle.cancel()
        self._handles.discard(handle)
        return was_pending

    def spawn(self, coro: Awaitable[None], *, name: str | None = None) -> asyncio.Task[None]:
        if self._closed:
            close = getattr(coro, "close", None)
            if close is not None:
                close()
            raise RuntimeError(f"Scheduler {self._name} is closed")
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def every(
        self,
        interval: float,
        job: Callable[[], Awaitable[None]],
        *,
        name: str,
        run_immediately: bool = False,
    ) -> asyncio.Task[None]:
        """Run ``job`` every ``interval`` seconds until cancelled.

        A failing run is logged and the loop continues with the next tick.
        """

        async def _loop() -> None:
            if not run_immediately:
                await asyncio.sleep(interval)
            while True:
                try:
                    await job()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Periodic job %s failed", name)
                await asyncio.sleep(interval)

        return self.spawn(_loop(), name=f"{self._name}:{name}")

    def cancel_all(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()

    async def close(self) -> None:
        """Cancel every timer and task and wait for the tasks to unwind."""
        self._closed = True
        tasks = list(self._tasks)
        self.cancel_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def pending_count(self) -> int:
        return len(self._handles) + sum(1 for task in self._tasks if not task.done())

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s failed: %s", task.get_name(), exc, exc_info=exc)


class Debouncer:
    """Trailing debounce: ``action`` runs once after ``delay`` seconds of quiet."""

    def __init__(
        self,
        scheduler: Scheduler,
        delay: float,
        action: Callable[[], Awaitable[None]],
        *,
        name: str = "debounce",
    ) -> None:
        self._scheduler = scheduler
        self._delay = delay
        self._action = action
        self._name = name
        self._handle: asyncio.TimerHandle | None = None
        self._running: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        """(Re)start the quiet window. Raises ``RuntimeError`` without a running loop."""
        self._scheduler.cancel(self._handle)
        self._handle = None
        self._handle = self._scheduler.call_later(self._delay, self._fire)

    def cancel(self) -> bool:
        """Drop the pending run. Returns True if one was pending."""
        handle, self._handle = self._handle, None
        return self._scheduler.cancel(handle)

    async def wait_idle(self) -> None:
        """Wait for every action that has already started to finish."""
        running = self._running
        if running is not None and not running.done():
            await asyncio.gather(running, return_exceptions=True)

    def _fire(self) -> None:
        self._handle = None
        self._running = self._scheduler.spawn(self._run_after(self._running), name=self._name)

    async def _run_after(self, previous: asyncio.Task[None] | None) -> None:
        # runs never overlap; each waits for the one fired before it
        if previous is not None and not previous.done():
            await asyncio.gather(previous, return_exceptions=True)
        await self._action()
