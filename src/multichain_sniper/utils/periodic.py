"""Supervised interval loop with clean cancellation and an injectable clock."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Protocol

from multichain_sniper.utils.logging import get_logger

# A tick returns False to end the loop; None or True keeps it running.
TickCallback = Callable[[], Awaitable[bool | None]]


class Clock(Protocol):
    async def sleep(self, seconds: float) -> None: ...


class WallClock:
    """Real-time clock backed by asyncio.sleep."""

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class PeriodicTask:
    """Run an async callback every ``interval`` seconds until stopped.

    Exceptions raised by the callback are logged and the loop keeps going.
    The task can be started again after it has been stopped.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: TickCallback,
        *,
        clock: Clock | None = None,
        immediate: bool = False,
    ) -> None:
        if interval < 0:
            raise ValueError("interval_must_be_non_negative")
        self._name = name
        self._interval = interval
        self._callback = callback
        self._clock = clock or WallClock()
        self._immediate = immediate
        self._task: asyncio.Task[None] | None = None
        self._stopped = True
        self._ticks = 0
        self._logger = get_logger("multichain_sniper.utils.periodic")

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> None:
        """Start the loop. No-op when already running."""
        if self.running:
            return
        self._stopped = False
        self._ticks = 0
        self._task = asyncio.create_task(self._run(), name=self._name)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to unwind. Safe to call repeatedly."""
        self._stopped = True
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def wait(self) -> None:
        """Wait until the loop ends on its own or is stopped."""
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.shield(task)

    async def _run(self) -> None:
        first = True
        while not self._stopped:
            if not (first and self._immediate):
                await self._clock.sleep(self._interval)
            first = False
            if self._stopped:
                break
            self._ticks += 1
            try:
                keep_running = await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - one bad tick must not kill the loop.
                self._logger.exception("periodic_tick_failed", task=self._name, error=str(exc))
                continue
            if keep_running is False:
                break
        self._stopped = True
