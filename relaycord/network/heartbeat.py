"""Shared clock and the per-session heartbeat timer."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from typing import Awaitable, Callable, Optional

LOGGER = logging.getLogger(__name__)


class Clock:
    """Monotonic clock backed by the running event loop."""

    def now(self) -> float:
        return asyncio.get_running_loop().time()

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))

    async def sleep_until(self, deadline: float) -> None:
        await self.sleep(deadline - self.now())


class HeartbeatTimer:
    """Invokes ``on_tick`` every ``interval`` seconds.

    The first tick fires after ``interval * first_beat_ratio`` (a random ratio by
    default) so that many sessions started together do not beat in lockstep.
    Exceptions raised by the callback are logged and do not stop the timer.
    """

    def __init__(
        self,
        interval: float,
        on_tick: Callable[[], Awaitable[None]],
        *,
        clock: Optional[Clock] = None,
        first_beat_ratio: Optional[float] = None,
        name: str = "heartbeat",
    ) -> None:
        if interval <= 0:
            raise ValueError("Heartbeat interval must be positive")
        self.interval = float(interval)
        self._on_tick = on_tick
        self._clock = clock or Clock()
        self._first_beat_ratio = random.random() if first_beat_ratio is None else first_beat_ratio
        self._name = name
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self._name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        if task is asyncio.current_task():
            # stopped from inside on_tick; _run exits once the callback returns
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        await self._clock.sleep(self.interval * self._first_beat_ratio)
        while self._task is asyncio.current_task():
            started = self._clock.now()
            try:
                await self._on_tick()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                LOGGER.exception("Heartbeat tick failed")
            if self._task is not asyncio.current_task():
                return
            elapsed = self._clock.now() - started
            await self._clock.sleep(self.interval - elapsed)
