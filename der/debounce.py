from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Callback = Callable[[str], Awaitable[None]]


class LifecycleDebouncer:
    """Turns raw start/die events into stable appeared/gone notifications.

    A start arms a timer for the container id; only when it fires is the
    container reported as appeared. A die while the timer is pending cancels
    it and nothing is reported at all (crash loop). A die without a pending
    timer is reported as gone straight away.
    """

    def __init__(self, delay_s: float, on_appeared: Callback, on_gone: Callback):
        self.delay_s = max(0.0, float(delay_s))
        self.on_appeared = on_appeared
        self.on_gone = on_gone
        self._pending: dict[str, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()

    def pending(self, container_id: str) -> bool:
        return container_id in self._pending

    def start(self, container_id: str) -> None:
        prev = self._pending.pop(container_id, None)
        if prev is not None:
            logger.debug("Restart of %s within debounce window", container_id)
            prev.cancel()
        self._pending[container_id] = asyncio.create_task(self._fire(container_id), name=f"debounce-{container_id}")

    def die(self, container_id: str) -> None:
        task = self._pending.pop(container_id, None)
        if task is not None:
            logger.debug("%s died within debounce window, ignoring", container_id)
            task.cancel()
            return
        self._dispatch(self.on_gone, container_id)

    async def _fire(self, container_id: str) -> None:
        await asyncio.sleep(self.delay_s)
        if self._pending.get(container_id) is not asyncio.current_task():
            return
        del self._pending[container_id]
        task = asyncio.current_task()
        self._running.add(task)
        task.add_done_callback(self._running.discard)
        await self._run(self.on_appeared, container_id)

    def _dispatch(self, cb: Callback, container_id: str) -> None:
        task = asyncio.create_task(self._run(cb, container_id))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    @staticmethod
    async def _run(cb: Callback, container_id: str) -> None:
        try:
            await cb(container_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Handling lifecycle change of %s failed", container_id)

    async def drain(self) -> None:
        """Wait for fired and dispatched notifications to finish."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    def close(self) -> None:
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
