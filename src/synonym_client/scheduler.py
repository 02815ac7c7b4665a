# synonym_client/scheduler.py
"""
Fixed-interval polling loops with single-flight ticks and hard cancellation.

A loop pairs a `fetch` coroutine (the network round trip) with an `apply`
callback (the state change). `apply` only runs while the loop's handle is
still active, so a fetch that completes after `cancel()` changes nothing.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

from .logger import logger

Fetch = Callable[[], Awaitable[Any]]
Apply = Callable[[Any], None]
OnError = Callable[[Exception], None]

_handle_ids = itertools.count(1)


class LoopHandle:
    """Identifies one running loop. Inactive handles never apply results again."""

    def __init__(self, name: str, interval: float):
        self.id = next(_handle_ids)
        self.name = name
        self.interval = interval
        self.active = True
        self.invocations = 0
        self.skipped_ticks = 0
        self.ticker: Optional[asyncio.Task] = None
        self.in_flight: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()

    def __repr__(self):
        return f"<LoopHandle {self.name}#{self.id} active={self.active}>"


class PollingScheduler:
    """Owns every polling loop of a session."""

    def __init__(self):
        self._loops: Dict[int, LoopHandle] = {}

    @property
    def loops(self):
        return list(self._loops.values())

    def start_loop(
        self,
        interval: float,
        fetch: Fetch,
        apply: Apply,
        on_error: Optional[OnError] = None,
        name: str = "poll",
    ) -> LoopHandle:
        """
        Starts polling `fetch` every `interval` seconds, beginning immediately.

        A tick that arrives while the previous fetch is still pending is
        skipped, not queued. Must be called from inside a running event loop.
        """
        handle = LoopHandle(name, interval)
        self._loops[handle.id] = handle
        handle.ticker = asyncio.get_running_loop().create_task(
            self._tick_forever(handle, fetch, apply, on_error)
        )
        logger.info(f"Started polling loop '{name}' every {interval}s")
        return handle

    def cancel(self, handle: Optional[LoopHandle]) -> None:
        """Stops a loop synchronously. Calling it twice is harmless."""
        if handle is None or not handle.active:
            return
        handle.active = False
        self._loops.pop(handle.id, None)
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in (handle.ticker, handle.in_flight):
            if task is not None and not task.done() and task is not current:
                task.cancel()
        logger.info(f"Cancelled polling loop '{handle.name}'")

    def cancel_all(self) -> None:
        for handle in list(self._loops.values()):
            self.cancel(handle)

    async def _tick_forever(self, handle: LoopHandle, fetch: Fetch, apply: Apply, on_error: Optional[OnError]):
        loop = asyncio.get_running_loop()
        while handle.active:
            if handle.busy:
                handle.skipped_ticks += 1
                logger.debug(f"Loop '{handle.name}' still waiting on its last poll, skipping tick")
            else:
                handle.in_flight = loop.create_task(self._invoke(handle, fetch, apply, on_error))
            await asyncio.sleep(handle.interval)

    async def _invoke(self, handle: LoopHandle, fetch: Fetch, apply: Apply, on_error: Optional[OnError]):
        handle.invocations += 1
        try:
            result = await fetch()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not handle.active:
                return
            if on_error:
                on_error(e)
            else:
                logger.warning(f"Poll '{handle.name}' failed: {e}")
            return
        if not handle.active:
            logger.debug(f"Discarding result of cancelled loop '{handle.name}'")
            return
        try:
            apply(result)
        except Exception:
            logger.error(f"Error applying result of loop '{handle.name}'", exc_info=True)


class ScopedLoop:
    """
    A polling loop tied to a scope key, e.g. the selected lobby id.

    Changing the key tears the old loop down and starts a new one bound to
    the new key; a key of None leaves no loop running.
    """

    def __init__(
        self,
        scheduler: PollingScheduler,
        interval: float,
        factory: Callable[[Hashable], tuple],
        name: str,
    ):
        self.scheduler = scheduler
        self.interval = interval
        # factory(key) -> (fetch, apply, on_error)
        self.factory = factory
        self.name = name
        self.key: Optional[Hashable] = None
        self.handle: Optional[LoopHandle] = None

    def set_scope(self, key: Optional[Hashable]) -> None:
        if key == self.key and (key is None or (self.handle and self.handle.active)):
            return
        self.scheduler.cancel(self.handle)
        self.handle = None
        self.key = key
        if key is None:
            return
        fetch, apply, on_error = self.factory(key)
        self.handle = self.scheduler.start_loop(
            self.interval, fetch, apply, on_error, name=f"{self.name}:{key}"
        )

    def stop(self) -> None:
        self.set_scope(None)
