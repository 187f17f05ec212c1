"""
SNMP Poller - Reactor.

Thin wrapper around an asyncio event loop exposing the primitives the
poller and the dispatch bridge consume:

- descriptor readiness (read/write) callbacks
- one-shot and recurring timers, removable by id
- coroutine spawning with a completion callback
- start/stop and a running query

The reactor never owns protocol state; it only schedules callbacks.
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional


log = logging.getLogger("snmp_poller.reactor")

SpawnCallback = Callable[[Any, Optional[BaseException]], None]


class AsyncioReactor:
    """
    Reactor backed by an asyncio event loop.

    If no loop is given, the running loop is used when there is one;
    otherwise a new loop is created and installed for this thread.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._ids = itertools.count(1)
        self._timers: Dict[int, asyncio.TimerHandle] = {}

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                self._loop = asyncio.new_event_loop()
                asyncio.set_event_loop(self._loop)
        return self._loop

    @property
    def is_running(self) -> bool:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                return False
        return self._loop.is_running()

    def start(self) -> None:
        """Run the loop until stop() is called. No-op if already running."""
        if self.is_running:
            return
        self.loop.run_forever()

    def stop(self) -> None:
        if self._loop is not None:
            self._loop.stop()

    # =========================================================================
    # Descriptors
    # =========================================================================

    def io(self, fd: int, callback: Callable[[], Any], write: bool = False) -> None:
        """
        Watch a descriptor for readiness.

        Raises whatever the loop raises (OSError, ValueError, or
        NotImplementedError on loops without descriptor support).
        """
        if write:
            self.loop.add_writer(fd, callback)
        else:
            self.loop.add_reader(fd, callback)

    def remove_io(self, fd: int) -> None:
        if self._loop is None:
            return
        self._loop.remove_reader(fd)
        self._loop.remove_writer(fd)

    # =========================================================================
    # Timers
    # =========================================================================

    def timer(self, delay: float, callback: Callable[[], Any]) -> int:
        """Call ``callback`` once after ``delay`` seconds. Returns a timer id."""
        timer_id = next(self._ids)

        def fire():
            self._timers.pop(timer_id, None)
            callback()

        self._timers[timer_id] = self.loop.call_later(max(delay, 0), fire)
        return timer_id

    def recurring(self, interval: float, callback: Callable[[], Any]) -> int:
        """Call ``callback`` every ``interval`` seconds until removed."""
        timer_id = next(self._ids)

        def fire():
            # re-arm first so the callback may remove its own timer
            self._timers[timer_id] = self.loop.call_later(interval, fire)
            callback()

        self._timers[timer_id] = self.loop.call_later(interval, fire)
        return timer_id

    def remove(self, timer_id: int) -> bool:
        """Cancel a timer. Returns False if it already fired or was unknown."""
        handle = self._timers.pop(timer_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    # =========================================================================
    # Coroutines
    # =========================================================================

    def spawn(self, coro: Awaitable, callback: SpawnCallback) -> asyncio.Future:
        """
        Run a coroutine on the loop and report its outcome.

        ``callback(result, None)`` on success, ``callback(None, exc)`` on
        failure or cancellation.
        """
        task = asyncio.ensure_future(coro, loop=self.loop)

        def done(fut: asyncio.Future):
            if fut.cancelled():
                callback(None, asyncio.CancelledError())
                return
            exc = fut.exception()
            if exc is not None:
                callback(None, exc)
            else:
                callback(fut.result(), None)

        task.add_done_callback(done)
        return task
