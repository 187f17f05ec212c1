"""
SNMP Poller - Dispatch Bridge.

Lets a protocol engine's socket and timer management be driven by the
poller's reactor instead of the engine's own blocking loop.

The scheduler installs the dispatcher on the engine for the duration of
each execute() call:

    with dispatcher.installed(engine):
        engine.execute(handle, operation, args, options, callback)

The engine then asks the dispatcher for what it needs:

- register(fd, on_ready) / deregister(fd) for sockets it reads/writes
- schedule(delay, on_timeout) / cancel(timer_id) for retransmit timers
- spawn(coro, on_done) for coroutine-native engines (pysnmp asyncio)

Every watched descriptor and every running coroutine counts as an open
connection. ``connections`` dropping to zero tells the scheduler that no
engine-level work is outstanding.

Engines that expose ``poll()`` are additionally ticked by a recurring
reactor timer while connections are open.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Set

from .errors import DispatchError
from .reactor import AsyncioReactor, SpawnCallback


log = logging.getLogger("snmp_poller.dispatcher")


class Dispatcher:
    """
    Reactor-driven dispatcher for a protocol engine.

    Attributes:
        reactor: AsyncioReactor the descriptors and timers are registered with
        poll_interval: Seconds between poll() ticks for polled engines
    """

    def __init__(self, reactor: AsyncioReactor, poll_interval: float = 0.1):
        self.reactor = reactor
        self.poll_interval = poll_interval

        self._descriptors: Dict[int, str] = {}
        self._tasks: Set[asyncio.Future] = set()
        self._timers: Set[int] = set()
        self._polled_engine: Any = None
        self._poll_timer: Optional[int] = None

    @contextmanager
    def installed(self, engine: Any) -> Iterator[Any]:
        """Make this dispatcher the engine's active dispatcher for one call."""
        previous = getattr(engine, "dispatcher", None)
        engine.dispatcher = self
        if callable(getattr(engine, "poll", None)):
            self._polled_engine = engine
        try:
            yield engine
        finally:
            engine.dispatcher = previous

    @property
    def connections(self) -> int:
        """Open descriptors plus running engine coroutines."""
        return len(self._descriptors) + len(self._tasks)

    @property
    def descriptors(self) -> Dict[int, str]:
        """fd -> 'read' or 'write' for every watched descriptor."""
        return dict(self._descriptors)

    # =========================================================================
    # Descriptors
    # =========================================================================

    def register(self, fd: int, callback: Callable[[], Any], write: bool = False) -> None:
        """
        Watch ``fd`` and call ``callback`` when it is ready.

        Re-registering a descriptor replaces its callback and direction.

        Raises:
            DispatchError: the reactor refused the descriptor
        """
        if fd in self._descriptors:
            self.reactor.remove_io(fd)
        try:
            self.reactor.io(fd, callback, write=write)
        except (OSError, ValueError, NotImplementedError) as e:
            self._descriptors.pop(fd, None)
            self._connections_changed()
            raise DispatchError(f"Cannot watch descriptor {fd}: {e}") from e

        self._descriptors[fd] = "write" if write else "read"
        log.debug(f"Watching fd {fd} for {self._descriptors[fd]} "
                  f"({self.connections} connections)")
        self._connections_changed()

    def deregister(self, fd: int) -> None:
        if self._descriptors.pop(fd, None) is None:
            return
        self.reactor.remove_io(fd)
        log.debug(f"Released fd {fd} ({self.connections} connections)")
        self._connections_changed()

    # =========================================================================
    # Timers
    # =========================================================================

    def schedule(self, delay: float, callback: Callable[[], Any]) -> int:
        """Arm a one-shot engine timeout. Returns a timer id for cancel()."""
        timer_id = None

        def fire():
            self._timers.discard(timer_id)
            callback()

        try:
            timer_id = self.reactor.timer(delay, fire)
        except (OSError, ValueError, RuntimeError) as e:
            raise DispatchError(f"Cannot schedule timer: {e}") from e
        self._timers.add(timer_id)
        return timer_id

    def cancel(self, timer_id: int) -> None:
        if timer_id in self._timers:
            self._timers.discard(timer_id)
            self.reactor.remove(timer_id)

    # =========================================================================
    # Coroutines
    # =========================================================================

    def spawn(self, coro: Awaitable, callback: SpawnCallback) -> None:
        """
        Run an engine coroutine as one open connection.

        The connection is released before ``callback(result, exc)`` runs.
        """
        holder = {}

        def done(result: Any, exc: Optional[BaseException]) -> None:
            task = holder.get("task")
            if task is not None:
                self._tasks.discard(task)
            self._connections_changed()
            callback(result, exc)

        try:
            task = self.reactor.spawn(coro, done)
        except (OSError, ValueError, RuntimeError) as e:
            if hasattr(coro, "close"):
                coro.close()
            raise DispatchError(f"Cannot start request: {e}") from e

        if not task.done():
            holder["task"] = task
            self._tasks.add(task)
            self._connections_changed()

    # =========================================================================
    # Polling fallback
    # =========================================================================

    def _connections_changed(self) -> None:
        if self._polled_engine is None:
            return
        if self.connections and self._poll_timer is None:
            self._poll_timer = self.reactor.recurring(self.poll_interval, self._poll)
            log.debug(f"Polling engine every {self.poll_interval}s")
        elif not self.connections and self._poll_timer is not None:
            self.reactor.remove(self._poll_timer)
            self._poll_timer = None
            log.debug("Polling stopped, no open connections")

    def _poll(self) -> None:
        engine = self._polled_engine
        if engine is None:
            return
        try:
            engine.poll()
        except Exception:
            log.exception("Engine poll failed")
