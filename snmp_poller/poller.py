"""
SNMP Poller - Concurrent Request Scheduler.

Fetch or set data on many SNMP agents at once from a single asyncio loop.

Features:
- One session per (address, version, community, username), reused
- Backlog admitted FIFO with at most ``concurrent`` requests in flight
- get, get_next, get_bulk, set, walk and bulk_walk operations
- Broadcast response/error/finish/timeout events, or inline callbacks
- Master timeout for the complete run

Usage:
    from snmp_poller import SNMPPoller

    poller = SNMPPoller(concurrent=50, defaults={"community": "public"})
    poller.on("response", lambda event: print(event.result.values()))
    poller.on("error", lambda event: print(event.target, event.message))

    poller.prepare(["10.0.0.1", "10.0.0.2"], get=["1.3.6.1.2.1.1.5.0"])
    poller.prepare("10.0.0.3", {"version": "v3", "username": "ops"},
                   walk=["1.3.6.1.2.1.2.2.1.2"])
    poller.wait()

    # Inside a running loop
    async def main():
        poller = SNMPPoller(master_timeout=30)
        poller.get("10.0.0.1", ["1.3.6.1.2.1.1.3.0"],
                   callback=lambda err, result: print(err or result.values()))
        state = await poller.join()
"""

import asyncio
import logging
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .config import PollerSettings, load_settings
from .dispatcher import Dispatcher
from .engine import PysnmpEngine
from .errors import DispatchError, RequestError
from .events import EventCallback, EventEmitter, EventType, PollEvent
from .models import (
    DEFAULT_MAX_REPETITIONS, Operation, QueueItem, Request, Result,
    ResultCallback, RunState, SetBinding, Targets,
)
from .pool import SessionPool
from .reactor import AsyncioReactor
from .walker import create_walk


log = logging.getLogger("snmp_poller.scheduler")

Options = Optional[Mapping[str, Any]]


class SNMPPoller:
    """
    Admission-controlled SNMP request scheduler.

    Attributes:
        concurrent: Max requests in flight (0 = queue only, see flush())
        master_timeout: Seconds for the complete run, 0 disables
        defaults: Session options merged under per-call options
        reactor: AsyncioReactor driving everything
        engine: ProtocolEngine (PysnmpEngine unless given)
        events: EventEmitter publishing response/error/finish/timeout
        pool: SessionPool
    """

    def __init__(
        self,
        concurrent: int = 20,
        master_timeout: float = 0,
        defaults: Optional[Dict[str, Any]] = None,
        poll_interval: float = 0.1,
        engine: Any = None,
        reactor: Optional[AsyncioReactor] = None,
    ):
        if concurrent < 0:
            raise ValueError("concurrent must be >= 0")
        if master_timeout < 0:
            raise ValueError("master_timeout must be >= 0")

        self.concurrent = concurrent
        self.master_timeout = master_timeout
        self.defaults = dict(defaults or {})
        self.reactor = reactor or AsyncioReactor()
        self.engine = engine or PysnmpEngine()
        self.events = EventEmitter()
        self.dispatcher = Dispatcher(self.reactor, poll_interval=poll_interval)
        self.pool = SessionPool(self.engine, self.events)

        self._queue: Deque[QueueItem] = deque()
        self._in_flight = 0
        self._state = RunState.IDLE
        self._run = 0
        self._setup = False
        self._master_timer: Optional[int] = None
        self._finish_timer: Optional[int] = None
        self._flushing = False
        self._admitting = False

    @classmethod
    def from_settings(cls, settings: PollerSettings, **kwargs) -> "SNMPPoller":
        return cls(
            concurrent=settings.concurrent,
            master_timeout=settings.master_timeout,
            defaults=settings.defaults,
            poll_interval=settings.poll_interval,
            **kwargs,
        )

    @classmethod
    def from_config(cls, path: Union[str, Path], **kwargs) -> "SNMPPoller":
        """Create a poller from a YAML config file (see snmp_poller.config)."""
        return cls.from_settings(load_settings(path), **kwargs)

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return len(self._queue)

    def queue_snapshot(self) -> List[QueueItem]:
        return list(self._queue)

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: Union[str, EventType], callback: EventCallback) -> "SNMPPoller":
        self.events.subscribe(callback, EventType(event))
        return self

    def once(self, event: Union[str, EventType], callback: EventCallback) -> "SNMPPoller":
        self.events.once(callback, EventType(event))
        return self

    def unsubscribe(self, callback: EventCallback) -> "SNMPPoller":
        self.events.unsubscribe(callback)
        return self

    # =========================================================================
    # Submission
    # =========================================================================

    def submit(
        self,
        targets: Targets,
        requests: Iterable[Union[Request, Sequence[Any]]],
        options: Options = None,
    ) -> "SNMPPoller":
        """
        Queue requests for one address, a list of addresses, or "*".

        ``requests`` holds Request objects or (operation, args) pairs. Every
        request is queued once per resolved session. Targets whose session
        cannot be created get an error event and no queue items.
        """
        requests = [
            request if isinstance(request, Request) else Request(*request)
            for request in requests
        ]

        self._start_run()
        for session in self.pool.expand(targets, options, defaults=self.defaults):
            for request in requests:
                item = QueueItem(key=session.key, request=request)
                self._queue.append(item)
                log.debug(f"Queued {item.describe()}")

        self._admit()
        if self.reactor.is_running:
            self.arm_master_timeout()
        self._schedule_finish_check()
        return self

    def prepare(
        self,
        targets: Targets,
        options: Options = None,
        max_repetitions: Optional[int] = None,
        **operations: Any,
    ) -> "SNMPPoller":
        """
        Keyword form of submit().

            poller.prepare("10.0.0.1", {"community": "private"},
                           get=["1.3.6.1.2.1.1.5.0"],
                           set=[("1.3.6.1.2.1.1.6.0", "OCTET_STRING", "lab")])

        Walk and bulk_walk take a list of base OIDs; each base becomes its
        own request.
        """
        requests = []
        for name, args in operations.items():
            operation = Operation(name)
            if operation.is_compound:
                bases = [args] if isinstance(args, str) else list(args)
                requests.extend(
                    Request(operation, [base], max_repetitions=max_repetitions)
                    for base in bases
                )
            else:
                requests.append(Request(operation, args, max_repetitions=max_repetitions))
        return self.submit(targets, requests, options)

    def get(self, targets: Targets, oids: Sequence[str], options: Options = None,
            callback: Optional[ResultCallback] = None) -> "SNMPPoller":
        return self.submit(targets, [Request(Operation.GET, oids, callback=callback)], options)

    def get_next(self, targets: Targets, oids: Sequence[str], options: Options = None,
                 callback: Optional[ResultCallback] = None) -> "SNMPPoller":
        return self.submit(targets, [Request(Operation.GET_NEXT, oids, callback=callback)], options)

    def get_bulk(self, targets: Targets, oids: Sequence[str], options: Options = None,
                 callback: Optional[ResultCallback] = None,
                 max_repetitions: int = DEFAULT_MAX_REPETITIONS) -> "SNMPPoller":
        request = Request(Operation.GET_BULK, oids, max_repetitions=max_repetitions,
                          callback=callback)
        return self.submit(targets, [request], options)

    def set(self, targets: Targets, bindings: Sequence[SetBinding], options: Options = None,
            callback: Optional[ResultCallback] = None) -> "SNMPPoller":
        """Set values; ``bindings`` are (oid, type, value) triples."""
        return self.submit(targets, [Request(Operation.SET, bindings, callback=callback)], options)

    def walk(self, targets: Targets, oid: str, options: Options = None,
             callback: Optional[ResultCallback] = None) -> "SNMPPoller":
        """Collect the subtree under ``oid`` with GETNEXT."""
        return self.submit(targets, [Request(Operation.WALK, [oid], callback=callback)], options)

    def bulk_walk(self, targets: Targets, oid: str, options: Options = None,
                  callback: Optional[ResultCallback] = None,
                  max_repetitions: int = DEFAULT_MAX_REPETITIONS) -> "SNMPPoller":
        """Collect the subtree under ``oid`` with GETBULK."""
        request = Request(Operation.BULK_WALK, [oid], max_repetitions=max_repetitions,
                          callback=callback)
        return self.submit(targets, [request], options)

    def flush(self) -> "SNMPPoller":
        """
        Start admission explicitly.

        With ``concurrent == 0`` nothing is admitted automatically; flush()
        then drains the backlog one request at a time. Otherwise it tops
        the pipeline up to ``concurrent``.
        """
        if self.concurrent == 0 and self._queue:
            self._flushing = True
        self._admit()
        self._schedule_finish_check()
        return self

    # =========================================================================
    # Running
    # =========================================================================

    def wait(self) -> "SNMPPoller":
        """
        Run the reactor until finish or timeout.

            poller.prepare(...).wait()  # blocks while polling
        """
        if self.reactor.is_running:
            raise RuntimeError("wait() would block the running loop, use 'await join()'")

        def stop(event: PollEvent):
            if event.event_type in (EventType.FINISH, EventType.TIMEOUT):
                self.events.unsubscribe(stop)
                self.reactor.stop()

        self.events.subscribe(stop)
        self._begin()
        self.reactor.start()
        return self

    async def join(self) -> RunState:
        """Wait for finish or timeout from inside the running loop."""
        loop = asyncio.get_running_loop()
        if self.reactor.loop is not loop:
            raise RuntimeError("poller reactor is bound to a different event loop")

        future = loop.create_future()

        def settle(event: PollEvent):
            if event.event_type not in (EventType.FINISH, EventType.TIMEOUT):
                return
            self.events.unsubscribe(settle)
            if not future.done():
                future.set_result(RunState.FINISHED if event.event_type == EventType.FINISH
                                  else RunState.TIMED_OUT)

        self.events.subscribe(settle)
        self._begin()
        return await future

    def _begin(self) -> None:
        if self._state in (RunState.IDLE, RunState.TIMED_OUT):
            self._start_run()
        self.arm_master_timeout()
        self._schedule_finish_check()

    # =========================================================================
    # Master timeout
    # =========================================================================

    def arm_master_timeout(self) -> bool:
        """
        Arm the master timeout for the current run.

        Returns False without doing anything when it is disabled or
        already pending.
        """
        if self._setup or not self.master_timeout:
            return False
        self._setup = True
        self._master_timer = self.reactor.timer(self.master_timeout, self._on_master_timeout)
        log.debug(f"Master timeout armed: {self.master_timeout}s")
        return True

    def _cancel_master_timeout(self) -> None:
        if self._master_timer is not None:
            self.reactor.remove(self._master_timer)
        self._master_timer = None
        self._setup = False

    def _on_master_timeout(self) -> None:
        self._cancel_master_timeout()
        if self._state not in (RunState.ACTIVE, RunState.DRAINING):
            return

        dropped = len(self._queue)
        abandoned = self._in_flight
        self._queue.clear()
        self._run += 1
        self._in_flight = 0
        self._flushing = False
        self._cancel_finish_check()
        self._state = RunState.TIMED_OUT

        log.warning(f"Master timeout after {self.master_timeout}s: "
                    f"{abandoned} in flight abandoned, {dropped} queued dropped")
        self.events.timeout()

    # =========================================================================
    # Admission
    # =========================================================================

    def _limit(self) -> int:
        if self.concurrent > 0:
            return self.concurrent
        return 1 if self._flushing else 0

    def _start_run(self) -> None:
        if self._state in (RunState.ACTIVE, RunState.DRAINING):
            return
        self._state = RunState.ACTIVE
        self.events.reset_stats()
        log.info(f"Run {self._run} started (concurrent={self.concurrent}, "
                 f"master_timeout={self.master_timeout})")

    def _admit(self) -> None:
        # Completions delivered inside execute() re-enter here; the loop
        # already running further up the stack admits for them.
        if self._admitting:
            return
        self._admitting = True
        try:
            while self._queue and self._in_flight < self._limit():
                self._dispatch(self._queue.popleft())
        finally:
            self._admitting = False

        if self._state == RunState.ACTIVE and not self._queue and self._in_flight:
            self._state = RunState.DRAINING

    def _dispatch(self, item: QueueItem) -> None:
        session = self.pool.get(item.key)
        run = self._run
        completed = False

        def done(result: Result) -> None:
            nonlocal completed
            if completed:
                return
            completed = True
            self._on_complete(run, item, result)

        self._in_flight += 1
        log.debug(f">>> {item.describe()}")
        try:
            if item.operation.is_compound:
                create_walk(self.engine, self.dispatcher, session, item.request, done,
                            cancelled=lambda: run != self._run).start()
            else:
                options = {"max_repetitions": item.request.max_repetitions}
                with self.dispatcher.installed(self.engine):
                    self.engine.execute(session.handle, item.operation,
                                        item.request.args, options, done)
        except (RequestError, DispatchError) as e:
            if completed:
                raise
            completed = True
            self._in_flight -= 1
            log.warning(f"Rejected {item.describe()}: {e}")
            self._report(item, Result(key=item.key, operation=item.operation, error=str(e)))

    def _on_complete(self, run: int, item: QueueItem, result: Result) -> None:
        if run != self._run:
            log.debug(f"<<< {item.describe()} discarded (run {run} timed out)")
            self._schedule_finish_check()
            return

        self._in_flight -= 1
        if result.error:
            log.debug(f"<<< {item.key} {result.error}")
        else:
            log.debug(f"<<< {item.describe()} {len(result.varbinds)} varbinds")

        self._report(item, result)
        self._admit()
        self._schedule_finish_check()

    def _report(self, item: QueueItem, result: Result) -> None:
        callback = item.request.callback
        if callback is not None:
            try:
                callback(result.error, result)
            except Exception:
                log.exception(f"Callback for {item.describe()} failed")
            return

        if result.error:
            self.events.error(result.error, result=result, target=result.target)
        else:
            self.events.response(result)

    # =========================================================================
    # Finish
    # =========================================================================

    def _schedule_finish_check(self) -> None:
        """Finish on the next loop turn if the run has nothing left to do."""
        if self._finish_timer is not None:
            return
        if self._state not in (RunState.ACTIVE, RunState.DRAINING):
            return
        if self._queue or self._in_flight:
            return

        def check():
            self._finish_timer = None
            self._maybe_finish()

        self._finish_timer = self.reactor.timer(0, check)

    def _cancel_finish_check(self) -> None:
        if self._finish_timer is not None:
            self.reactor.remove(self._finish_timer)
            self._finish_timer = None

    def _maybe_finish(self) -> None:
        if self._state not in (RunState.ACTIVE, RunState.DRAINING):
            return
        if self._queue or self._in_flight or self.dispatcher.connections:
            return

        self._state = RunState.FINISHED
        self._flushing = False
        self._cancel_master_timeout()
        self._cancel_finish_check()

        stats = self.events.stats
        log.info(f"Run {self._run} finished: {stats.responses} responses, "
                 f"{stats.errors} errors in {stats.elapsed_seconds:.2f}s")
        self.events.finish()

        if self._state == RunState.FINISHED:
            self._state = RunState.IDLE
