"""
SNMP Poller - Walk Engine.

Compound traversals built on the primitive requests:

- Walk: repeated GETNEXT, one OID per step
- BulkWalk: repeated GETBULK, ``max_repetitions`` OIDs per step

Both collect every OID strictly inside the base OID's subtree and deliver
the merged table once, shaped like a primitive result. They talk to the
engine directly (through the dispatcher) instead of going back through
the poller's queue, so a walk holds one in-flight slot from start to end.

Containment is component-wise: walking 1.3.6.1.2.1.2.2.1.1 never picks up
1.3.6.1.2.1.2.2.1.10.
"""

import logging
from typing import Any, Callable, Optional

from .errors import PollerError, RequestError
from .models import (
    DEFAULT_MAX_REPETITIONS, Operation, Request, Result, Session,
    SNMPVersion, WalkAccumulator,
)
from .oids import format_oid, is_after, is_under, oid_sort_key


log = logging.getLogger("snmp_poller.walker")

ResultHandler = Callable[[Result], None]


class Walk:
    """
    GETNEXT traversal of one subtree.

    Attributes:
        max_steps: Safety limit on requests per walk
    """

    operation = Operation.WALK
    step_operation = Operation.GET_NEXT
    max_steps = 10000

    def __init__(
        self,
        engine: Any,
        dispatcher: Any,
        session: Session,
        base: str,
        callback: ResultHandler,
        max_repetitions: Optional[int] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ):
        self.engine = engine
        self.dispatcher = dispatcher
        self.session = session
        self.callback = callback
        self.max_repetitions = max_repetitions or DEFAULT_MAX_REPETITIONS
        self.cancelled = cancelled or (lambda: False)
        try:
            base = format_oid(base)
        except ValueError as e:
            raise RequestError(f"{self.operation.value}: {e}") from e
        self.acc = WalkAccumulator(base=base)
        self.acc.seeds = [self.acc.base]
        self._done = False
        self._sending = False
        self._pending = False

    def start(self) -> None:
        """
        Issue the first request.

        Raises whatever the engine raises when it rejects the request;
        the scheduler treats that as a dispatch rejection.
        """
        log.debug(f"{self.operation.value} {self.session.key} from {self.acc.base}")
        self._sending = True
        try:
            self._send()
            self._drain()
        finally:
            self._sending = False

    def _send(self) -> None:
        self.acc.steps += 1
        with self.dispatcher.installed(self.engine):
            self.engine.execute(
                self.session.handle,
                self.step_operation,
                list(self.acc.seeds),
                {"max_repetitions": self.max_repetitions},
                self._on_result,
            )

    def _next(self) -> None:
        # An engine that answers inside execute() lands here while _send is
        # still on the stack; the outer _drain loop picks the step up.
        self._pending = True
        if self._sending:
            return
        self._sending = True
        try:
            self._drain()
        finally:
            self._sending = False

    def _drain(self) -> None:
        while self._pending and not self._done:
            self._pending = False
            if self.acc.steps >= self.max_steps:
                self._finish(f"{self.operation.value} stopped after {self.acc.steps} requests")
                return
            try:
                self._send()
            except PollerError as e:
                self._finish(str(e))

    def _on_result(self, result: Result) -> None:
        if self._done:
            return

        if self.cancelled():
            self._finish(f"{self.operation.value} cancelled after {self.acc.steps} requests")
            return

        if result.error:
            if self._end_of_view(result) and self.acc.varbinds:
                self._finish()
            else:
                self._finish(result.error)
            return

        if self._merge(result):
            log.debug(f"{self.operation.value} {self.session.key} step {self.acc.steps}: "
                      f"{len(self.acc.varbinds)} collected, next {self.acc.seeds[-1]}")
            self._next()
        else:
            self._finish()

    def _merge(self, result: Result) -> bool:
        """Fold one response into the accumulator. True to keep walking."""
        # Response OIDs are checked against the lowest seed rather than
        # paired by position: duplicate OIDs collapse in the varbind map.
        floor = min(self.acc.seeds, key=oid_sort_key)
        next_seeds = []
        for oid, (value, type_name) in result.varbinds.items():
            if not is_under(oid, self.acc.base) or not is_after(oid, floor):
                continue
            if oid in self.acc.varbinds:
                continue
            self.acc.merge(oid, value, type_name)
            next_seeds.append(oid)

        if not next_seeds or result.end_of_mib:
            return False
        self.acc.seeds = next_seeds
        return True

    def _end_of_view(self, result: Result) -> bool:
        # SNMPv1 agents answer a GETNEXT past the last object with noSuchName
        return (self.session.key.version == SNMPVersion.V1
                and "noSuchName" in (result.error or ""))

    def _finish(self, error: Optional[str] = None) -> None:
        if self._done:
            return
        self._done = True
        log.debug(f"{self.operation.value} {self.session.key} {self.acc.base} done: "
                  f"{len(self.acc.varbinds)} OIDs in {self.acc.steps} requests"
                  + (f", error: {error}" if error else ""))
        self.callback(Result(
            key=self.session.key,
            operation=self.operation,
            varbinds=dict(self.acc.varbinds),
            error=error,
        ))


class BulkWalk(Walk):
    """GETBULK traversal of one subtree."""

    operation = Operation.BULK_WALK
    step_operation = Operation.GET_BULK

    def _merge(self, result: Result) -> bool:
        previous = self.acc.seeds[-1]
        last = None
        for oid, (value, type_name) in result.varbinds.items():
            if not is_under(oid, self.acc.base) or not is_after(oid, previous):
                return False
            self.acc.merge(oid, value, type_name)
            previous = last = oid

        if last is None or result.end_of_mib:
            return False
        self.acc.seeds = [last]
        return True


def create_walk(
    engine: Any,
    dispatcher: Any,
    session: Session,
    request: Request,
    callback: ResultHandler,
    cancelled: Optional[Callable[[], bool]] = None,
) -> Walk:
    """Build the traversal for a WALK or BULK_WALK request."""
    walk_class = BulkWalk if request.operation == Operation.BULK_WALK else Walk
    return walk_class(
        engine,
        dispatcher,
        session,
        request.args[0],
        callback,
        max_repetitions=request.max_repetitions,
        cancelled=cancelled,
    )
