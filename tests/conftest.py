import asyncio
import bisect

import pytest

from snmp_poller.engine import ProtocolEngine
from snmp_poller.errors import RequestError, SessionError
from snmp_poller.models import Operation, Result
from snmp_poller.oids import parse_oid
from snmp_poller.poller import SNMPPoller
from snmp_poller.reactor import AsyncioReactor


SYSTEM_MIB = {
    "1.3.6.1.2.1.1.1.0": ("Test agent", "OctetString"),
    "1.3.6.1.2.1.1.3.0": (12345, "TimeTicks"),
    "1.3.6.1.2.1.1.5.0": ("router1", "OctetString"),
}


class FakeHandle:
    def __init__(self, key, options):
        self.key = key
        self.options = options


class FakeAgentEngine(ProtocolEngine):
    """
    In-memory agents answering through the dispatcher.

    Every request is a coroutine spawned on the dispatcher, completing
    after ``delay`` seconds, or synchronously when ``delay`` is None.
    Requests for an OID in ``refused_oids`` try to watch an invalid
    descriptor, so the dispatcher refuses them.
    """

    def __init__(self, mib=None, delay=0.01):
        self.mib = dict(SYSTEM_MIB if mib is None else mib)
        self.delay = delay
        self.unreachable = set()
        self.failing_oids = {}
        self.refused_oids = set()
        self.created = []
        self.executed = []
        self.active = 0
        self.max_active = 0
        self.dispatcher = None
        self._index = None

    def create_session(self, key, options):
        if key.address in self.unreachable:
            raise SessionError(f"Unable to resolve destination address '{key.address}'")
        self.created.append(key)
        return FakeHandle(key, options)

    def execute(self, handle, operation, args, options, callback):
        dispatcher = self._require_dispatcher()
        oids = [arg[0] if isinstance(arg, tuple) else arg for arg in args]
        try:
            for oid in oids:
                parse_oid(oid)
        except ValueError as e:
            raise RequestError(f"{operation.value}: {e}") from e

        if self.refused_oids.intersection(oids):
            dispatcher.register(-1, lambda: None)

        self.executed.append((handle.key.address, operation, list(oids)))
        self.active += 1
        self.max_active = max(self.max_active, self.active)

        def finish(result):
            self.active -= 1
            callback(result)

        if self.delay is None:
            finish(self.answer(handle, operation, args, options))
            return

        async def exchange():
            await asyncio.sleep(self.delay)
            return self.answer(handle, operation, args, options)

        dispatcher.spawn(exchange(), lambda result, exc: finish(result))

    def later(self, oid):
        """Names in the MIB strictly after ``oid``, in OID order."""
        if self._index is None or len(self._index[1]) != len(self.mib):
            ordered = sorted((parse_oid(name), name) for name in self.mib)
            self._index = ([key for key, _ in ordered], [name for _, name in ordered])
        keys, names = self._index
        return names[bisect.bisect_right(keys, parse_oid(oid)):]

    def answer(self, handle, operation, args, options):
        key = handle.key
        oids = [arg[0] if isinstance(arg, tuple) else arg for arg in args]
        for oid in oids:
            if oid in self.failing_oids:
                return Result(key, operation, error=self.failing_oids[oid])

        if operation == Operation.GET:
            varbinds = {}
            for oid in oids:
                varbinds[oid] = self.mib.get(oid, (None, "NoSuchObject"))
            return Result(key, operation, varbinds=varbinds)

        if operation == Operation.SET:
            for oid, type_name, value in args:
                self.mib[oid] = (value, type_name)
            self._index = None
            return Result(key, operation,
                          varbinds={oid: (value, type_name) for oid, type_name, value in args})

        if operation == Operation.GET_NEXT:
            varbinds = {}
            end = False
            for oid in oids:
                later = self.later(oid)
                if later:
                    varbinds[later[0]] = self.mib[later[0]]
                else:
                    end = True
            return Result(key, operation, varbinds=varbinds, end_of_mib=end)

        if operation == Operation.GET_BULK:
            count = options.get("max_repetitions") or 10
            chunk = self.later(oids[0])[:count]
            return Result(key, operation,
                          varbinds={o: self.mib[o] for o in chunk},
                          end_of_mib=len(chunk) < count)

        raise AssertionError(f"unexpected operation {operation}")


@pytest.fixture
def reactor():
    loop = asyncio.new_event_loop()
    yield AsyncioReactor(loop)
    loop.close()


@pytest.fixture
def engine():
    return FakeAgentEngine()


@pytest.fixture
def make_poller(reactor, engine):
    def factory(**kwargs):
        kwargs.setdefault("engine", engine)
        kwargs.setdefault("reactor", reactor)
        return SNMPPoller(**kwargs)
    return factory


class Recorder:
    """Collects poller events by type."""

    def __init__(self, poller):
        self.events = []
        poller.events.subscribe(self.events.append)

    def of(self, event_type):
        return [event for event in self.events if event.event_type.value == event_type]


@pytest.fixture
def recorder():
    return Recorder
