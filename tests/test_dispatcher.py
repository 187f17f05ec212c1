import asyncio
import socket

import pytest

from snmp_poller.dispatcher import Dispatcher
from snmp_poller.errors import DispatchError


class PolledEngine:
    """Engine that needs poll() ticks while it has sockets open."""

    def __init__(self):
        self.dispatcher = None
        self.polls = 0

    def poll(self):
        self.polls += 1


def test_installed_sets_and_restores_dispatcher(reactor):
    dispatcher = Dispatcher(reactor)
    engine = PolledEngine()

    with dispatcher.installed(engine) as installed:
        assert installed is engine
        assert engine.dispatcher is dispatcher
    assert engine.dispatcher is None


def test_register_reports_readiness(reactor):
    dispatcher = Dispatcher(reactor)
    left, right = socket.socketpair()
    received = []

    def on_ready():
        received.append(left.recv(16))
        dispatcher.deregister(left.fileno())
        reactor.stop()

    try:
        dispatcher.register(left.fileno(), on_ready)
        assert dispatcher.connections == 1
        assert dispatcher.descriptors == {left.fileno(): "read"}

        right.send(b"pdu")
        reactor.start()
    finally:
        left.close()
        right.close()

    assert received == [b"pdu"]
    assert dispatcher.connections == 0


def test_deregister_unknown_fd_is_ignored(reactor):
    dispatcher = Dispatcher(reactor)
    dispatcher.deregister(12345)
    assert dispatcher.connections == 0


def test_refused_descriptor_raises(reactor):
    dispatcher = Dispatcher(reactor)
    with pytest.raises(DispatchError):
        dispatcher.register(-1, lambda: None)
    assert dispatcher.connections == 0


def test_polling_runs_only_while_connections_open(reactor):
    dispatcher = Dispatcher(reactor, poll_interval=0.005)
    engine = PolledEngine()
    left, right = socket.socketpair()

    def release():
        dispatcher.deregister(left.fileno())
        polls_at_release.append(engine.polls)
        reactor.timer(0.03, reactor.stop)

    polls_at_release = []
    try:
        with dispatcher.installed(engine):
            dispatcher.register(left.fileno(), lambda: None)
        reactor.timer(0.05, release)
        reactor.start()
    finally:
        left.close()
        right.close()

    assert polls_at_release[0] > 0
    assert engine.polls == polls_at_release[0]
    assert reactor.pending_timers == 0


def test_spawned_coroutine_counts_as_connection(reactor):
    dispatcher = Dispatcher(reactor)
    seen = []

    async def exchange():
        await asyncio.sleep(0.01)
        return "response"

    def done(result, exc):
        seen.append((result, exc, dispatcher.connections))
        reactor.stop()

    dispatcher.spawn(exchange(), done)
    assert dispatcher.connections == 1
    reactor.start()

    assert seen == [("response", None, 0)]


def test_engine_timers(reactor):
    dispatcher = Dispatcher(reactor)
    fired = []

    cancelled = dispatcher.schedule(0.01, lambda: fired.append("retransmit"))
    dispatcher.schedule(0.02, lambda: (fired.append("timeout"), reactor.stop()))
    dispatcher.cancel(cancelled)
    reactor.start()

    assert fired == ["timeout"]
