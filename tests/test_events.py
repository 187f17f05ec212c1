import logging

from snmp_poller.events import ConsoleEventPrinter, EventEmitter, EventType
from snmp_poller.models import Operation, Result, TargetKey


def make_result(error=None):
    return Result(TargetKey("10.0.0.1"), Operation.GET,
                  varbinds={"1.3.6.1.2.1.1.5.0": ("router1", "OctetString")},
                  error=error)


def test_filtered_subscription():
    emitter = EventEmitter()
    seen = []
    emitter.subscribe(seen.append, EventType.ERROR)

    emitter.response(make_result())
    emitter.error("boom", target="10.0.0.2")

    assert [event.event_type for event in seen] == [EventType.ERROR]
    assert seen[0].target == "10.0.0.2"
    assert seen[0].message == "boom"


def test_once_fires_once():
    emitter = EventEmitter()
    seen = []
    emitter.once(seen.append, EventType.FINISH)
    emitter.finish()
    emitter.finish()
    assert len(seen) == 1


def test_unsubscribe():
    emitter = EventEmitter()
    seen = []
    emitter.subscribe(seen.append)
    emitter.unsubscribe(seen.append)
    emitter.response(make_result())
    assert seen == []
    assert not emitter.has_listeners(EventType.RESPONSE)


def test_listener_failure_is_logged(caplog):
    emitter = EventEmitter()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    emitter.subscribe(broken)
    emitter.subscribe(seen.append)

    with caplog.at_level(logging.ERROR, logger="snmp_poller.events"):
        emitter.response(make_result())

    assert len(seen) == 1
    assert "response listener failed" in caplog.text


def test_finish_carries_run_counters():
    emitter = EventEmitter()
    emitter.reset_stats()
    emitter.response(make_result())
    emitter.response(make_result())
    emitter.error("boom")

    seen = []
    emitter.subscribe(seen.append, EventType.FINISH)
    emitter.finish()

    assert seen[0].data["responses"] == 2
    assert seen[0].data["errors"] == 1
    assert emitter.stats.runs_finished == 1

    emitter.reset_stats()
    assert emitter.stats.total == 0
    assert emitter.stats.runs_finished == 1


def test_error_event_target_from_result():
    emitter = EventEmitter()
    seen = []
    emitter.subscribe(seen.append)
    emitter.error("noSuchName at 1", result=make_result("noSuchName at 1"))
    assert seen[0].target == "10.0.0.1"
    assert seen[0].result.error == "noSuchName at 1"


def test_console_printer(capsys):
    emitter = EventEmitter()
    emitter.subscribe(ConsoleEventPrinter(color=False).handle_event)
    emitter.reset_stats()

    emitter.response(make_result())
    emitter.error("Timeout after 12s", target="10.0.0.9")
    emitter.finish()

    out = capsys.readouterr().out
    assert "10.0.0.1 get" in out
    assert "1.3.6.1.2.1.1.5.0 = OctetString: router1" in out
    assert "ERROR: 10.0.0.9 - Timeout after 12s" in out
    assert "Finished: 1 responses, 1 errors" in out
