from snmp_poller.events import EventEmitter, EventType
from snmp_poller.models import SNMPVersion
from snmp_poller.pool import SessionPool

from .conftest import FakeAgentEngine


def make_pool():
    engine = FakeAgentEngine()
    events = EventEmitter()
    errors = []
    events.subscribe(errors.append, EventType.ERROR)
    return SessionPool(engine, events), engine, errors


def test_same_key_reuses_session():
    pool, engine, _ = make_pool()
    first = pool.resolve("10.0.0.1", {"community": "public"})
    second = pool.resolve("10.0.0.1", None, defaults={"community": "public"})
    assert first is second
    assert len(pool) == 1
    assert len(engine.created) == 1


def test_distinct_credentials_get_distinct_sessions():
    pool, _, _ = make_pool()
    public = pool.resolve("10.0.0.1", {"community": "public"})
    private = pool.resolve("10.0.0.1", {"community": "private"})
    v3 = pool.resolve("10.0.0.1", {"version": "3", "username": "ops"})
    assert len({public.key, private.key, v3.key}) == 3
    assert len(pool) == 3
    assert v3.key.version == SNMPVersion.V3


def test_failed_session_emits_one_error():
    pool, engine, errors = make_pool()
    engine.unreachable.add("bad.example")

    assert pool.resolve("bad.example") is None
    assert len(pool) == 0
    assert len(errors) == 1
    assert errors[0].target == "bad.example"
    assert "Unable to resolve" in errors[0].message


def test_expand_list_skips_failures_and_duplicates():
    pool, engine, errors = make_pool()
    engine.unreachable.add("bad.example")

    sessions = pool.expand(["10.0.0.1", "bad.example", "10.0.0.1", "10.0.0.2"])
    assert [s.address for s in sessions] == ["10.0.0.1", "10.0.0.2"]
    assert len(errors) == 1


def test_wildcard_covers_known_sessions():
    pool, _, _ = make_pool()
    pool.resolve("10.0.0.2", {"community": "lab"})
    pool.resolve("10.0.0.1", {"version": "3", "username": "ops"})

    sessions = pool.expand("*")
    assert sorted(s.address for s in sessions) == ["10.0.0.1", "10.0.0.2"]
    assert len(pool) == 2


def test_wildcard_with_empty_pool_is_empty():
    pool, _, errors = make_pool()
    assert pool.expand("*") == []
    assert errors == []


def test_wildcard_with_new_credentials_adds_sessions():
    pool, _, _ = make_pool()
    pool.resolve("10.0.0.1", {"community": "public"})

    sessions = pool.expand("*", {"community": "private"})
    assert len(sessions) == 1
    assert sessions[0].key.community == "private"
    assert len(pool) == 2


def test_wildcard_keeps_session_options():
    pool, _, _ = make_pool()
    original = pool.resolve("10.0.0.1", {"community": "lab", "port": 1161})

    sessions = pool.expand("*", {"timeout": 1})
    assert sessions[0].key == original.key
    assert sessions[0] is original
