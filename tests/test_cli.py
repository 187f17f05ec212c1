import asyncio
import json
import logging

import pytest

from snmp_poller import __main__ as cli
from snmp_poller.models import Operation
from snmp_poller.poller import SNMPPoller
from snmp_poller.reactor import AsyncioReactor

from .conftest import FakeAgentEngine


@pytest.fixture
def fake_poller(monkeypatch):
    """Run main() against in-memory agents on a private loop."""
    engine = FakeAgentEngine()
    loop = asyncio.new_event_loop()
    created = []

    class FakePoller(SNMPPoller):
        @classmethod
        def from_settings(cls, settings, **kwargs):
            poller = super().from_settings(settings, engine=engine,
                                           reactor=AsyncioReactor(loop))
            created.append(poller)
            return poller

    monkeypatch.setattr(cli, "SNMPPoller", FakePoller)
    monkeypatch.setattr(cli, "setup_logging", lambda level, color=True: None)
    yield engine, created
    loop.close()


def test_parser_get():
    args = cli.create_parser().parse_args([
        "get", "10.0.0.1", "10.0.0.2", "-c", "lab", "-V", "1",
        "--oid", "1.3.6.1.2.1.1.5.0", "--oid", "1.3.6.1.2.1.1.3.0",
    ])
    assert args.command == "get"
    assert args.targets == ["10.0.0.1", "10.0.0.2"]
    assert cli.session_options(args) == {"version": "1", "community": "lab"}

    requests = cli.build_requests(Operation.GET, args)
    assert len(requests) == 1
    assert requests[0].args == ["1.3.6.1.2.1.1.5.0", "1.3.6.1.2.1.1.3.0"]


def test_parser_v3_options():
    args = cli.create_parser().parse_args([
        "get", "10.0.0.1", "-V", "3", "-u", "ops",
        "--auth-protocol", "SHA256", "--auth-password", "secret123",
        "--oid", "1.3.6.1.2.1.1.3.0",
    ])
    assert cli.session_options(args) == {
        "version": "3", "username": "ops",
        "authprotocol": "SHA256", "authpassword": "secret123",
    }


def test_walk_bases_become_separate_requests():
    args = cli.create_parser().parse_args([
        "bulk-walk", "10.0.0.1", "--oid", "1.3.6.1.2.1.2.2.1.2",
        "--oid", "1.3.6.1.2.1.31.1.1.1.1", "--max-repetitions", "25",
    ])
    requests = cli.build_requests(Operation.BULK_WALK, args)
    assert [r.args for r in requests] == [["1.3.6.1.2.1.2.2.1.2"], ["1.3.6.1.2.1.31.1.1.1.1"]]
    assert all(r.max_repetitions == 25 for r in requests)


def test_set_bindings():
    args = cli.create_parser().parse_args([
        "set", "10.0.0.1", "--oid", "1.3.6.1.2.1.1.6.0", "OCTET_STRING", "lab",
    ])
    requests = cli.build_requests(Operation.SET, args)
    assert requests[0].args == [("1.3.6.1.2.1.1.6.0", "OCTET_STRING", "lab")]


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 2
    assert "snmp-poller" in capsys.readouterr().out


def test_main_json_output(fake_poller, capsys):
    engine, created = fake_poller
    code = cli.main(["get", "10.0.0.1", "10.0.0.2", "--json", "--concurrent", "1",
                     "--oid", "1.3.6.1.2.1.1.5.0"])

    assert code == 0
    assert created[0].concurrent == 1
    output = json.loads(capsys.readouterr().out)
    assert output["timeout"] is False
    assert [r["target"] for r in output["results"]] == ["10.0.0.1", "10.0.0.2"]
    assert output["results"][0]["varbinds"]["1.3.6.1.2.1.1.5.0"]["value"] == "router1"


def test_main_reports_errors(fake_poller, capsys):
    engine, _ = fake_poller
    engine.unreachable.add("nowhere.example")
    code = cli.main(["get", "nowhere.example", "--no-color", "--oid", "1.3.6.1.2.1.1.5.0"])

    assert code == 1
    assert "ERROR: nowhere.example" in capsys.readouterr().out


def test_main_uses_config_file(fake_poller, tmp_path):
    _, created = fake_poller
    path = tmp_path / "poller.yaml"
    path.write_text("poller:\n  concurrent: 7\n  defaults:\n    community: lab\n")

    code = cli.main(["walk", "10.0.0.1", "--json", "--config", str(path),
                     "--oid", "1.3.6.1.2.1.1"])

    assert code == 0
    assert created[0].concurrent == 7
    assert created[0].pool.keys()[0].community == "lab"


def test_main_rejects_bad_settings(fake_poller, tmp_path, capsys):
    assert cli.main(["get", "10.0.0.1", "--concurrent", "-3", "--oid", "1.3.6.1"]) == 2
    assert "invalid option" in capsys.readouterr().err

    assert cli.main(["get", "10.0.0.1", "--config", str(tmp_path / "missing.yaml"),
                     "--oid", "1.3.6.1"]) == 2
    assert "Cannot read config" in capsys.readouterr().err


@pytest.fixture
def package_logger():
    logger = logging.getLogger("snmp_poller")
    saved = logger.handlers[:], logger.level, logger.propagate
    yield logger
    logger.handlers, logger.level, logger.propagate = saved


def log_line(logger):
    record = logging.LogRecord("snmp_poller.scheduler", logging.WARNING, __file__, 1,
                               "Master timeout after 5s", None, None)
    return logger.handlers[0].format(record)


def test_setup_logging_no_color(package_logger):
    cli.setup_logging("INFO", color=False)
    line = log_line(package_logger)
    assert "\033[" not in line
    assert "WARNING" in line
    assert package_logger.level == logging.INFO


def test_no_color_flag_reaches_log_formatter(monkeypatch, fake_poller):
    calls = []
    monkeypatch.setattr(cli, "setup_logging", lambda level, color=True: calls.append((level, color)))

    assert cli.main(["get", "10.0.0.1", "--no-color", "--json", "--oid", "1.3.6.1.2.1.1.5.0"]) == 0
    assert calls == [("WARNING", False)]
