"""
SNMP Poller - Run SNMP requests concurrently on one asyncio loop.

Architecture:
    snmp_poller/
    ├── poller.py      # SNMPPoller: queue, admission, master timeout
    ├── pool.py        # Session pool keyed by address + credentials
    ├── dispatcher.py  # Bridge between the protocol engine and the reactor
    ├── engine.py      # ProtocolEngine contract, pysnmp implementation
    ├── walker.py      # Walk / BulkWalk traversals
    ├── reactor.py     # asyncio reactor wrapper
    ├── events.py      # response/error/finish/timeout events
    ├── config.py      # Settings, option merging, YAML loading
    ├── models.py      # Dataclasses
    └── oids.py        # OID helpers

Quick Start:
    from snmp_poller import SNMPPoller

    poller = SNMPPoller(defaults={"community": "public"})
    poller.on("response", lambda event: print(event.target, event.result.values()))
    poller.prepare(["10.0.0.1", "10.0.0.2"], get=["1.3.6.1.2.1.1.5.0"])
    poller.wait()
"""

__version__ = "0.2.0"
__author__ = "snmp-poller contributors"

from .config import PollerSettings, effective_options, load_settings, pool_key
from .dispatcher import Dispatcher
from .engine import ProtocolEngine, PysnmpEngine
from .errors import ConfigError, DispatchError, PollerError, RequestError, SessionError
from .events import ConsoleEventPrinter, EventEmitter, EventType, PollEvent
from .models import (
    Operation,
    QueueItem,
    Request,
    Result,
    RunState,
    Session,
    SNMPVersion,
    TargetKey,
)
from .poller import SNMPPoller
from .pool import SessionPool
from .reactor import AsyncioReactor
from .walker import BulkWalk, Walk

__all__ = [
    # Poller
    'SNMPPoller',
    'SessionPool',
    'Dispatcher',
    'AsyncioReactor',
    'Walk',
    'BulkWalk',
    # Engines
    'ProtocolEngine',
    'PysnmpEngine',
    # Events
    'EventEmitter',
    'EventType',
    'PollEvent',
    'ConsoleEventPrinter',
    # Config
    'PollerSettings',
    'effective_options',
    'load_settings',
    'pool_key',
    # Models
    'Operation',
    'QueueItem',
    'Request',
    'Result',
    'RunState',
    'Session',
    'SNMPVersion',
    'TargetKey',
    # Errors
    'PollerError',
    'SessionError',
    'RequestError',
    'DispatchError',
    'ConfigError',
]
