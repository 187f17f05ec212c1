"""
SNMP Poller - Data Models.

Dataclasses shared by the pool, scheduler, walk engine and protocol
engine adapters.

Design Principles:
- Target keys are frozen (a session's identity never changes)
- Requests are the typed form of "operation => bindlist" pairs
- Results carry the same shape for primitive and compound operations
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union


class SNMPVersion(str, Enum):
    """Normalized SNMP version tags."""
    V1 = "v1"
    V2C = "v2c"
    V3 = "v3"


class Operation(str, Enum):
    """Operations a queue item can carry."""
    GET = "get"
    GET_NEXT = "get_next"
    GET_BULK = "get_bulk"
    SET = "set"
    WALK = "walk"
    BULK_WALK = "bulk_walk"

    @property
    def is_compound(self) -> bool:
        """Walks drive several primitive requests from a single queue item."""
        return self in (Operation.WALK, Operation.BULK_WALK)


class RunState(str, Enum):
    """Lifecycle of one poller run."""
    IDLE = "idle"
    ACTIVE = "active"
    DRAINING = "draining"
    FINISHED = "finished"
    TIMED_OUT = "timed_out"


# ASN.1 type tags accepted in set requests
SET_TYPES = (
    "INTEGER",
    "INTEGER32",
    "OCTET_STRING",
    "OBJECT_IDENTIFIER",
    "IPADDRESS",
    "COUNTER",
    "COUNTER32",
    "GAUGE",
    "GAUGE32",
    "UNSIGNED32",
    "TIMETICKS",
    "OPAQUE",
    "COUNTER64",
)

DEFAULT_MAX_REPETITIONS = 10


# OID -> (value, type name)
VarBinds = Dict[str, Tuple[Any, str]]

SetBinding = Tuple[str, str, Any]


@dataclass(frozen=True)
class TargetKey:
    """
    Identity of a logical session.

    Two requests with equal keys share one session; any differing field
    gives a distinct session, even for the same address.
    """
    address: str
    version: SNMPVersion = SNMPVersion.V2C
    community: Optional[str] = None
    username: Optional[str] = None

    def __str__(self) -> str:
        return '|'.join(
            '' if part is None else str(getattr(part, 'value', part))
            for part in (self.address, self.version, self.community, self.username)
        )


@dataclass
class Session:
    """
    A live protocol engine handle for one target key.

    ``options`` holds the normalized options the handle was created with;
    wildcard expansion re-resolves against them.
    """
    key: TargetKey
    handle: Any
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return self.key.address


@dataclass
class Result:
    """
    Outcome of one queue item.

    ``varbinds`` preserves the order the agent returned them in. ``error``
    is None on success.
    """
    key: TargetKey
    operation: Operation
    varbinds: VarBinds = field(default_factory=dict)
    error: Optional[str] = None
    end_of_mib: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def target(self) -> str:
        return self.key.address

    def values(self) -> Dict[str, Any]:
        """OID -> value, without the type names."""
        return {oid: value for oid, (value, _) in self.varbinds.items()}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'target': self.target,
            'session': str(self.key),
            'operation': self.operation.value,
            'error': self.error,
            'varbinds': {
                oid: {'value': value, 'type': type_name}
                for oid, (value, type_name) in self.varbinds.items()
            },
        }


# Inline completion callback: (error_or_None, result)
ResultCallback = Callable[[Optional[str], Result], None]


@dataclass
class Request:
    """
    One operation and its bind list.

    ``args`` is a list of OIDs, or for SET a list of (oid, type, value)
    triples. ``callback`` replaces the broadcast response/error signals
    for this request.
    """
    operation: Operation
    args: List[Any] = field(default_factory=list)
    max_repetitions: Optional[int] = None
    callback: Optional[ResultCallback] = None

    def __post_init__(self):
        try:
            self.operation = Operation(self.operation)
        except ValueError:
            raise ValueError(f"Unknown SNMP operation: {self.operation!r}") from None

        if isinstance(self.args, str):
            self.args = [self.args]
        elif (self.operation == Operation.SET and isinstance(self.args, tuple)
              and self.args and not isinstance(self.args[0], (tuple, list))):
            # a single (oid, type, value) triple
            self.args = [self.args]
        else:
            self.args = list(self.args)

        if self.operation == Operation.SET:
            for binding in self.args:
                if not isinstance(binding, (tuple, list)) or len(binding) != 3:
                    raise ValueError(
                        f"set expects (oid, type, value) triples, got {binding!r}"
                    )
            self.args = [tuple(binding) for binding in self.args]
        elif self.operation.is_compound and len(self.args) != 1:
            raise ValueError(f"{self.operation.value} expects exactly one base OID")

        if self.max_repetitions is not None and self.max_repetitions < 1:
            raise ValueError("max_repetitions must be >= 1")


@dataclass
class QueueItem:
    """A request bound to the session key it will run against."""
    key: TargetKey
    request: Request

    @property
    def operation(self) -> Operation:
        return self.request.operation

    def describe(self) -> str:
        args = ' '.join(str(arg[0] if isinstance(arg, tuple) else arg)
                        for arg in self.request.args)
        return f"{self.key} {self.operation.value}({args})"


@dataclass
class WalkAccumulator:
    """Transient per-walk state; dropped when the walk terminates."""
    base: str
    seeds: List[str] = field(default_factory=list)
    varbinds: VarBinds = field(default_factory=dict)
    steps: int = 0

    def merge(self, oid: str, value: Any, type_name: str) -> None:
        self.varbinds[oid] = (value, type_name)


Targets = Union[str, Sequence[str]]
