"""
SNMP Poller - Protocol Engines.

The scheduler talks to SNMP through the ProtocolEngine contract:

    handle = engine.create_session(key, options)        # SessionError
    engine.execute(handle, operation, args, options, on_result)  # RequestError

``execute`` must only be called while a Dispatcher is installed on the
engine (``engine.dispatcher``); the engine hands its I/O to that
dispatcher and calls ``on_result(Result)`` exactly once when the exchange
is over, successful or not.

PysnmpEngine implements the contract with pysnmp's asyncio high-level API.
Each request is a coroutine run through Dispatcher.spawn, so the asyncio
loop behind the poller's reactor drives pysnmp's transport directly.

Usage:
    engine = PysnmpEngine()
    poller = SNMPPoller(engine=engine, concurrent=50)
"""

import asyncio
import ipaddress
import logging
import re
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pyasn1.error import PyAsn1Error
from pyasn1.type import univ
from pysnmp.hlapi.v3arch.asyncio import (
    SnmpEngine, CommunityData, UsmUserData,
    UdpTransportTarget, Udp6TransportTarget, ContextData,
    ObjectType, ObjectIdentity,
    get_cmd, next_cmd, bulk_cmd, set_cmd,
    # Auth protocols
    usmHMACMD5AuthProtocol,
    usmHMACSHAAuthProtocol,
    usmHMAC128SHA224AuthProtocol,
    usmHMAC192SHA256AuthProtocol,
    usmHMAC256SHA384AuthProtocol,
    usmHMAC384SHA512AuthProtocol,
    usmNoAuthProtocol,
    # Priv protocols
    usmDESPrivProtocol,
    usm3DESEDEPrivProtocol,
    usmAesCfb128Protocol,
    usmAesCfb192Protocol,
    usmAesCfb256Protocol,
    usmNoPrivProtocol,
)
from pysnmp.proto import rfc1902, rfc1905

from .config import SESSION_OPTIONS
from .errors import PollerError, RequestError, SessionError
from .models import (
    DEFAULT_MAX_REPETITIONS, Operation, Result, SNMPVersion, TargetKey, VarBinds,
)
from .oids import format_oid


log = logging.getLogger("snmp_poller.engine")

ResultHandler = Callable[[Result], None]


class ProtocolEngine(ABC):
    """
    Contract between the scheduler and an SNMP implementation.

    ``dispatcher`` is set by Dispatcher.installed() around execute().
    Engines that need periodic ticking (retransmit timers kept internally)
    may also define ``poll()``.
    """

    dispatcher: Any = None

    @abstractmethod
    def create_session(self, key: TargetKey, options: Dict[str, Any]) -> Any:
        """Allocate a per-target handle. Raises SessionError."""

    @abstractmethod
    def execute(
        self,
        handle: Any,
        operation: Operation,
        args: Sequence[Any],
        options: Dict[str, Any],
        callback: ResultHandler,
    ) -> None:
        """Start one primitive request. Raises RequestError on rejection."""

    def _require_dispatcher(self):
        if self.dispatcher is None:
            raise RuntimeError(f"{type(self).__name__}.execute() called without a dispatcher")
        return self.dispatcher


# =============================================================================
# SNMPv3 Protocol Mappings
# =============================================================================

AUTH_PROTOCOLS = {
    "MD5": usmHMACMD5AuthProtocol,
    "SHA": usmHMACSHAAuthProtocol,
    "SHA1": usmHMACSHAAuthProtocol,
    "SHA224": usmHMAC128SHA224AuthProtocol,
    "SHA256": usmHMAC192SHA256AuthProtocol,
    "SHA384": usmHMAC256SHA384AuthProtocol,
    "SHA512": usmHMAC384SHA512AuthProtocol,
    "NONE": usmNoAuthProtocol,
}

PRIV_PROTOCOLS = {
    "DES": usmDESPrivProtocol,
    "3DES": usm3DESEDEPrivProtocol,
    "AES": usmAesCfb128Protocol,
    "AES128": usmAesCfb128Protocol,
    "AES192": usmAesCfb192Protocol,
    "AES256": usmAesCfb256Protocol,
    "NONE": usmNoPrivProtocol,
}

# set request type tags -> pysnmp value classes
SET_TYPE_CLASSES = {
    "INTEGER": rfc1902.Integer,
    "INTEGER32": rfc1902.Integer32,
    "OCTET_STRING": rfc1902.OctetString,
    "OBJECT_IDENTIFIER": rfc1902.ObjectIdentifier,
    "IPADDRESS": rfc1902.IpAddress,
    "COUNTER": rfc1902.Counter32,
    "COUNTER32": rfc1902.Counter32,
    "GAUGE": rfc1902.Gauge32,
    "GAUGE32": rfc1902.Gauge32,
    "UNSIGNED32": rfc1902.Unsigned32,
    "TIMETICKS": rfc1902.TimeTicks,
    "OPAQUE": rfc1902.Opaque,
    "COUNTER64": rfc1902.Counter64,
}

DEFAULT_PORT = 161
DEFAULT_TIMEOUT = 5.0
DEFAULT_RETRIES = 1


# =============================================================================
# Value conversion
# =============================================================================

def to_python(value: Any) -> Tuple[Any, str]:
    """
    Convert a pysnmp value to (python value, ASN.1 type name).

    Integers of every flavour become int, IP addresses and OIDs dotted
    strings, octet strings text when printable (pysnmp renders the rest as
    0x-hex). noSuchObject/noSuchInstance become None with their type name.
    """
    type_name = type(value).__name__
    if isinstance(value, (rfc1905.NoSuchObject, rfc1905.NoSuchInstance)):
        return None, type_name
    if isinstance(value, univ.Integer):
        return int(value), type_name
    if isinstance(value, rfc1902.IpAddress):
        return '.'.join(str(octet) for octet in value.asNumbers()), type_name
    if isinstance(value, univ.ObjectIdentifier):
        return str(value), type_name
    if hasattr(value, 'prettyPrint'):
        return value.prettyPrint(), type_name
    return value, type_name


# =============================================================================
# Sessions
# =============================================================================

@dataclass
class PysnmpSession:
    """Per-target pysnmp state; the transport is created on first use."""
    key: TargetKey
    auth_data: Any
    address: str
    family: Optional[int] = socket.AF_INET
    port: int = DEFAULT_PORT
    timeout: float = DEFAULT_TIMEOUT
    retries: int = DEFAULT_RETRIES
    _transport: Any = field(default=None, repr=False)

    @property
    def deadline(self) -> float:
        """Upper bound for one exchange including retries."""
        return self.timeout * (self.retries + 1) + 2

    async def transport(self):
        if self._transport is None:
            address, family = self.address, self.family
            if family is None:
                family, address = await resolve_address(self.address, self.port)
            target_class = Udp6TransportTarget if family == socket.AF_INET6 else UdpTransportTarget
            self._transport = await target_class.create(
                (address, self.port),
                timeout=self.timeout,
                retries=self.retries,
            )
        return self._transport


def build_credentials(version: SNMPVersion, options: Dict[str, Any]):
    """Build pysnmp credentials based on SNMP version"""
    if version == SNMPVersion.V3:
        username = options.get("username")
        if not username:
            raise SessionError("The username is required for SNMPv3")
        if options.get("authkey") or options.get("privkey"):
            raise SessionError("Localized keys are not supported, use authpassword/privpassword")

        auth_password = options.get("authpassword")
        priv_password = options.get("privpassword")
        auth_name = str(options.get("authprotocol") or ("SHA" if auth_password else "NONE")).upper()
        priv_name = str(options.get("privprotocol") or ("AES" if priv_password else "NONE")).upper()
        if auth_name not in AUTH_PROTOCOLS:
            raise SessionError(f"Unknown authprotocol '{auth_name}'")
        if priv_name not in PRIV_PROTOCOLS:
            raise SessionError(f"Unknown privprotocol '{priv_name}'")
        if priv_password and not auth_password:
            raise SessionError("privpassword requires authpassword")

        return UsmUserData(
            username,
            authKey=auth_password,
            privKey=priv_password,
            authProtocol=AUTH_PROTOCOLS[auth_name],
            privProtocol=PRIV_PROTOCOLS[priv_name],
        )

    # v1 or v2c
    mp_model = 0 if version == SNMPVersion.V1 else 1
    return CommunityData(options.get("community") or "public", mpModel=mp_model)


HOSTNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def address_family(address: str) -> Optional[int]:
    """
    Address family of a numeric address, None for a hostname.

    Hostnames are only checked for shape here; the lookup happens when the
    transport is first created so it never blocks the event loop.
    """
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        if not HOSTNAME_PATTERN.match(address):
            raise SessionError(f"Invalid destination address '{address}'")
        return None
    return socket.AF_INET6 if ip.version == 6 else socket.AF_INET


async def resolve_address(address: str, port: int) -> Tuple[int, str]:
    """Resolve a hostname to (address family, numeric address) on the running loop."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(address, port, type=socket.SOCK_DGRAM)
    except (socket.gaierror, UnicodeError) as e:
        raise SessionError(f"Unable to resolve destination address '{address}': {e}") from e
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr[0]


# =============================================================================
# pysnmp engine
# =============================================================================

class PysnmpEngine(ProtocolEngine):
    """
    ProtocolEngine backed by pysnmp.hlapi.v3arch.asyncio.

    Attributes:
        snmp_engine: pysnmp SnmpEngine shared by all sessions
    """

    def __init__(self, snmp_engine: Optional[SnmpEngine] = None):
        self._snmp_engine = snmp_engine
        self.dispatcher = None

    @property
    def snmp_engine(self) -> SnmpEngine:
        if self._snmp_engine is None:
            self._snmp_engine = SnmpEngine()
        return self._snmp_engine

    def create_session(self, key: TargetKey, options: Dict[str, Any]) -> PysnmpSession:
        unknown = sorted(set(options) - SESSION_OPTIONS)
        if unknown:
            raise SessionError(f"Invalid argument '{unknown[0]}'")

        try:
            port = int(options.get("port") or DEFAULT_PORT)
            timeout = float(options.get("timeout") or DEFAULT_TIMEOUT)
            retries = int(options["retries"]) if options.get("retries") is not None else DEFAULT_RETRIES
        except (TypeError, ValueError) as e:
            raise SessionError(f"Invalid session option: {e}") from e
        if timeout <= 0 or retries < 0 or not 0 < port < 65536:
            raise SessionError("port, timeout and retries must be positive")

        auth_data = build_credentials(key.version, options)
        family = address_family(key.address)

        log.debug(f"pysnmp session {key} -> {key.address}:{port} "
                  f"timeout={timeout}s retries={retries}")
        return PysnmpSession(
            key=key,
            auth_data=auth_data,
            address=key.address,
            family=family,
            port=port,
            timeout=timeout,
            retries=retries,
        )

    def execute(
        self,
        handle: PysnmpSession,
        operation: Operation,
        args: Sequence[Any],
        options: Dict[str, Any],
        callback: ResultHandler,
    ) -> None:
        dispatcher = self._require_dispatcher()
        operation = Operation(operation)
        if operation.is_compound:
            raise RequestError(f"{operation.value} is not a primitive request")
        if not args:
            raise RequestError(f"{operation.value}: empty variable-bindings list")
        if operation == Operation.GET_BULK and handle.key.version == SNMPVersion.V1:
            raise RequestError("get_bulk is not supported by SNMPv1")

        try:
            var_binds = self._build_var_binds(operation, args)
        except (ValueError, TypeError, KeyError, PyAsn1Error) as e:
            raise RequestError(f"{operation.value}: {e}") from e

        max_repetitions = options.get("max_repetitions") or DEFAULT_MAX_REPETITIONS

        def done(result: Optional[Result], exc: Optional[BaseException]) -> None:
            if exc is not None:
                result = Result(handle.key, operation, error=self._describe(exc, handle))
            callback(result)

        dispatcher.spawn(self._request(handle, operation, var_binds, max_repetitions), done)

    def _build_var_binds(self, operation: Operation, args: Sequence[Any]) -> List[ObjectType]:
        if operation == Operation.SET:
            var_binds = []
            for oid, type_name, value in args:
                value_class = SET_TYPE_CLASSES[str(type_name).upper()]
                var_binds.append(ObjectType(ObjectIdentity(format_oid(oid)), value_class(value)))
            return var_binds
        return [ObjectType(ObjectIdentity(format_oid(oid))) for oid in args]

    async def _request(
        self,
        handle: PysnmpSession,
        operation: Operation,
        var_binds: List[ObjectType],
        max_repetitions: int,
    ) -> Result:
        transport = await handle.transport()
        auth = handle.auth_data
        engine = self.snmp_engine

        if operation == Operation.GET:
            command = get_cmd(engine, auth, transport, ContextData(), *var_binds,
                              lookupMib=False)
        elif operation == Operation.GET_NEXT:
            command = next_cmd(engine, auth, transport, ContextData(), *var_binds,
                               lookupMib=False)
        elif operation == Operation.GET_BULK:
            command = bulk_cmd(engine, auth, transport, ContextData(),
                               0, max_repetitions, *var_binds,
                               lookupMib=False)
        else:
            command = set_cmd(engine, auth, transport, ContextData(), *var_binds,
                              lookupMib=False)

        error_indication, error_status, error_index, response = await asyncio.wait_for(
            command, timeout=handle.deadline
        )
        return self._to_result(handle.key, operation, error_indication,
                               error_status, error_index, response)

    @staticmethod
    def _to_result(
        key: TargetKey,
        operation: Operation,
        error_indication: Any,
        error_status: Any,
        error_index: Any,
        response: Sequence[Any],
    ) -> Result:
        if error_indication:
            return Result(key, operation, error=str(error_indication))

        if error_status:
            return Result(key, operation,
                          error=f"{error_status.prettyPrint()} at {error_index}")

        varbinds: VarBinds = {}
        end_of_mib = False
        for var_bind in response:
            name, value = var_bind[0], var_bind[1]
            if isinstance(value, rfc1905.EndOfMibView):
                end_of_mib = True
                continue
            varbinds[str(name)] = to_python(value)

        return Result(key, operation, varbinds=varbinds, end_of_mib=end_of_mib)

    @staticmethod
    def _describe(exc: BaseException, handle: PysnmpSession) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return f"Timeout after {handle.deadline:.0f}s"
        if isinstance(exc, asyncio.CancelledError):
            return "Request cancelled"
        if isinstance(exc, PollerError):
            return str(exc)
        return f"{type(exc).__name__}: {exc}"
