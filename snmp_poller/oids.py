"""
SNMP Poller - OID Helpers.

Numeric OID parsing, ordering and subtree containment used by the
walk engine.

OIDs are compared component-wise as sequences of non-negative integers,
never as strings:

    >>> is_under("1.3.6.1.2.1.1.5.0", "1.3.6.1.2.1.1")
    True
    >>> is_under("1.3.6.1.10", "1.3.6.1.1")
    False
"""

from typing import Tuple, Union

OIDLike = Union[str, Tuple[int, ...]]


def parse_oid(oid: OIDLike) -> Tuple[int, ...]:
    """
    Parse a dotted numeric OID into a tuple of integers.

    A leading dot is accepted ("." + "1.3.6" is how net-snmp prints them).

    Raises:
        ValueError: if the OID is empty or has a non-numeric component
    """
    if isinstance(oid, tuple):
        return oid

    text = str(oid).strip()
    if text.startswith('.'):
        text = text[1:]
    if not text:
        raise ValueError("Empty OID")

    parts = []
    for part in text.split('.'):
        if not part.isdigit():
            raise ValueError(f"Invalid OID component {part!r} in {oid!r}")
        parts.append(int(part))
    return tuple(parts)


def format_oid(oid: OIDLike) -> str:
    """Normalize an OID to its dotted string form without leading dot."""
    return '.'.join(str(part) for part in parse_oid(oid))


def is_under(oid: OIDLike, base: OIDLike) -> bool:
    """True if ``oid`` lies strictly inside the subtree rooted at ``base``."""
    oid_t = parse_oid(oid)
    base_t = parse_oid(base)
    return len(oid_t) > len(base_t) and oid_t[:len(base_t)] == base_t


def is_after(oid: OIDLike, previous: OIDLike) -> bool:
    """True if ``oid`` sorts lexicographically after ``previous``."""
    return parse_oid(oid) > parse_oid(previous)


def oid_sort_key(oid: OIDLike) -> Tuple[int, ...]:
    """Sort key for OID strings (``sorted(oids, key=oid_sort_key)``)."""
    return parse_oid(oid)


# =============================================================================
# Well-known OIDs
# =============================================================================

class SYSTEM:
    """
    SNMPv2-MIB System Group OIDs.

    Base: 1.3.6.1.2.1.1 (iso.org.dod.internet.mgmt.mib-2.system)
    """
    BASE = "1.3.6.1.2.1.1"

    SYS_DESCR = "1.3.6.1.2.1.1.1.0"
    SYS_OBJECT_ID = "1.3.6.1.2.1.1.2.0"
    SYS_UPTIME = "1.3.6.1.2.1.1.3.0"
    SYS_CONTACT = "1.3.6.1.2.1.1.4.0"
    SYS_NAME = "1.3.6.1.2.1.1.5.0"
    SYS_LOCATION = "1.3.6.1.2.1.1.6.0"
