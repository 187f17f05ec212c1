"""
SNMP Poller - Exceptions.

Per-target and per-request failures are reported through the event
surface; these exceptions mark the seams where they are raised.
"""


class PollerError(Exception):
    """Base exception for poller operations."""
    pass


class SessionError(PollerError):
    """The protocol engine could not allocate a session for a target."""
    pass


class RequestError(PollerError):
    """The protocol engine declined to start a request (bad arguments)."""
    pass


class DispatchError(PollerError):
    """The reactor refused a descriptor or timer registration."""
    pass


class ConfigError(PollerError):
    """Invalid poller settings or configuration file."""
    pass
