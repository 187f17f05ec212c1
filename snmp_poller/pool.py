"""
SNMP Poller - Session Pool.

Maps target keys to live sessions. Sessions are created on first use and
kept for the lifetime of the poller.
"""

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional

from .config import effective_options, pool_key
from .errors import SessionError
from .events import EventEmitter
from .models import Session, TargetKey, Targets


log = logging.getLogger("snmp_poller.pool")

ALL_TARGETS = "*"


class SessionPool:
    """
    Session cache keyed by (address, version, community, username).

    Attributes:
        engine: ProtocolEngine used to allocate session handles
        events: EventEmitter receiving session creation errors
    """

    def __init__(self, engine: Any, events: EventEmitter):
        self.engine = engine
        self.events = events
        self._sessions: Dict[TargetKey, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: TargetKey) -> bool:
        return key in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def get(self, key: TargetKey) -> Optional[Session]:
        return self._sessions.get(key)

    def keys(self) -> List[TargetKey]:
        return list(self._sessions)

    def resolve(
        self,
        address: str,
        options: Optional[Mapping[str, Any]] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Session]:
        """
        Return the session for ``address`` under the merged options.

        A new session is allocated when the key is unknown. If the engine
        refuses, an error event is emitted and None returned.
        """
        normalized = effective_options(defaults, options)
        key = pool_key(address, normalized)

        session = self._sessions.get(key)
        if session is not None:
            return session

        try:
            handle = self.engine.create_session(key, normalized)
        except SessionError as e:
            log.warning(f"New session {address}: {e}")
            self.events.error(f"{address}: {e}", target=address)
            return None

        session = Session(key=key, handle=handle, options=normalized)
        self._sessions[key] = session
        log.debug(f"New session {key}")
        return session

    def expand(
        self,
        targets: Targets,
        options: Optional[Mapping[str, Any]] = None,
        defaults: Optional[Mapping[str, Any]] = None,
    ) -> List[Session]:
        """
        Resolve one address, a list of addresses, or "*" to sessions.

        "*" means every session known right now. Each is re-resolved from
        its address with its own options overlaid by ``options``, so new
        credentials give the same address a second session. Sessions that
        fail to resolve are left out; duplicates are removed.
        """
        if isinstance(targets, str):
            targets = [targets]

        sessions: List[Session] = []
        for target in targets:
            if target == ALL_TARGETS:
                # snapshot before resolving adds to the pool
                for known in sorted(self._sessions.values(), key=lambda s: str(s.key)):
                    sessions.append(self.resolve(known.address, options, defaults=known.options))
            else:
                sessions.append(self.resolve(target, options, defaults=defaults))

        unique: Dict[TargetKey, Session] = {}
        for session in sessions:
            if session is not None and session.key not in unique:
                unique[session.key] = session
        return list(unique.values())
