"""
SNMP Poller - Event System.

The poller publishes four signals:

    response  - a request completed with a value set
    error     - a session could not be created, a request was rejected,
                or the agent answered with an error
    finish    - the backlog is empty and nothing is in flight
    timeout   - the master timeout elapsed before finish

Event Flow:
    (response | error)* -> finish
    (response | error)* -> timeout

Listeners receive a PollEvent and can switch on event_type, or subscribe
to a single type. Requests submitted with an inline callback do not
produce response/error events.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .models import Result


log = logging.getLogger("snmp_poller.events")


class EventType(str, Enum):
    """Poller event types."""
    RESPONSE = "response"
    ERROR = "error"
    FINISH = "finish"
    TIMEOUT = "timeout"


@dataclass
class PollStats:
    """Counters for the current run."""
    responses: int = 0
    errors: int = 0
    runs_finished: int = 0
    runs_timed_out: int = 0
    started_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.responses + self.errors

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        return (datetime.now() - self.started_at).total_seconds()


@dataclass
class PollEvent:
    """
    Event emitted by the poller.

    All events have a type, timestamp, and event-specific data.
    """
    event_type: EventType
    timestamp: datetime = field(default_factory=datetime.now)
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def result(self) -> Optional[Result]:
        """Result of the request, for response and most error events."""
        return self.data.get("result")

    @property
    def message(self) -> str:
        """Error message if present."""
        return self.data.get("message", "")

    @property
    def target(self) -> str:
        """Target address if present."""
        result = self.result
        if result is not None:
            return result.target
        return self.data.get("target", "")


EventCallback = Callable[[PollEvent], None]


class EventEmitter:
    """
    Publish/subscribe point for poller signals.

    Usage:
        emitter = EventEmitter()

        # Subscribe to all events
        emitter.subscribe(my_handler)

        # Subscribe to specific event types
        emitter.subscribe(on_response, EventType.RESPONSE)

        # One-shot listener
        emitter.once(on_finish, EventType.FINISH)
    """

    def __init__(self):
        self._listeners: List[tuple] = []
        self._stats = PollStats()

    @property
    def stats(self) -> PollStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = PollStats(
            runs_finished=self._stats.runs_finished,
            runs_timed_out=self._stats.runs_timed_out,
            started_at=datetime.now(),
        )

    def subscribe(
        self,
        callback: EventCallback,
        event_type: Optional[EventType] = None,
    ) -> None:
        """
        Subscribe to events.

        Args:
            callback: Function to call with PollEvent
            event_type: If specified, only receive this event type
        """
        self._listeners.append((callback, event_type, False))

    def once(
        self,
        callback: EventCallback,
        event_type: Optional[EventType] = None,
    ) -> None:
        """Subscribe for the next matching event only."""
        self._listeners.append((callback, event_type, True))

    def unsubscribe(self, callback: EventCallback) -> None:
        """Remove a callback from listeners."""
        self._listeners = [
            entry for entry in self._listeners if entry[0] != callback
        ]

    def clear(self) -> None:
        """Remove all listeners."""
        self._listeners.clear()

    def has_listeners(self, event_type: EventType) -> bool:
        return any(
            filter_type is None or filter_type == event_type
            for _, filter_type, _ in self._listeners
        )

    def emit(self, event_type: EventType, **data) -> PollEvent:
        """
        Emit an event to all subscribed listeners.

        Listener exceptions are logged and never propagate into the poller.
        """
        event = PollEvent(event_type=event_type, data=data)

        for entry in list(self._listeners):
            callback, filter_type, one_shot = entry
            if filter_type is not None and filter_type != event_type:
                continue
            if one_shot:
                try:
                    self._listeners.remove(entry)
                except ValueError:
                    continue
            try:
                callback(event)
            except Exception:
                log.exception(f"{event_type.value} listener failed")

        return event

    # =========================================================================
    # Signals
    # =========================================================================

    def response(self, result: Result) -> None:
        self._stats.responses += 1
        self.emit(EventType.RESPONSE, result=result)

    def error(
        self,
        message: str,
        result: Optional[Result] = None,
        target: str = "",
    ) -> None:
        self._stats.errors += 1
        self.emit(EventType.ERROR, message=message, result=result, target=target)

    def finish(self) -> None:
        self._stats.runs_finished += 1
        self.emit(
            EventType.FINISH,
            responses=self._stats.responses,
            errors=self._stats.errors,
            duration_seconds=self._stats.elapsed_seconds,
        )

    def timeout(self) -> None:
        self._stats.runs_timed_out += 1
        self.emit(
            EventType.TIMEOUT,
            responses=self._stats.responses,
            errors=self._stats.errors,
            duration_seconds=self._stats.elapsed_seconds,
        )


# =========================================================================
# Console Event Printer (for CLI)
# =========================================================================

class ConsoleEventPrinter:
    """
    Prints poller events to console.

    Usage:
        printer = ConsoleEventPrinter(color=True)
        poller.events.subscribe(printer.handle_event)
    """

    COLORS = {
        "reset": "\033[0m",
        "bold": "\033[1m",
        "dim": "\033[2m",
        "red": "\033[31m",
        "green": "\033[32m",
        "yellow": "\033[33m",
        "cyan": "\033[36m",
    }

    def __init__(self, color: bool = True, show_timestamps: bool = False):
        self.color = color
        self.show_timestamps = show_timestamps

    def _c(self, text: str, *colors: str) -> str:
        """Apply colors if enabled."""
        if not self.color:
            return text
        codes = "".join(self.COLORS.get(c, "") for c in colors)
        return f"{codes}{text}{self.COLORS['reset']}"

    def _timestamp(self, event: PollEvent) -> str:
        if not self.show_timestamps:
            return ""
        return f"[{event.timestamp.strftime('%H:%M:%S')}] "

    def handle_event(self, event: PollEvent) -> None:
        handler = getattr(self, f"_handle_{event.event_type.value}", None)
        if handler:
            handler(event)

    def _handle_response(self, event: PollEvent) -> None:
        result = event.result
        print(f"{self._timestamp(event)}{self._c(result.target, 'cyan', 'bold')} "
              f"{self._c(result.operation.value, 'dim')}")
        for oid, (value, type_name) in result.varbinds.items():
            print(f"  {oid} = {type_name}: {value}")

    def _handle_error(self, event: PollEvent) -> None:
        status = self._c("ERROR", "red", "bold")
        target = event.target or "-"
        print(f"{self._timestamp(event)}{status}: {target} - {event.message}")

    def _handle_finish(self, event: PollEvent) -> None:
        data = event.data
        print(self._c(
            f"Finished: {data['responses']} responses, {data['errors']} errors "
            f"in {data['duration_seconds']:.2f}s",
            "green",
        ))

    def _handle_timeout(self, event: PollEvent) -> None:
        data = event.data
        print(self._c(
            f"Master timeout after {data['duration_seconds']:.2f}s "
            f"({data['responses']} responses, {data['errors']} errors)",
            "yellow", "bold",
        ))
