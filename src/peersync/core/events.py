"""Event channel through which the orchestrator reports to observers."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..utils.logging import get_logger


class EventType(str, Enum):
    STATUS_CHANGED = "status_changed"
    PROGRESS = "progress"
    FILE_STARTED = "file_started"
    FILE_COMPLETED = "file_completed"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass(frozen=True)
class ErrorInfo:
    """Structured error delivered to observers instead of a raw exception."""

    category: str
    code: str
    message: str
    session_id: Optional[str] = None

    @classmethod
    def from_exception(cls, category: str, error: Exception, session_id: Optional[str] = None) -> "ErrorInfo":
        return cls(
            category=category,
            code=getattr(error, "code", error.__class__.__name__),
            message=str(error),
            session_id=session_id
        )


@dataclass(frozen=True)
class SyncEvent:
    """A single notification published by the orchestrator."""

    type: EventType
    session_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[SyncEvent], None]


class EventChannel:
    """Publish/subscribe channel with a bounded history for polling.

    Handlers run synchronously on the publishing task. A handler that raises
    is logged and skipped; the remaining handlers still run.
    """

    def __init__(self, max_history: int = 1000):
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._all_handlers: List[EventHandler] = []
        self._history: List[SyncEvent] = []
        self._cursor = 0
        self.max_history = max_history
        self.logger = get_logger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        self._all_handlers.append(handler)

    def unsubscribe(self, handler: EventHandler, event_type: Optional[EventType] = None) -> None:
        """Remove a handler from one event type, or from everywhere."""
        targets = [self._handlers.get(event_type, [])] if event_type else [*self._handlers.values(), self._all_handlers]
        for handlers in targets:
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: SyncEvent) -> None:
        self._history.append(event)
        overflow = len(self._history) - self.max_history
        if overflow > 0:
            del self._history[:overflow]
            self._cursor = max(0, self._cursor - overflow)

        for handler in [*self._handlers.get(event.type, []), *self._all_handlers]:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    "Event handler failed",
                    event_type=event.type.value,
                    error=str(e)
                )

    def emit(self, event_type: EventType, session_id: Optional[str] = None, **data: Any) -> SyncEvent:
        """Build and publish an event in one call."""
        event = SyncEvent(type=event_type, session_id=session_id, data=data)
        self.publish(event)
        return event

    def history(self, event_type: Optional[EventType] = None, limit: Optional[int] = None) -> List[SyncEvent]:
        events = [e for e in self._history if event_type is None or e.type is event_type]
        if limit is not None:
            events = events[-limit:]
        return events

    def drain(self) -> List[SyncEvent]:
        """Events published since the previous drain."""
        events = self._history[self._cursor:]
        self._cursor = len(self._history)
        return events

    def clear(self) -> None:
        self._history = []
        self._cursor = 0
