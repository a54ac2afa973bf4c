# Event routing for entry-level observability (onEntryUpdated & friends)

import logging
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Event types published by the core
ENTRY_ATTACHED = "entry.attached"
ENTRY_DETACHED = "entry.detached"
ENTRY_UPDATED = "entry.updated"
ENTRY_ACTIVE_CHANGED = "entry.active_changed"
MISSION_STARTED = "mission.started"
MISSION_COMPLETED = "mission.completed"
MISSION_REPLACED = "mission.replaced"
REPORT_READY = "report.ready"
TELEMETRY_CONNECTED = "telemetry.connected"
TELEMETRY_DISCONNECTED = "telemetry.disconnected"
TELEMETRY_ERROR = "telemetry.error"
TELEMETRY_DROPPED = "telemetry.message_dropped"


class EventPriority(int, Enum):
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3
    LOW = 4
    INFO = 5


@dataclass
class Event:
    type: str
    source: str
    data: Dict[str, Any]
    priority: EventPriority = EventPriority.MEDIUM
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.now)


class EventRouter:
    """
    Synchronous publish/subscribe for the tracking session.

    Handlers run in the publisher's call stack on the session's event loop,
    so a tick or message is fully observed before the next one is processed.
    A failing handler is logged and never reaches the driver.
    """

    def __init__(self, history_size: int = 1000):
        self.subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self.event_history = deque(maxlen=history_size)

    def subscribe(self, event_type: str, handler: Callable):
        """Subscribe to event type"""
        self.subscribers[event_type].append(handler)
        logger.debug(f"Subscribed to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable):
        handlers = self.subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: Event):
        """Publish event to matching subscribers"""
        self.event_history.append(event)
        if event.priority <= EventPriority.HIGH:
            logger.info(f"Event published: {event.type} [Priority: {event.priority.name}]")
        self._dispatch_event(event)

    def emit(self, event_type: str, source: str, priority: EventPriority = EventPriority.MEDIUM,
             **data) -> Event:
        event = Event(type=event_type, source=source, data=data, priority=priority)
        self.publish(event)
        return event

    def _dispatch_event(self, event: Event):
        """Dispatch event to subscribers"""
        for handler in list(self.subscribers.get(event.type, [])):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Handler error for {event.type}: {e}")

    def recent(self, limit: int = 50, event_type: str = None) -> List[Event]:
        events = list(self.event_history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]
