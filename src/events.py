"""
Apply Events - In-process pub/sub for apply progress.

The executor publishes an event whenever an entry starts, succeeds, fails
or is rolled back, and once more when the whole apply finishes. Consumers
register a plain callback (used by the CLI progress output).
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from state import utcnow

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of apply events."""

    ENTRY_STARTED = "ENTRY_STARTED"
    ENTRY_APPLIED = "ENTRY_APPLIED"
    ENTRY_FAILED = "ENTRY_FAILED"
    ENTRY_RETRYING = "ENTRY_RETRYING"
    ENTRY_ROLLED_BACK = "ENTRY_ROLLED_BACK"
    APPLY_FINISHED = "APPLY_FINISHED"


@dataclass
class ApplyEvent:
    """Event emitted while a plan is being applied."""

    event_type: EventType
    environment: str
    logical_id: Optional[str] = None
    operation: Optional[str] = None
    attempt: int = 0
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "environment": self.environment,
            "logical_id": self.logical_id,
            "operation": self.operation,
            "attempt": self.attempt,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class EventBus:
    """
    In-process event bus for apply events.

    Listeners are called synchronously in registration order. A failing
    listener is logged and never stalls the executor.
    """

    def __init__(self):
        self._listeners: List[Callable[[ApplyEvent], None]] = []

    def add_listener(self, callback: Callable[[ApplyEvent], None]) -> None:
        """Register a synchronous callback invoked for every event."""
        self._listeners.append(callback)

    async def publish(self, event: ApplyEvent) -> None:
        """
        Publish an event to all listeners.

        Args:
            event: The event to publish.
        """
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.event_type.value}: {e}")
