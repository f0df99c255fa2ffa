"""
In-process event bus for instance lifecycle events
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..models.instance import ExecutionOutcome


logger = logging.getLogger(__name__)


INSTANCE_EVENTS_TOPIC = "workflow.instance.events"

# subscribers on this topic receive every event
ALL_TOPICS = "*"


@dataclass
class Event:
    """Published event"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=datetime.utcnow)


@dataclass
class InstanceEvent:
    """State of an instance after a committed advance"""
    instance_id: str
    definition_id: str
    definition_version: int
    status: str
    revision: int
    active_nodes: List[str] = field(default_factory=list)
    tokens_created: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def from_outcome(cls, outcome: ExecutionOutcome) -> "InstanceEvent":
        instance = outcome.instance
        return cls(
            instance_id=instance.id,
            definition_id=instance.definition_id,
            definition_version=instance.definition_version,
            status=instance.status.value,
            revision=instance.revision,
            active_nodes=instance.active_nodes,
            tokens_created=[token.id for token in outcome.tokens_created],
            error=instance.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventBus:
    """Topic-keyed publish/subscribe; handlers may be sync or async

    Events are published after the transition has committed, so a failing
    handler is logged and never reaches the publisher.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, handler: Callable):
        async with self._lock:
            self._handlers.setdefault(topic, []).append(handler)
        logger.debug(f"Handler {getattr(handler, '__name__', handler)!r} subscribed to '{topic}'")

    async def unsubscribe(self, topic: str, handler: Callable):
        async with self._lock:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(topic, None)

    async def publish(self, topic: str, payload: Any) -> int:
        """Deliver to the topic's handlers and wildcard handlers; returns the handler count"""
        event = Event(topic=topic, payload=payload)
        async with self._lock:
            handlers = list(self._handlers.get(topic, []))
            if topic != ALL_TOPICS:
                handlers.extend(self._handlers.get(ALL_TOPICS, []))

        for handler in handlers:
            await self._deliver(handler, event)
        return len(handlers)

    async def publish_outcome(self, outcome: ExecutionOutcome) -> int:
        return await self.publish(INSTANCE_EVENTS_TOPIC, InstanceEvent.from_outcome(outcome).to_dict())

    async def _deliver(self, handler: Callable, event: Event):
        try:
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Event handler failed on '{event.topic}': {e}", exc_info=True)
