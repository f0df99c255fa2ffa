"""Actions and event publishing"""

from .actions import ActionRegistry, ActionDefinition, BuiltinActions
from .event_bus import EventBus, Event, InstanceEvent, INSTANCE_EVENTS_TOPIC, ALL_TOPICS

__all__ = [
    "ActionRegistry",
    "ActionDefinition",
    "BuiltinActions",
    "EventBus",
    "Event",
    "InstanceEvent",
    "INSTANCE_EVENTS_TOPIC",
    "ALL_TOPICS"
]
