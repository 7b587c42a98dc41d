from .events import (
    DiscoveryEvent,
    EventKind,
    NocturneEvent,
    RunCompleted,
    ThermalAlert,
    event_from_json,
    event_to_json,
)
from .bus import EventBus

__all__ = [
    "DiscoveryEvent",
    "EventKind",
    "NocturneEvent",
    "RunCompleted",
    "ThermalAlert",
    "event_from_json",
    "event_to_json",
    "EventBus",
]
