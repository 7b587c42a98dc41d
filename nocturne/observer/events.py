"""
nocturne/observer/events.py

Purpose:
    Notifications the correlation engine sends to external collaborators.
    A closed set of immutable, serializable event kinds, each carrying only
    the fields that kind needs.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union


class EventKind(str, Enum):
    DISCOVERY = "discovery"
    THERMAL_ALERT = "thermal_alert"
    RUN_COMPLETED = "run_completed"


def _event_id() -> str:
    return str(uuid.uuid4())


def _now() -> float:
    return datetime.now().timestamp()


@dataclass(frozen=True)
class DiscoveryEvent:
    """A new surveillance signature was committed."""
    signature_id: str
    domain_count: int
    confidence: float
    impact: float
    kind: EventKind = field(default=EventKind.DISCOVERY, init=False)
    id: str = field(default_factory=_event_id)
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class ThermalAlert:
    """The thermal controller entered a throttling or emergency state."""
    state: str
    cpu_utilization: float
    cooling_delay_ms: float
    emergency: bool = False
    kind: EventKind = field(default=EventKind.THERMAL_ALERT, init=False)
    id: str = field(default_factory=_event_id)
    timestamp: float = field(default_factory=_now)


@dataclass(frozen=True)
class RunCompleted:
    """A synthesis run finished and its report was persisted."""
    synthesis_id: str
    fragments_analyzed: int
    signatures_found: int
    duration_ms: float
    kind: EventKind = field(default=EventKind.RUN_COMPLETED, init=False)
    id: str = field(default_factory=_event_id)
    timestamp: float = field(default_factory=_now)


NocturneEvent = Union[DiscoveryEvent, ThermalAlert, RunCompleted]

_EVENT_CLASSES = {
    EventKind.DISCOVERY: DiscoveryEvent,
    EventKind.THERMAL_ALERT: ThermalAlert,
    EventKind.RUN_COMPLETED: RunCompleted,
}


def event_to_json(event: NocturneEvent) -> str:
    data = asdict(event)
    data["kind"] = event.kind.value
    return json.dumps(data)


def event_from_json(json_str: str) -> NocturneEvent:
    data = json.loads(json_str)
    cls = _EVENT_CLASSES[EventKind(data.pop("kind"))]
    return cls(**data)
