from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timezone
import json


VIEW_EVENTS_CHANNEL = "gateway:view_events"


class EventType(str, Enum):
    # View lifecycle
    VIEW_DECLARED = "view.declared"
    VIEW_DELETED = "view.deleted"
    VIEW_DISCOVERED = "view.discovered"

    # State changes
    STATE_CHANGED = "state.changed"

    # Cold start
    COLD_START_STARTED = "cold_start.started"
    COLD_START_COMPLETED = "cold_start.completed"
    COLD_START_FAILED = "cold_start.failed"


@dataclass
class Event:
    type: EventType
    view_name: str
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "view_name": self.view_name,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def state_changed_event(view_name: str, from_state: str, to_state: str) -> Event:
    return Event(
        type=EventType.STATE_CHANGED,
        view_name=view_name,
        data={
            "from_state": from_state,
            "to_state": to_state
        }
    )


def view_declared_event(view_name: str, subset: dict) -> Event:
    return Event(
        type=EventType.VIEW_DECLARED,
        view_name=view_name,
        data={"subset": subset}
    )


def view_deleted_event(view_name: str) -> Event:
    return Event(type=EventType.VIEW_DELETED, view_name=view_name)


def view_discovered_event(view_name: str, state: str) -> Event:
    return Event(
        type=EventType.VIEW_DISCOVERED,
        view_name=view_name,
        data={"state": state}
    )


def cold_start_event(view_name: str, event_type: EventType, elapsed: float, error: str = None) -> Event:
    data = {"elapsed_seconds": round(elapsed, 3)}
    if error:
        data["error"] = error
    return Event(type=event_type, view_name=view_name, data=data)
