from enum import Enum
from dataclasses import dataclass
from datetime import datetime
import json


class EventType(str, Enum):
    # Lobby lifecycle
    LOBBY_STATUS_CHANGED = "lobby.status_changed"
    LOBBY_CLOSED = "lobby.closed"

    # Match lifecycle
    MATCH_STATUS_CHANGED = "match.status_changed"
    MATCH_CLOSED = "match.closed"


@dataclass
class Event:
    type: EventType
    entity_id: str
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            entity_id=data["entity_id"],
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def status_changed_event(kind: str, entity_id: str, status: str, snapshot: dict) -> Event:
    """Build the event published when a lobby or match changes status."""
    closed = status == "CLOSED"
    if kind == "lobby":
        event_type = EventType.LOBBY_CLOSED if closed else EventType.LOBBY_STATUS_CHANGED
    else:
        event_type = EventType.MATCH_CLOSED if closed else EventType.MATCH_STATUS_CHANGED

    return Event(
        type=event_type,
        entity_id=entity_id,
        data={
            "status": status,
            kind: snapshot
        }
    )
