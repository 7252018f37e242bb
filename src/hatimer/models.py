"""Event model and its persisted JSON form."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from hatimer.errors import SerializationError


def new_event_id() -> str:
    """Random UUID4 string; its leading hex digits drive ``shard_for_id``."""
    return str(uuid.uuid4())


@dataclass
class Event:
    """A payload scheduled for delivery to the handlers of ``event_type``.

    Attributes:
        event_type: Key used to select handlers at dispatch time
        arg: JSON-serializable payload handed to each handler
        due_at: Milliseconds since epoch at which the event becomes due
        id: Unique identifier, also the message record key suffix
    """

    event_type: str
    arg: Any = None
    due_at: float = 0.0
    id: str = field(default_factory=new_event_id)

    def to_record(self) -> str:
        """Serialize to the message record stored under ``<queue>:msg:<id>``.

        The ``event`` field name is shared with non-Python instances of the
        same queue.
        """
        try:
            return json.dumps({"event": self.event_type, "arg": self.arg})
        except (TypeError, ValueError) as exc:
            raise SerializationError(
                f"Event arg is not JSON serializable: {exc}", cause=exc
            ).with_context(event_type=self.event_type, event_id=self.id)

    @classmethod
    def from_record(cls, event_id: str, raw: str | bytes) -> Event:
        """Inverse of :meth:`to_record`. ``due_at`` is not part of the record."""
        try:
            data = json.loads(raw)
            return cls(event_type=data["event"], arg=data.get("arg"), id=event_id)
        except (TypeError, ValueError, KeyError) as exc:
            raise SerializationError(
                f"Malformed message record: {exc}", cause=exc
            ).with_context(event_id=event_id)


@dataclass
class RemoveResult:
    """What ``remove_event`` actually found and deleted."""

    event_id: str
    marker_removed: bool
    record_removed: bool

    @property
    def found(self) -> bool:
        return self.marker_removed or self.record_removed


__all__ = ["Event", "RemoveResult", "new_event_id"]
