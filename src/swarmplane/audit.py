"""
EventRecorder: the operator's event stream.

Every recorded event is kept in memory and, when a path is given, appended
to a JSONL file. Each line holds: timestamp, type (Normal/Warning), kind,
name, reason, message.
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from swarmplane.models import utcnow

logger = logging.getLogger("swarmplane.audit")

NORMAL = "Normal"
WARNING = "Warning"


@dataclass
class Event:
    timestamp: str
    type: str
    kind: str
    name: str
    reason: str
    message: str


class EventRecorder:
    """
    Records transitions and failures against stored objects.

    Reconcilers emit events only when something changes, so replaying an
    unchanged object produces no new events.
    """

    def __init__(self, path: Optional[Path] = None, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self.events: List[Event] = []
        self.path = Path(path).expanduser() if path else None
        self.file_handle = None
        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.file_handle = open(self.path, "a", encoding="utf-8")
            except OSError as e:
                logger.error(f"Failed to open event log {self.path}: {e}")
                raise

    def _write_event(self, event_type: str, obj, reason: str, message: str) -> Event:
        event = Event(
            timestamp=self._clock().isoformat(),
            type=event_type,
            kind=obj.KIND,
            name=obj.metadata.name,
            reason=reason,
            message=message,
        )
        self.events.append(event)

        if self.file_handle is not None:
            try:
                self.file_handle.write(json.dumps(asdict(event), default=str) + "\n")
                self.file_handle.flush()
            except OSError as e:
                logger.error(f"Failed to write event {reason} for {event.kind}/{event.name}: {e}")
        return event

    def normal(self, obj, reason: str, message: str = "") -> Event:
        return self._write_event(NORMAL, obj, reason, message)

    def warning(self, obj, reason: str, message: str = "") -> Event:
        return self._write_event(WARNING, obj, reason, message)

    def for_object(self, kind: str, name: str) -> List[Event]:
        return [e for e in self.events if e.kind == kind and e.name == name]

    def reasons(self, kind: str, name: str) -> List[str]:
        return [e.reason for e in self.for_object(kind, name)]

    def close(self) -> None:
        if self.file_handle is not None:
            try:
                self.file_handle.close()
            except OSError as e:
                logger.error(f"Failed to close event log: {e}")
            self.file_handle = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
