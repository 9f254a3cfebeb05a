"""
EventLog - durable, append-only, ordered sequence of events.

The file is newline-delimited JSON; lines are only ever appended. Log order
is authoritative for replay. Event timestamps are wall-clock values and only
advisory, so time range queries may disagree with causal order when clocks
skew.
"""
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict

from panopticon.context import PanopticonContext, as_utc
from panopticon.events import Event
from panopticon.migration import MigrationRegistry
from panopticon.recovery import CorruptRecordError, ValidationError
from .codec import decode_event, encode_event
from .io import append_lines, read_lines, truncate, with_retry

class LogEntry(BaseModel):
    """Acknowledgement of a durable append."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    event: Event

class EventLog:
    """Append-only event log backed by a JSONL file.

    With ``path=None`` the log lives in memory only; everything else behaves
    the same.
    """

    def __init__(self, context: PanopticonContext, path: Union[Path, str, None] = None,
                 migrations: Optional[MigrationRegistry] = None):
        self.context = context
        self.path = Path(path) if path is not None else None
        self.migrations = migrations or MigrationRegistry()
        self.log = context.get_logger("data.log")
        self.corrupt_records: List[CorruptRecordError] = []
        self._lock = threading.RLock()
        self._events: List[Event] = []
        self._index: Dict[str, int] = {}

    def load(self) -> List[CorruptRecordError]:
        """Read the log file into memory.

        Unparseable lines are reported and skipped. An UnknownEventError
        aborts the load and leaves the log empty.

        Returns:
            The corrupt records that were skipped.
        """
        with self._lock:
            self._events = []
            self._index = {}
            self.corrupt_records = []
            if self.path is None:
                return []

            events: List[Event] = []
            index: Dict[str, int] = {}
            for number, raw in enumerate(read_lines(self.path), start=1):
                if not raw.strip():
                    continue
                try:
                    event = decode_event(raw, number, self.migrations)
                except CorruptRecordError as e:
                    self.log.warning(f"Skipping corrupt record in {self.path}: {e}")
                    self.corrupt_records.append(e)
                    continue
                if event.id in index:
                    self.log.warning(f"Skipping duplicate event id {event.id} at line {number}")
                    self.corrupt_records.append(
                        CorruptRecordError(f"Line {number}: duplicate event id {event.id}", number, event.id))
                    continue
                index[event.id] = len(events)
                events.append(event)

            self._events = events
            self._index = index
            self.log.info(f"Loaded {len(events)} event(s) from {self.path}, skipped {len(self.corrupt_records)}")
            return list(self.corrupt_records)

    def append(self, event: Event) -> LogEntry:
        """Durably append one event."""
        return self.append_batch([event])[0]

    def append_batch(self, events: Sequence[Event]) -> List[LogEntry]:
        """Durably append events in order, as a single write.

        The in-memory view is only extended once the write is on disk.

        Raises:
            ValidationError: an event id is already in the log or repeated.
            PersistenceError: the write failed after all retries.
        """
        events = list(events)
        if not events:
            return []

        with self._lock:
            seen = set()
            for event in events:
                if event.id in self._index or event.id in seen:
                    raise ValidationError(f"Event {event.id} is already in the log")
                seen.add(event.id)

            if self.path is not None:
                lines = [encode_event(event) for event in events]
                with_retry(
                    lambda: append_lines(self.path, lines, self.log),
                    self.context.config.retry_attempts,
                    self.context.config.retry_delay,
                    self.log,
                    what=f"append to {self.path}",
                )

            entries = []
            for event in events:
                sequence = len(self._events)
                self._index[event.id] = sequence
                self._events.append(event)
                entries.append(LogEntry(sequence=sequence, event=event.model_copy(deep=True)))
            self.log.debug(f"Appended {len(events)} event(s), log length {len(self._events)}")
            return entries

    def all(self) -> List[Event]:
        with self._lock:
            return [event.model_copy(deep=True) for event in self._events]

    def since(self, offset: int) -> List[Event]:
        """Events after the first ``offset`` ones, in log order."""
        with self._lock:
            return [event.model_copy(deep=True) for event in self._events[offset:]]

    def by_id(self, event_id: str) -> Optional[Event]:
        with self._lock:
            position = self._index.get(str(event_id))
            if position is None:
                return None
            return self._events[position].model_copy(deep=True)

    def position_of(self, event_id: Optional[str]) -> Optional[int]:
        """Zero-based position of an event in log order."""
        with self._lock:
            return self._index.get(event_id) if event_id is not None else None

    def by_entity(self, entity_id: str) -> List[Event]:
        """Events whose payload references the given project, milestone or task."""
        with self._lock:
            return [event.model_copy(deep=True) for event in self._events if entity_id in event.entity_ids()]

    def by_time_range(self, start: datetime, end: datetime) -> List[Event]:
        """Events with start <= timestamp <= end, in log order."""
        start, end = as_utc(start), as_utc(end)
        with self._lock:
            return [event.model_copy(deep=True) for event in self._events if start <= event.timestamp <= end]

    def by_type(self, kind: str) -> List[Event]:
        with self._lock:
            return [event.model_copy(deep=True) for event in self._events if event.type == kind]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def clear(self) -> None:
        """Empty the log and its file. For test isolation only."""
        with self._lock:
            if self.path is not None and self.path.exists():
                truncate(self.path)
            self._events = []
            self._index = {}
            self.corrupt_records = []
