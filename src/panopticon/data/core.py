"""
DataCore - owns the files of one data directory.

Wires the event log, the snapshot store and the projector together and
restores the current AppState on start-up: the newest usable snapshot plus
the log tail after it, or a full replay when no snapshot fits the log.
"""
from pathlib import Path
from typing import Optional, Union

from panopticon.context import PanopticonContext
from panopticon.migration import MigrationRegistry
from panopticon.models import AppState
from panopticon.projector import StateProjector
from .log import EventLog
from .snapshot import SnapshotStore

class DataCore:
    EVENTS_FILE = "events.jsonl"
    SNAPSHOT_FILE = "snapshot.json"

    def __init__(self, context: PanopticonContext, data_dir: Union[Path, str, None] = None,
                 migrations: Optional[MigrationRegistry] = None):
        self.context = context
        self.log = context.get_logger("data")
        self.data_dir = Path(data_dir) if data_dir is not None else context.config.data_dir
        self.events = EventLog(context, self.data_dir / self.EVENTS_FILE, migrations)
        self.snapshots = SnapshotStore(context, self.data_dir / self.SNAPSHOT_FILE)
        self.projector = StateProjector(context)

    def restore(self) -> AppState:
        """Load the log and rebuild the current state.

        Raises:
            UnknownEventError: the log holds an event this build cannot fold.
            FileOperationError: the log file cannot be read.
        """
        self.events.load()
        snapshot = self.snapshots.load()
        if snapshot is not None and self.snapshot_matches(snapshot):
            tail = self.events.since(snapshot.event_count)
            self.log.info(f"Restoring from snapshot at event {snapshot.event_count}, replaying {len(tail)} event(s)")
            return self.projector.replay(snapshot, tail)

        if snapshot is not None:
            self.log.warning("Snapshot does not match the event log, replaying the full log")
        return self.projector.project(self.events.all())

    def snapshot_matches(self, snapshot: AppState) -> bool:
        """True if the snapshot was taken from a prefix of the loaded log."""
        if snapshot.event_count > len(self.events):
            return False
        if snapshot.event_count == 0:
            return snapshot.last_event_id is None
        return self.events.position_of(snapshot.last_event_id) == snapshot.event_count - 1
