"""
Data management submodule: event log, snapshots and the files behind them.
"""

from .core import DataCore
from .log import EventLog, LogEntry
from .snapshot import SnapshotStore

__all__ = [
    'DataCore',
    'EventLog',
    'LogEntry',
    'SnapshotStore',
]
