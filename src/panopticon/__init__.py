"""
Panopticon - event-sourced progress tracking.

Work is organized as Project → Milestone → Task. Every change is an event in
an append-only log; the current state is a projection of that log, with
milestone and project status cascading up from task status.
"""

from .version import VERSION, STATE_VERSION, EVENT_VERSION
from .models import (
    Status,
    TaskPriority,
    Project,
    Milestone,
    Task,
    AppState,
)
from .config import Config
from .context import PanopticonContext
from .events import Event, EventFactory
from .projector import StateProjector
from .aggregator import StatusAggregator, StatusChange, composite_status
from .data import DataCore, EventLog, SnapshotStore
from .notify import NotificationBus
from .manager import ProgressManager

__version__ = VERSION

__all__ = [
    "VERSION",
    "STATE_VERSION",
    "EVENT_VERSION",
    "Status",
    "TaskPriority",
    "Project",
    "Milestone",
    "Task",
    "AppState",
    "Config",
    "PanopticonContext",
    "Event",
    "EventFactory",
    "StateProjector",
    "StatusAggregator",
    "StatusChange",
    "composite_status",
    "DataCore",
    "EventLog",
    "SnapshotStore",
    "NotificationBus",
    "ProgressManager",
]
