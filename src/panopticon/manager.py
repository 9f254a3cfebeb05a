"""
ProgressManager - the command layer of the progress engine.

Every command runs the same pipeline under one lock:

    validate -> create event -> fold into a working copy -> derive
    status-changed events from the cascade -> append everything durably ->
    commit the working copy -> notify subscribers -> snapshot when due

A command that fails validation raises before any event exists. A command
whose append fails raises PersistenceError and leaves the committed state
exactly as it was.
"""
import math
import threading
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from .aggregator import StatusChange, check_transition
from .context import PanopticonContext
from .data import DataCore
from .events import Event, EventFactory
from .graph import check_new_edge
from .models import AppState, Milestone, Project, Status, Task, TaskPriority
from .notify import NotificationBus
from .recovery import FatalError, NotFoundError, PersistenceError, ValidationError

def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} must not be empty")
    return value.strip()

def _require_points(value: Optional[float], field: str) -> Optional[float]:
    if value is None:
        return None
    if not math.isfinite(value) or value < 0:
        raise ValidationError(f"{field} must be a finite, non-negative number, got {value}")
    return float(value)

class ProgressManager:
    """Validates commands and turns them into durable events."""

    def __init__(self, context: PanopticonContext, data: Optional[DataCore] = None,
                 bus: Optional[NotificationBus] = None):
        self.context = context
        self.log = context.get_logger("manager")
        self.data = data or DataCore(context)
        self.bus = bus or NotificationBus(context)
        self.factory = EventFactory(context)
        self._lock = threading.RLock()
        self._state: Optional[AppState] = None
        self._since_snapshot = 0

    def open(self) -> AppState:
        """Restore state from disk. Must be called before any command."""
        with self._lock:
            self._state = self.data.restore()
            self._since_snapshot = 0
            self.log.info(f"Opened {self.data.data_dir} at event {self._state.event_count}")
            return self._state.copy_state()

    def close(self) -> None:
        """Snapshot any unsnapshotted events and drop the in-memory state."""
        with self._lock:
            if self._state is not None and self._since_snapshot > 0:
                self._snapshot_quietly(self._state)
            self._state = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Queries. Everything returned is a copy; committed state is never shared.

    def state(self) -> AppState:
        with self._lock:
            return self._current().copy_state()

    def get_project(self, project_id: str) -> Project:
        with self._lock:
            return self._project(self._current(), project_id).model_copy(deep=True)

    def get_milestone(self, milestone_id: str) -> Milestone:
        with self._lock:
            return self._milestone(self._current(), milestone_id).model_copy(deep=True)

    def get_task(self, task_id: str) -> Task:
        with self._lock:
            return self._task(self._current(), task_id).model_copy(deep=True)

    def statistics(self) -> AppState.Statistics:
        with self._lock:
            return self._current().statistics.model_copy(deep=True)

    def history(self, kind: Optional[str] = None, entity_id: Optional[str] = None) -> List[Event]:
        """Logged events, optionally filtered by kind and referenced entity."""
        events = self.data.events.by_entity(entity_id) if entity_id is not None else self.data.events.all()
        if kind is not None:
            events = [e for e in events if e.type == kind]
        return events

    def save_snapshot(self) -> None:
        """Write a snapshot now.

        Raises:
            PersistenceError: the snapshot could not be written.
        """
        with self._lock:
            self.data.snapshots.save(self._current())
            self._since_snapshot = 0

    # Projects

    def create_project(self, title: str, description: Optional[str] = None) -> str:
        title = _require_text(title, "title")
        event = self._execute(lambda state: self.factory.project_created(title, description))
        return event.payload.project_id

    def update_project(self, project_id: str, title: Optional[str] = None,
                       description: Optional[str] = None) -> None:
        if title is None and description is None:
            raise ValidationError("Nothing to update")
        if title is not None:
            title = _require_text(title, "title")

        def build(state: AppState) -> Event:
            self._project(state, project_id)
            return self.factory.project_updated(project_id, title, description)
        self._execute(build)

    def delete_project(self, project_id: str) -> None:
        """Delete a project together with its milestones and their tasks."""
        def build(state: AppState) -> Event:
            self._project(state, project_id)
            return self.factory.project_deleted(project_id)
        self._execute(build)

    # Milestones

    def create_milestone(self, project_id: str, title: str, description: Optional[str] = None,
                         due_date: Optional[datetime] = None) -> str:
        title = _require_text(title, "title")

        def build(state: AppState) -> Event:
            self._project(state, project_id)
            return self.factory.milestone_created(project_id, title, description, due_date)
        return self._execute(build).payload.milestone_id

    def update_milestone(self, milestone_id: str, title: Optional[str] = None, description: Optional[str] = None,
                         due_date: Optional[datetime] = None) -> None:
        if title is None and description is None and due_date is None:
            raise ValidationError("Nothing to update")
        if title is not None:
            title = _require_text(title, "title")

        def build(state: AppState) -> Event:
            self._milestone(state, milestone_id)
            return self.factory.milestone_updated(milestone_id, title, description, due_date)
        self._execute(build)

    def delete_milestone(self, milestone_id: str) -> None:
        """Delete a milestone together with its tasks."""
        def build(state: AppState) -> Event:
            self._milestone(state, milestone_id)
            return self.factory.milestone_deleted(milestone_id)
        self._execute(build)

    def move_milestone(self, milestone_id: str, project_id: str) -> None:
        def build(state: AppState) -> Event:
            milestone = self._milestone(state, milestone_id)
            self._project(state, project_id)
            if milestone.project_id == project_id:
                raise ValidationError(f"Milestone {milestone_id} already belongs to project {project_id}")
            return self.factory.milestone_added_to_project(milestone_id, project_id)
        self._execute(build)

    def add_milestone_dependency(self, milestone_id: str, depends_on: str) -> None:
        """Record that ``milestone_id`` waits for ``depends_on``.

        Raises:
            CycleError: the edge would make the dependency graph cyclic.
        """
        def build(state: AppState) -> Event:
            milestone = self._milestone(state, milestone_id)
            self._milestone(state, depends_on)
            if depends_on in milestone.depends_on:
                raise ValidationError(f"Milestone {milestone_id} already depends on {depends_on}")
            check_new_edge(state.relations.milestone_dependencies, milestone_id, depends_on)
            return self.factory.milestone_dependency_added(milestone_id, depends_on)
        self._execute(build)

    def remove_milestone_dependency(self, milestone_id: str, depends_on: str) -> None:
        def build(state: AppState) -> Event:
            milestone = self._milestone(state, milestone_id)
            if depends_on not in milestone.depends_on:
                raise ValidationError(f"Milestone {milestone_id} does not depend on {depends_on}")
            return self.factory.milestone_dependency_removed(milestone_id, depends_on)
        self._execute(build)

    # Tasks

    def create_task(self, milestone_id: str, title: str, description: Optional[str] = None,
                    estimated_points: float = 1.0, priority: TaskPriority = TaskPriority.MUST,
                    tags: Iterable[str] = ()) -> str:
        title = _require_text(title, "title")
        estimated_points = _require_points(estimated_points, "estimated_points")
        tags = list(tags)

        def build(state: AppState) -> Event:
            self._milestone(state, milestone_id)
            return self.factory.task_created(milestone_id, title, description, estimated_points, priority, tags)
        return self._execute(build).payload.task_id

    def update_task(self, task_id: str, title: Optional[str] = None, description: Optional[str] = None,
                    estimated_points: Optional[float] = None, priority: Optional[TaskPriority] = None,
                    tags: Optional[Iterable[str]] = None) -> None:
        if all(v is None for v in (title, description, estimated_points, priority, tags)):
            raise ValidationError("Nothing to update")
        if title is not None:
            title = _require_text(title, "title")
        estimated_points = _require_points(estimated_points, "estimated_points")
        tags = list(tags) if tags is not None else None

        def build(state: AppState) -> Event:
            self._task(state, task_id)
            return self.factory.task_updated(task_id, title, description, estimated_points, priority, tags)
        self._execute(build)

    def delete_task(self, task_id: str) -> None:
        def build(state: AppState) -> Event:
            self._task(state, task_id)
            return self.factory.task_deleted(task_id)
        self._execute(build)

    def move_task(self, task_id: str, milestone_id: str) -> None:
        def build(state: AppState) -> Event:
            task = self._task(state, task_id)
            self._milestone(state, milestone_id)
            if task.milestone_id == milestone_id:
                raise ValidationError(f"Task {task_id} already belongs to milestone {milestone_id}")
            return self.factory.task_added_to_milestone(task_id, milestone_id)
        self._execute(build)

    def add_task_dependency(self, task_id: str, depends_on: str) -> None:
        """Record that ``task_id`` waits for ``depends_on``.

        Raises:
            CycleError: the edge would make the dependency graph cyclic.
        """
        def build(state: AppState) -> Event:
            task = self._task(state, task_id)
            self._task(state, depends_on)
            if depends_on in task.depends_on:
                raise ValidationError(f"Task {task_id} already depends on {depends_on}")
            check_new_edge(state.relations.task_dependencies, task_id, depends_on)
            return self.factory.task_dependency_added(task_id, depends_on)
        self._execute(build)

    def remove_task_dependency(self, task_id: str, depends_on: str) -> None:
        def build(state: AppState) -> Event:
            task = self._task(state, task_id)
            if depends_on not in task.depends_on:
                raise ValidationError(f"Task {task_id} does not depend on {depends_on}")
            return self.factory.task_dependency_removed(task_id, depends_on)
        self._execute(build)

    # Task status

    def start_task(self, task_id: str) -> None:
        def build(state: AppState) -> Event:
            task = self._task(state, task_id)
            if task.status == Status.BLOCKED:
                raise ValidationError(f"Task {task_id} is blocked; unblock it instead")
            check_transition(task.status, Status.IN_PROGRESS)
            return self.factory.task_started(task_id)
        self._execute(build)

    def block_task(self, task_id: str, reason: str) -> None:
        reason = _require_text(reason, "reason")

        def build(state: AppState) -> Event:
            task = self._task(state, task_id)
            check_transition(task.status, Status.BLOCKED)
            return self.factory.task_blocked(task_id, reason)
        self._execute(build)

    def unblock_task(self, task_id: str) -> None:
        def build(state: AppState) -> Event:
            task = self._task(state, task_id)
            if task.status != Status.BLOCKED:
                raise ValidationError(f"Task {task_id} is not blocked")
            return self.factory.task_unblocked(task_id)
        self._execute(build)

    def complete_task(self, task_id: str, actual_points: Optional[float] = None) -> None:
        """Complete a task; ``actual_points`` defaults to its estimate."""
        actual_points = _require_points(actual_points, "actual_points")

        def build(state: AppState) -> Event:
            task = self._task(state, task_id)
            check_transition(task.status, Status.COMPLETED)
            return self.factory.task_completed(task_id, actual_points)
        self._execute(build)

    def set_task_status(self, task_id: str, status: Status, reason: Optional[str] = None) -> None:
        """Generic transition, recorded as a task_status_changed event."""
        if status == Status.BLOCKED:
            reason = _require_text(reason, "reason")

        def build(state: AppState) -> Event:
            task = self._task(state, task_id)
            check_transition(task.status, status)
            return self.factory.task_status_changed(task_id, task.status, status, reason)
        self._execute(build)

    def log_time(self, task_id: str, minutes: float, description: Optional[str] = None) -> None:
        """Report time spent on a task, e.g. one finished timer session."""
        if not math.isfinite(minutes) or minutes <= 0:
            raise ValidationError(f"minutes must be a positive number, got {minutes}")

        def build(state: AppState) -> Event:
            self._task(state, task_id)
            return self.factory.task_time_logged(task_id, float(minutes), description)
        self._execute(build)

    # Internals

    def _current(self) -> AppState:
        if self._state is None:
            raise FatalError("ProgressManager is not open")
        return self._state

    def _project(self, state: AppState, project_id: str) -> Project:
        project = state.projects.get(project_id)
        if project is None:
            raise NotFoundError("project", project_id)
        return project

    def _milestone(self, state: AppState, milestone_id: str) -> Milestone:
        milestone = state.milestones.get(milestone_id)
        if milestone is None:
            raise NotFoundError("milestone", milestone_id)
        return milestone

    def _task(self, state: AppState, task_id: str) -> Task:
        task = state.tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def _derived_event(self, change: StatusChange, timestamp: datetime) -> Event:
        if change.aggregate == "milestone":
            return self.factory.milestone_status_changed(change.entity_id, change.old_status, change.new_status, timestamp)
        return self.factory.project_status_changed(change.entity_id, change.old_status, change.new_status, timestamp)

    def _execute(self, build: Callable[[AppState], Event]) -> Event:
        with self._lock:
            state = self._current()
            event = build(state)

            projector = self.data.projector
            working = state.copy_state()
            changes = projector.apply_in_place(working, event)
            derived = [self._derived_event(change, event.timestamp) for change in changes]
            for derived_event in derived:
                projector.apply_in_place(working, derived_event)

            batch = [event, *derived]
            self.data.events.append_batch(batch)
            self._state = working
            self._since_snapshot += len(batch)
            self.log.info(f"Applied {event.type} {event.id} with {len(derived)} status change(s)")
            due = self._since_snapshot >= self.context.config.snapshot_interval

        for applied in batch:
            self.bus.publish(applied)
        if due:
            with self._lock:
                if self._state is not None and self._since_snapshot >= self.context.config.snapshot_interval:
                    self._snapshot_quietly(self._state)
        return event

    def _snapshot_quietly(self, state: AppState) -> None:
        # Failures are logged; the next due snapshot tries again
        try:
            self.data.snapshots.save(state)
            self._since_snapshot = 0
        except PersistenceError as e:
            self.log.warning(f"Periodic snapshot failed, will retry later: {e}")
