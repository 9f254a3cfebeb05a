"""
StateProjector - folds the event log into AppState.

Folding is deterministic: the same events in the same order always produce
byte-identical state. Nothing here reads the wall clock; ``lastUpdated`` and
every derived timestamp come from the event being folded.
"""
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .aggregator import StatusAggregator, StatusChange
from .context import PanopticonContext
from .events import EVENT_TYPES, Event
from .models import AppState, Milestone, Project, Status, Task, sorted_unique
from .recovery import FatalError, UnknownEventError
from .version import EVENT_VERSION

Handler = Callable[[AppState, Event], List[StatusChange]]

# Event kinds after which the statistics block is recomputed
STATISTICS_KINDS = frozenset({
    "project_deleted",
    "milestone_deleted",
    "task_created",
    "task_updated",
    "task_deleted",
    "task_status_changed",
    "task_started",
    "task_completed",
    "task_blocked",
    "task_unblocked",
})

def _add(values: List[str], value: str) -> None:
    if value not in values:
        values.append(value)

def _discard(values: List[str], value: str) -> None:
    if value in values:
        values.remove(value)

class StateProjector:
    """Pure fold from events to AppState."""

    def __init__(self, context: PanopticonContext):
        self.context = context
        self.log = context.get_logger("projector")
        self.aggregator = StatusAggregator(context)
        self._handlers: Dict[str, Handler] = {
            "project_created": self._project_created,
            "project_updated": self._project_updated,
            "project_deleted": self._project_deleted,
            "project_status_changed": self._project_status_changed,
            "milestone_created": self._milestone_created,
            "milestone_updated": self._milestone_updated,
            "milestone_deleted": self._milestone_deleted,
            "milestone_status_changed": self._milestone_status_changed,
            "milestone_added_to_project": self._milestone_added_to_project,
            "milestone_dependency_added": self._milestone_dependency_added,
            "milestone_dependency_removed": self._milestone_dependency_removed,
            "task_created": self._task_created,
            "task_updated": self._task_updated,
            "task_deleted": self._task_deleted,
            "task_status_changed": self._task_status_changed,
            "task_added_to_milestone": self._task_added_to_milestone,
            "task_dependency_added": self._task_dependency_added,
            "task_dependency_removed": self._task_dependency_removed,
            "task_started": self._task_started,
            "task_completed": self._task_completed,
            "task_blocked": self._task_blocked,
            "task_unblocked": self._task_unblocked,
            "task_time_logged": self._task_time_logged,
        }
        missing = sorted(set(EVENT_TYPES) - set(self._handlers))
        if missing:
            raise FatalError(f"No projector handler for event kind(s): {', '.join(missing)}")

    def empty_state(self) -> AppState:
        return AppState.empty(self.context.config.points_per_hour)

    def fold(self, state: AppState, event: Event) -> AppState:
        """Return the state after ``event``; ``state`` is left untouched."""
        return self.apply(state, event)[0]

    def apply(self, state: AppState, event: Event) -> Tuple[AppState, List[StatusChange]]:
        """Fold one event into a copy of ``state``.

        Returns:
            The new state and the composite status changes the event caused,
            in cascade order.
        """
        working = state.copy_state()
        changes = self.apply_in_place(working, event)
        return working, changes

    def project(self, events: Iterable[Event]) -> AppState:
        """Replay events, in log order, from the empty state."""
        return self.replay(self.empty_state(), events)

    def replay(self, state: AppState, events: Iterable[Event]) -> AppState:
        """Continue folding from ``state``, e.g. a restored snapshot."""
        working = state.copy_state()
        for event in events:
            self.apply_in_place(working, event)
        return working

    def apply_in_place(self, state: AppState, event: Event) -> List[StatusChange]:
        """Mutate ``state`` with ``event``. Only for states nobody else holds."""
        handler = self._handlers.get(event.type)
        if handler is None:
            raise UnknownEventError(f"Unknown event kind '{event.type}' (event {event.id})")
        if event.version != EVENT_VERSION:
            raise UnknownEventError(f"Unsupported version {event.version} of {event.type} (event {event.id})")

        changes = handler(state, event)
        if event.type in STATISTICS_KINDS:
            self.aggregator.recompute_statistics(state)

        state.event_count += 1
        state.last_event_id = event.id
        state.last_updated = event.timestamp
        return changes

    def _missing(self, event: Event, kind: str, entity_id: str) -> List[StatusChange]:
        self.log.debug(f"{event.type} {event.id} refers to unknown {kind} {entity_id}, skipped")
        return []

    # Removal keeps the index tables free of dangling ids

    def _remove_task(self, state: AppState, task_id: str) -> Optional[str]:
        relations = state.relations
        state.tasks.pop(task_id, None)
        milestone_id = relations.task_to_milestone.pop(task_id, None)
        if milestone_id is not None:
            _discard(relations.milestone_to_tasks.get(milestone_id, []), task_id)
            milestone = state.milestones.get(milestone_id)
            if milestone is not None:
                _discard(milestone.task_ids, task_id)
        relations.task_dependencies.pop(task_id, None)
        for other_id, depends_on in relations.task_dependencies.items():
            if task_id in depends_on:
                depends_on.remove(task_id)
                if other_id in state.tasks:
                    state.tasks[other_id].depends_on = list(depends_on)
        return milestone_id

    def _remove_milestone(self, state: AppState, milestone_id: str) -> Optional[str]:
        relations = state.relations
        for task_id in list(relations.milestone_to_tasks.get(milestone_id, [])):
            self._remove_task(state, task_id)
        state.milestones.pop(milestone_id, None)
        relations.milestone_to_tasks.pop(milestone_id, None)
        project_id = relations.milestone_to_project.pop(milestone_id, None)
        if project_id is not None:
            _discard(relations.project_to_milestones.get(project_id, []), milestone_id)
            project = state.projects.get(project_id)
            if project is not None:
                _discard(project.milestone_ids, milestone_id)
        relations.milestone_dependencies.pop(milestone_id, None)
        for other_id, depends_on in relations.milestone_dependencies.items():
            if milestone_id in depends_on:
                depends_on.remove(milestone_id)
                if other_id in state.milestones:
                    state.milestones[other_id].depends_on = list(depends_on)
        return project_id

    # Projects

    def _project_created(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        if payload.project_id in state.projects:
            self.log.warning(f"Project {payload.project_id} created twice, keeping the first")
            return []
        state.projects[payload.project_id] = Project(
            id=payload.project_id,
            title=payload.title,
            description=payload.description,
            created_at=event.timestamp,
            updated_at=event.timestamp,
        )
        state.relations.project_to_milestones[payload.project_id] = []
        return []

    def _project_updated(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        project = state.projects.get(payload.project_id)
        if project is None:
            return self._missing(event, "project", payload.project_id)
        if payload.title is not None:
            project.title = payload.title
        if payload.description is not None:
            project.description = payload.description
        project.updated_at = event.timestamp
        return []

    def _project_deleted(self, state: AppState, event) -> List[StatusChange]:
        project_id = event.payload.project_id
        if project_id not in state.projects:
            return self._missing(event, "project", project_id)
        for milestone_id in list(state.relations.project_to_milestones.get(project_id, [])):
            self._remove_milestone(state, milestone_id)
        del state.projects[project_id]
        state.relations.project_to_milestones.pop(project_id, None)
        return []

    def _project_status_changed(self, state: AppState, event) -> List[StatusChange]:
        # Informational: the composite is always recomputed from the children
        return self.aggregator.cascade(state, [], event.timestamp, [event.payload.project_id])

    # Milestones

    def _milestone_created(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        if payload.milestone_id in state.milestones:
            self.log.warning(f"Milestone {payload.milestone_id} created twice, keeping the first")
            return []
        project = state.projects.get(payload.project_id)
        if project is None:
            return self._missing(event, "project", payload.project_id)

        state.milestones[payload.milestone_id] = Milestone(
            id=payload.milestone_id,
            project_id=payload.project_id,
            title=payload.title,
            description=payload.description,
            due_date=payload.due_date,
        )
        _add(project.milestone_ids, payload.milestone_id)
        relations = state.relations
        _add(relations.project_to_milestones.setdefault(payload.project_id, []), payload.milestone_id)
        relations.milestone_to_project[payload.milestone_id] = payload.project_id
        relations.milestone_to_tasks[payload.milestone_id] = []
        relations.milestone_dependencies[payload.milestone_id] = []
        return self.aggregator.cascade(state, [], event.timestamp, [payload.project_id])

    def _milestone_updated(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        milestone = state.milestones.get(payload.milestone_id)
        if milestone is None:
            return self._missing(event, "milestone", payload.milestone_id)
        if payload.title is not None:
            milestone.title = payload.title
        if payload.description is not None:
            milestone.description = payload.description
        if payload.due_date is not None:
            milestone.due_date = payload.due_date
        return []

    def _milestone_deleted(self, state: AppState, event) -> List[StatusChange]:
        milestone_id = event.payload.milestone_id
        if milestone_id not in state.milestones:
            return self._missing(event, "milestone", milestone_id)
        project_id = self._remove_milestone(state, milestone_id)
        return self.aggregator.cascade(state, [], event.timestamp, [project_id])

    def _milestone_status_changed(self, state: AppState, event) -> List[StatusChange]:
        return self.aggregator.cascade(state, [event.payload.milestone_id], event.timestamp)

    def _milestone_added_to_project(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        milestone = state.milestones.get(payload.milestone_id)
        if milestone is None:
            return self._missing(event, "milestone", payload.milestone_id)
        project = state.projects.get(payload.project_id)
        if project is None:
            return self._missing(event, "project", payload.project_id)

        relations = state.relations
        old_project_id = relations.milestone_to_project.get(payload.milestone_id)
        if old_project_id == payload.project_id:
            return []
        if old_project_id is not None:
            _discard(relations.project_to_milestones.get(old_project_id, []), payload.milestone_id)
            old_project = state.projects.get(old_project_id)
            if old_project is not None:
                _discard(old_project.milestone_ids, payload.milestone_id)

        milestone.project_id = payload.project_id
        _add(project.milestone_ids, payload.milestone_id)
        _add(relations.project_to_milestones.setdefault(payload.project_id, []), payload.milestone_id)
        relations.milestone_to_project[payload.milestone_id] = payload.project_id
        return self.aggregator.cascade(state, [], event.timestamp, [old_project_id, payload.project_id])

    def _milestone_dependency_added(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        milestone = state.milestones.get(payload.milestone_id)
        if milestone is None:
            return self._missing(event, "milestone", payload.milestone_id)
        if payload.depends_on_milestone_id not in state.milestones:
            return self._missing(event, "milestone", payload.depends_on_milestone_id)
        depends_on = sorted_unique(milestone.depends_on + [payload.depends_on_milestone_id])
        milestone.depends_on = depends_on
        state.relations.milestone_dependencies[payload.milestone_id] = list(depends_on)
        return []

    def _milestone_dependency_removed(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        milestone = state.milestones.get(payload.milestone_id)
        if milestone is None:
            return self._missing(event, "milestone", payload.milestone_id)
        depends_on = [m for m in milestone.depends_on if m != payload.depends_on_milestone_id]
        milestone.depends_on = depends_on
        state.relations.milestone_dependencies[payload.milestone_id] = list(depends_on)
        return []

    # Tasks

    def _task_created(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        if payload.task_id in state.tasks:
            self.log.warning(f"Task {payload.task_id} created twice, keeping the first")
            return []
        milestone = state.milestones.get(payload.milestone_id)
        if milestone is None:
            return self._missing(event, "milestone", payload.milestone_id)

        state.tasks[payload.task_id] = Task(
            id=payload.task_id,
            milestone_id=payload.milestone_id,
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
            estimated_points=payload.estimated_points,
            tags=list(payload.tags),
        )
        _add(milestone.task_ids, payload.task_id)
        relations = state.relations
        _add(relations.milestone_to_tasks.setdefault(payload.milestone_id, []), payload.task_id)
        relations.task_to_milestone[payload.task_id] = payload.milestone_id
        relations.task_dependencies[payload.task_id] = []
        return self.aggregator.cascade(state, [payload.milestone_id], event.timestamp)

    def _task_updated(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        task = state.tasks.get(payload.task_id)
        if task is None:
            return self._missing(event, "task", payload.task_id)
        if payload.title is not None:
            task.title = payload.title
        if payload.description is not None:
            task.description = payload.description
        if payload.estimated_points is not None:
            task.estimated_points = payload.estimated_points
        if payload.priority is not None:
            task.priority = payload.priority
        if payload.tags is not None:
            task.tags = sorted_unique(payload.tags)
        return []

    def _task_deleted(self, state: AppState, event) -> List[StatusChange]:
        task_id = event.payload.task_id
        if task_id not in state.tasks:
            return self._missing(event, "task", task_id)
        milestone_id = self._remove_task(state, task_id)
        return self.aggregator.cascade(state, [milestone_id], event.timestamp)

    def _transition(self, state: AppState, event, new_status: Status, **fields) -> List[StatusChange]:
        task = state.tasks.get(event.payload.task_id)
        if task is None:
            return self._missing(event, "task", event.payload.task_id)
        self.aggregator.apply_transition(task, new_status, event.timestamp, **fields)
        return self.aggregator.cascade(state, [state.relations.task_to_milestone.get(task.id)], event.timestamp)

    def _task_status_changed(self, state: AppState, event) -> List[StatusChange]:
        return self._transition(state, event, event.payload.new_status, reason=event.payload.reason)

    def _task_started(self, state: AppState, event) -> List[StatusChange]:
        return self._transition(state, event, Status.IN_PROGRESS, start_time=event.payload.start_time)

    def _task_completed(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        return self._transition(state, event, Status.COMPLETED, end_time=payload.end_time,
                                actual_points=payload.actual_points)

    def _task_blocked(self, state: AppState, event) -> List[StatusChange]:
        return self._transition(state, event, Status.BLOCKED, reason=event.payload.reason)

    def _task_unblocked(self, state: AppState, event) -> List[StatusChange]:
        return self._transition(state, event, Status.IN_PROGRESS)

    def _task_added_to_milestone(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        task = state.tasks.get(payload.task_id)
        if task is None:
            return self._missing(event, "task", payload.task_id)
        milestone = state.milestones.get(payload.milestone_id)
        if milestone is None:
            return self._missing(event, "milestone", payload.milestone_id)

        relations = state.relations
        old_milestone_id = relations.task_to_milestone.get(payload.task_id)
        if old_milestone_id == payload.milestone_id:
            return []
        if old_milestone_id is not None:
            _discard(relations.milestone_to_tasks.get(old_milestone_id, []), payload.task_id)
            old_milestone = state.milestones.get(old_milestone_id)
            if old_milestone is not None:
                _discard(old_milestone.task_ids, payload.task_id)

        task.milestone_id = payload.milestone_id
        _add(milestone.task_ids, payload.task_id)
        _add(relations.milestone_to_tasks.setdefault(payload.milestone_id, []), payload.task_id)
        relations.task_to_milestone[payload.task_id] = payload.milestone_id
        return self.aggregator.cascade(state, [old_milestone_id, payload.milestone_id], event.timestamp)

    def _task_dependency_added(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        task = state.tasks.get(payload.task_id)
        if task is None:
            return self._missing(event, "task", payload.task_id)
        if payload.depends_on_task_id not in state.tasks:
            return self._missing(event, "task", payload.depends_on_task_id)
        depends_on = sorted_unique(task.depends_on + [payload.depends_on_task_id])
        task.depends_on = depends_on
        state.relations.task_dependencies[payload.task_id] = list(depends_on)
        return []

    def _task_dependency_removed(self, state: AppState, event) -> List[StatusChange]:
        payload = event.payload
        task = state.tasks.get(payload.task_id)
        if task is None:
            return self._missing(event, "task", payload.task_id)
        depends_on = [t for t in task.depends_on if t != payload.depends_on_task_id]
        task.depends_on = depends_on
        state.relations.task_dependencies[payload.task_id] = list(depends_on)
        return []

    def _task_time_logged(self, state: AppState, event) -> List[StatusChange]:
        task = state.tasks.get(event.payload.task_id)
        if task is None:
            return self._missing(event, "task", event.payload.task_id)
        task.logged_minutes += event.payload.minutes
        return []
