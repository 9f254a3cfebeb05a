"""
Status cascade and statistics.

A task status change ripples upwards: the owning milestone's status is
recomputed from its tasks, then the owning project's from its milestones.
Composite statuses are never set any other way.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional

from .context import PanopticonContext
from .models import AppState, Status, Task
from .recovery import ValidationError

# Legal task status transitions; anything else is rejected.
TRANSITIONS: Dict[Status, FrozenSet[Status]] = {
    Status.NOT_STARTED: frozenset({Status.IN_PROGRESS}),
    Status.IN_PROGRESS: frozenset({Status.BLOCKED, Status.COMPLETED}),
    Status.BLOCKED: frozenset({Status.IN_PROGRESS}),
    Status.COMPLETED: frozenset(),
}

def check_transition(old: Status, new: Status) -> None:
    if new not in TRANSITIONS[old]:
        raise ValidationError(f"Illegal task status transition: {old.value} -> {new.value}")

def composite_status(statuses: Iterable[Status]) -> Status:
    """Status of a milestone or project given its children's statuses.

    First match wins: all completed (and at least one child), any in
    progress, any blocked, otherwise not started.
    """
    statuses = list(statuses)
    if statuses and all(s == Status.COMPLETED for s in statuses):
        return Status.COMPLETED
    if any(s == Status.IN_PROGRESS for s in statuses):
        return Status.IN_PROGRESS
    if any(s == Status.BLOCKED for s in statuses):
        return Status.BLOCKED
    return Status.NOT_STARTED

@dataclass(frozen=True)
class StatusChange:
    """A composite status that changed during a cascade."""
    aggregate: str
    entity_id: str
    old_status: Status
    new_status: Status

class StatusAggregator:
    """Recomputes derived statuses and statistics in place on a working state."""

    def __init__(self, context: PanopticonContext):
        self.log = context.get_logger("aggregator")

    def apply_transition(self, task: Task, new_status: Status, timestamp: datetime, reason: Optional[str] = None,
                         start_time: Optional[datetime] = None, end_time: Optional[datetime] = None,
                         actual_points: Optional[float] = None) -> None:
        """Set a task's status and the fields that go with the transition."""
        task.status = new_status
        if new_status == Status.IN_PROGRESS:
            if task.start_time is None:
                task.start_time = start_time or timestamp
            task.blocked_reason = None
        elif new_status == Status.BLOCKED:
            task.blocked_reason = reason
        elif new_status == Status.COMPLETED:
            task.end_time = end_time or timestamp
            task.actual_points = actual_points if actual_points is not None else task.estimated_points
            task.blocked_reason = None

    def recompute_milestone(self, state: AppState, milestone_id: str, timestamp: datetime) -> Optional[StatusChange]:
        milestone = state.milestones.get(milestone_id)
        if milestone is None:
            return None

        new_status = composite_status(t.status for t in state.tasks_of(milestone_id))
        if new_status == milestone.status:
            return None

        old_status = milestone.status
        milestone.status = new_status
        milestone.completed_date = timestamp if new_status == Status.COMPLETED else None
        self.log.debug(f"Milestone {milestone_id}: {old_status.value} -> {new_status.value}")
        return StatusChange("milestone", milestone_id, old_status, new_status)

    def recompute_project(self, state: AppState, project_id: str, timestamp: datetime) -> Optional[StatusChange]:
        project = state.projects.get(project_id)
        if project is None:
            return None

        new_status = composite_status(m.status for m in state.milestones_of(project_id))
        if new_status == project.status:
            return None

        old_status = project.status
        project.status = new_status
        project.updated_at = timestamp
        self.log.debug(f"Project {project_id}: {old_status.value} -> {new_status.value}")
        return StatusChange("project", project_id, old_status, new_status)

    def cascade(self, state: AppState, milestone_ids: Iterable[Optional[str]], timestamp: datetime,
                project_ids: Iterable[Optional[str]] = ()) -> List[StatusChange]:
        """Recompute the given milestones, then every affected project once.

        ``project_ids`` names extra projects whose milestone set changed.
        Missing ids are ignored.
        """
        changes = []
        projects: List[str] = []
        for milestone_id in milestone_ids:
            if milestone_id is None:
                continue
            change = self.recompute_milestone(state, milestone_id, timestamp)
            if change is not None:
                changes.append(change)
            project_id = state.relations.milestone_to_project.get(milestone_id)
            if project_id is not None and project_id not in projects:
                projects.append(project_id)
        for project_id in project_ids:
            if project_id is not None and project_id not in projects:
                projects.append(project_id)
        for project_id in projects:
            change = self.recompute_project(state, project_id, timestamp)
            if change is not None:
                changes.append(change)
        return changes

    def recompute_statistics(self, state: AppState) -> None:
        """Refresh the statistics block from the current tasks.

        averagePointsPerHour only moves when completed tasks with both
        timestamps account for a positive number of hours.
        """
        stats = state.statistics
        tasks = list(state.tasks.values())
        completed = [t for t in tasks if t.status == Status.COMPLETED]

        stats.total_tasks = len(tasks)
        stats.completed_tasks = len(completed)
        stats.total_points = sum((t.estimated_points for t in tasks), 0.0)
        stats.earned_points = sum(
            (t.actual_points if t.actual_points is not None else t.estimated_points for t in completed),
            0.0,
        )

        hours = sum(
            max(0.0, (t.end_time - t.start_time).total_seconds()) / 3600
            for t in completed if t.start_time is not None and t.end_time is not None
        )
        if hours > 0:
            rate = stats.earned_points / hours
            if math.isfinite(rate):
                stats.average_points_per_hour = rate
