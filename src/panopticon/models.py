from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict

from .version import STATE_VERSION

class Status(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"

class TaskPriority(Enum):
    MUST = "must"
    ENHANCE = "enhance"

class CamelModel(BaseModel):
    """Base model persisted with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

def sorted_unique(values) -> List[str]:
    """Set-valued fields are stored sorted so serialized state is stable."""
    return sorted(set(values))

class Project(CamelModel):
    id: str = Field(description="Unique identifier of the project")
    title: str = Field(description="Human readable name of the project")
    description: Optional[str] = Field(default=None, description="What the project is about")
    status: Status = Field(default=Status.NOT_STARTED, description="Derived from the statuses of its milestones")
    created_at: datetime = Field(description="Timestamp of the project_created event")
    updated_at: datetime = Field(description="Timestamp of the last event that changed the project")
    milestone_ids: List[str] = Field(default_factory=list, description="Milestones of the project, in creation order")

class Milestone(CamelModel):
    id: str = Field(description="Unique identifier of the milestone")
    project_id: str = Field(description="The project owning this milestone")
    title: str = Field(description="Human readable name of the milestone")
    description: Optional[str] = Field(default=None, description="Why do we need this milestone?")
    status: Status = Field(default=Status.NOT_STARTED, description="Derived from the statuses of its tasks")
    due_date: Optional[datetime] = Field(default=None, description="When the milestone should be finished")
    completed_date: Optional[datetime] = Field(default=None, description="When the milestone became completed")
    task_ids: List[str] = Field(default_factory=list, description="Tasks of the milestone, in creation order")
    depends_on: List[str] = Field(default_factory=list, description="Milestones that must be finished first")

    @field_validator('depends_on')
    @classmethod
    def normalize_dependencies(cls, v):
        return sorted_unique(v)

class Task(CamelModel):
    id: str = Field(description="Unique identifier of the task")
    milestone_id: str = Field(description="The milestone owning this task")
    title: str = Field(description="Human readable name of the task")
    description: Optional[str] = Field(default=None, description="Why do we need this task?")
    status: Status = Field(default=Status.NOT_STARTED, description="Current status of the task")
    priority: TaskPriority = Field(default=TaskPriority.MUST, description="Must-have or enhancement")
    estimated_points: float = Field(default=1.0, ge=0, description="Estimated effort in points")
    actual_points: Optional[float] = Field(default=None, description="Points earned on completion")
    start_time: Optional[datetime] = Field(default=None, description="When work on the task started")
    end_time: Optional[datetime] = Field(default=None, description="When the task was completed")
    blocked_reason: Optional[str] = Field(default=None, description="Why the task is blocked")
    logged_minutes: float = Field(default=0.0, description="Time reported against the task by the timer")
    tags: List[str] = Field(default_factory=list, description="Free-form labels")
    depends_on: List[str] = Field(default_factory=list, description="Tasks that must be finished first")

    @field_validator('tags', 'depends_on')
    @classmethod
    def normalize_sets(cls, v):
        return sorted_unique(v)

class AppState(CamelModel):
    """The projection of the event log: everything the application knows."""

    projects: Dict[str, Project] = Field(default_factory=dict)
    milestones: Dict[str, Milestone] = Field(default_factory=dict)
    tasks: Dict[str, Task] = Field(default_factory=dict)
    relations: 'AppState.Relations' = Field(default_factory=lambda: AppState.Relations())
    statistics: 'AppState.Statistics' = Field(default_factory=lambda: AppState.Statistics())
    last_updated: Optional[datetime] = Field(default=None, description="Timestamp of the last folded event")
    last_event_id: Optional[str] = Field(default=None, description="Id of the last folded event")
    event_count: int = Field(default=0, description="Number of events folded into this state")
    version: int = Field(default=STATE_VERSION, description="Layout version of the persisted state")

    class Relations(CamelModel):
        project_to_milestones: Dict[str, List[str]] = Field(default_factory=dict)
        milestone_to_tasks: Dict[str, List[str]] = Field(default_factory=dict)
        milestone_to_project: Dict[str, str] = Field(default_factory=dict)
        task_to_milestone: Dict[str, str] = Field(default_factory=dict)
        task_dependencies: Dict[str, List[str]] = Field(default_factory=dict)
        milestone_dependencies: Dict[str, List[str]] = Field(default_factory=dict)

    class Statistics(CamelModel):
        total_tasks: int = 0
        completed_tasks: int = 0
        total_points: float = 0.0
        earned_points: float = 0.0
        average_points_per_hour: float = 0.0

    @classmethod
    def empty(cls, points_per_hour: float = 0.0) -> 'AppState':
        """The canonical state every replay starts from."""
        state = cls()
        state.statistics.average_points_per_hour = float(points_per_hour)
        return state

    def copy_state(self) -> 'AppState':
        return self.model_copy(deep=True)

    def tasks_of(self, milestone_id: str) -> List[Task]:
        return [self.tasks[t] for t in self.relations.milestone_to_tasks.get(milestone_id, []) if t in self.tasks]

    def milestones_of(self, project_id: str) -> List[Milestone]:
        return [self.milestones[m] for m in self.relations.project_to_milestones.get(project_id, []) if m in self.milestones]

AppState.model_rebuild()
