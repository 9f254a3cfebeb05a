"""
Event model for the progress engine.

Every change to projects, milestones and tasks is recorded as one immutable
event. Events are grouped per aggregate (ProjectEvent, MilestoneEvent,
TaskEvent) and joined into the closed, discriminated union ``Event``; the
``type`` literal selects the payload shape.
"""
from datetime import datetime
from typing import Annotated, ClassVar, Dict, List, Literal, Optional, Tuple, Type, Union, get_args
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .context import PanopticonContext, as_utc, utc_now
from .models import Status, TaskPriority, sorted_unique
from .version import EVENT_VERSION

# Timestamps compared across events; naive values are read as UTC
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]

# Point and minute amounts coming from the log must be usable by the models
Points = Annotated[float, Field(ge=0, allow_inf_nan=False)]
Minutes = Annotated[float, Field(gt=0, allow_inf_nan=False)]

def new_id() -> str:
    return str(uuid4())

class Payload(BaseModel):
    """Base class for event payloads."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    # Fields holding ids of the projects, milestones or tasks this payload refers to
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def entity_ids(self) -> Tuple[str, ...]:
        return tuple(getattr(self, name) for name in self.ENTITY_FIELDS if getattr(self, name) is not None)

class EventBase(BaseModel):
    """Fields shared by every event."""

    model_config = ConfigDict(frozen=True)

    AGGREGATE: ClassVar[str] = ""

    id: str = Field(default_factory=new_id, description="Unique identifier of the event")
    timestamp: UtcDatetime = Field(default_factory=utc_now, description="Wall clock time of creation; advisory only")
    version: int = Field(default=EVENT_VERSION, description="Payload layout version")

    def entity_ids(self) -> Tuple[str, ...]:
        return self.payload.entity_ids()

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

class ProjectEventBase(EventBase):
    AGGREGATE: ClassVar[str] = "project"

class MilestoneEventBase(EventBase):
    AGGREGATE: ClassVar[str] = "milestone"

class TaskEventBase(EventBase):
    AGGREGATE: ClassVar[str] = "task"

# --- Project events ---

class ProjectCreatedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("project_id",)
    project_id: str
    title: str
    description: Optional[str] = None

class ProjectUpdatedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("project_id",)
    project_id: str
    title: Optional[str] = None
    description: Optional[str] = None

class ProjectRefPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("project_id",)
    project_id: str

class ProjectStatusPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("project_id",)
    project_id: str
    old_status: Status
    new_status: Status

class ProjectCreated(ProjectEventBase):
    type: Literal["project_created"] = "project_created"
    payload: ProjectCreatedPayload

class ProjectUpdated(ProjectEventBase):
    type: Literal["project_updated"] = "project_updated"
    payload: ProjectUpdatedPayload

class ProjectDeleted(ProjectEventBase):
    type: Literal["project_deleted"] = "project_deleted"
    payload: ProjectRefPayload

class ProjectStatusChanged(ProjectEventBase):
    type: Literal["project_status_changed"] = "project_status_changed"
    payload: ProjectStatusPayload

# --- Milestone events ---

class MilestoneCreatedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("milestone_id", "project_id")
    milestone_id: str
    project_id: str
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None

class MilestoneUpdatedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("milestone_id",)
    milestone_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None

class MilestoneRefPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("milestone_id",)
    milestone_id: str

class MilestoneStatusPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("milestone_id",)
    milestone_id: str
    old_status: Status
    new_status: Status

class MilestoneProjectPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("milestone_id", "project_id")
    milestone_id: str
    project_id: str

class MilestoneDependencyPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("milestone_id", "depends_on_milestone_id")
    milestone_id: str
    depends_on_milestone_id: str

class MilestoneCreated(MilestoneEventBase):
    type: Literal["milestone_created"] = "milestone_created"
    payload: MilestoneCreatedPayload

class MilestoneUpdated(MilestoneEventBase):
    type: Literal["milestone_updated"] = "milestone_updated"
    payload: MilestoneUpdatedPayload

class MilestoneDeleted(MilestoneEventBase):
    type: Literal["milestone_deleted"] = "milestone_deleted"
    payload: MilestoneRefPayload

class MilestoneStatusChanged(MilestoneEventBase):
    type: Literal["milestone_status_changed"] = "milestone_status_changed"
    payload: MilestoneStatusPayload

class MilestoneAddedToProject(MilestoneEventBase):
    """Re-parents a milestone; it leaves its previous project."""
    type: Literal["milestone_added_to_project"] = "milestone_added_to_project"
    payload: MilestoneProjectPayload

class MilestoneDependencyAdded(MilestoneEventBase):
    type: Literal["milestone_dependency_added"] = "milestone_dependency_added"
    payload: MilestoneDependencyPayload

class MilestoneDependencyRemoved(MilestoneEventBase):
    type: Literal["milestone_dependency_removed"] = "milestone_dependency_removed"
    payload: MilestoneDependencyPayload

# --- Task events ---

class TaskCreatedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id", "milestone_id")
    task_id: str
    milestone_id: str
    title: str
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MUST
    estimated_points: Points = 1.0
    tags: Tuple[str, ...] = ()

class TaskUpdatedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id",)
    task_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    estimated_points: Optional[Points] = None
    priority: Optional[TaskPriority] = None
    tags: Optional[Tuple[str, ...]] = None

class TaskRefPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id",)
    task_id: str

class TaskStatusPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id",)
    task_id: str
    old_status: Status
    new_status: Status
    reason: Optional[str] = None

class TaskMilestonePayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id", "milestone_id")
    task_id: str
    milestone_id: str

class TaskDependencyPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id", "depends_on_task_id")
    task_id: str
    depends_on_task_id: str

class TaskStartedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id",)
    task_id: str
    start_time: UtcDatetime

class TaskCompletedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id",)
    task_id: str
    end_time: UtcDatetime
    actual_points: Optional[Points] = None

class TaskBlockedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id",)
    task_id: str
    reason: str

class TaskTimeLoggedPayload(Payload):
    ENTITY_FIELDS: ClassVar[Tuple[str, ...]] = ("task_id",)
    task_id: str
    minutes: Minutes
    description: Optional[str] = None

class TaskCreated(TaskEventBase):
    type: Literal["task_created"] = "task_created"
    payload: TaskCreatedPayload

class TaskUpdated(TaskEventBase):
    type: Literal["task_updated"] = "task_updated"
    payload: TaskUpdatedPayload

class TaskDeleted(TaskEventBase):
    type: Literal["task_deleted"] = "task_deleted"
    payload: TaskRefPayload

class TaskStatusChanged(TaskEventBase):
    type: Literal["task_status_changed"] = "task_status_changed"
    payload: TaskStatusPayload

class TaskAddedToMilestone(TaskEventBase):
    """Re-parents a task; it leaves its previous milestone."""
    type: Literal["task_added_to_milestone"] = "task_added_to_milestone"
    payload: TaskMilestonePayload

class TaskDependencyAdded(TaskEventBase):
    type: Literal["task_dependency_added"] = "task_dependency_added"
    payload: TaskDependencyPayload

class TaskDependencyRemoved(TaskEventBase):
    type: Literal["task_dependency_removed"] = "task_dependency_removed"
    payload: TaskDependencyPayload

class TaskStarted(TaskEventBase):
    type: Literal["task_started"] = "task_started"
    payload: TaskStartedPayload

class TaskCompleted(TaskEventBase):
    type: Literal["task_completed"] = "task_completed"
    payload: TaskCompletedPayload

class TaskBlocked(TaskEventBase):
    type: Literal["task_blocked"] = "task_blocked"
    payload: TaskBlockedPayload

class TaskUnblocked(TaskEventBase):
    type: Literal["task_unblocked"] = "task_unblocked"
    payload: TaskRefPayload

class TaskTimeLogged(TaskEventBase):
    type: Literal["task_time_logged"] = "task_time_logged"
    payload: TaskTimeLoggedPayload

ProjectEvent = Union[ProjectCreated, ProjectUpdated, ProjectDeleted, ProjectStatusChanged]

MilestoneEvent = Union[
    MilestoneCreated,
    MilestoneUpdated,
    MilestoneDeleted,
    MilestoneStatusChanged,
    MilestoneAddedToProject,
    MilestoneDependencyAdded,
    MilestoneDependencyRemoved,
]

TaskEvent = Union[
    TaskCreated,
    TaskUpdated,
    TaskDeleted,
    TaskStatusChanged,
    TaskAddedToMilestone,
    TaskDependencyAdded,
    TaskDependencyRemoved,
    TaskStarted,
    TaskCompleted,
    TaskBlocked,
    TaskUnblocked,
    TaskTimeLogged,
]

Event = Annotated[Union[ProjectEvent, MilestoneEvent, TaskEvent], Field(discriminator="type")]

EVENT_ADAPTER: TypeAdapter = TypeAdapter(Event)

EVENT_CLASSES: Tuple[Type[EventBase], ...] = get_args(ProjectEvent) + get_args(MilestoneEvent) + get_args(TaskEvent)

# type literal -> event class
EVENT_TYPES: Dict[str, Type[EventBase]] = {cls.model_fields["type"].default: cls for cls in EVENT_CLASSES}

def kinds_of(aggregate: str) -> List[str]:
    """Event type literals belonging to one aggregate."""
    return [kind for kind, cls in EVENT_TYPES.items() if cls.AGGREGATE == aggregate]

class EventFactory:
    """Creates well-formed events.

    Every method stamps a fresh id, the current EVENT_VERSION and the context
    clock's time. Nothing here validates: the command layer does that before
    asking for an event, so creation cannot fail.
    """

    def __init__(self, context: PanopticonContext):
        self.context = context

    def _create(self, event_class, payload: Payload, timestamp: Optional[datetime] = None):
        return event_class(
            id=new_id(),
            timestamp=timestamp or self.context.now(),
            version=EVENT_VERSION,
            payload=payload,
        )

    # Projects

    def project_created(self, title: str, description: Optional[str] = None) -> ProjectCreated:
        return self._create(ProjectCreated, ProjectCreatedPayload(project_id=new_id(), title=title, description=description))

    def project_updated(self, project_id: str, title: Optional[str] = None,
                        description: Optional[str] = None) -> ProjectUpdated:
        return self._create(ProjectUpdated, ProjectUpdatedPayload(project_id=project_id, title=title, description=description))

    def project_deleted(self, project_id: str) -> ProjectDeleted:
        return self._create(ProjectDeleted, ProjectRefPayload(project_id=project_id))

    def project_status_changed(self, project_id: str, old_status: Status, new_status: Status,
                               timestamp: Optional[datetime] = None) -> ProjectStatusChanged:
        payload = ProjectStatusPayload(project_id=project_id, old_status=old_status, new_status=new_status)
        return self._create(ProjectStatusChanged, payload, timestamp)

    # Milestones

    def milestone_created(self, project_id: str, title: str, description: Optional[str] = None,
                          due_date: Optional[datetime] = None) -> MilestoneCreated:
        payload = MilestoneCreatedPayload(
            milestone_id=new_id(), project_id=project_id, title=title,
            description=description, due_date=due_date,
        )
        return self._create(MilestoneCreated, payload)

    def milestone_updated(self, milestone_id: str, title: Optional[str] = None,
                          description: Optional[str] = None, due_date: Optional[datetime] = None) -> MilestoneUpdated:
        payload = MilestoneUpdatedPayload(milestone_id=milestone_id, title=title, description=description, due_date=due_date)
        return self._create(MilestoneUpdated, payload)

    def milestone_deleted(self, milestone_id: str) -> MilestoneDeleted:
        return self._create(MilestoneDeleted, MilestoneRefPayload(milestone_id=milestone_id))

    def milestone_status_changed(self, milestone_id: str, old_status: Status, new_status: Status,
                                 timestamp: Optional[datetime] = None) -> MilestoneStatusChanged:
        payload = MilestoneStatusPayload(milestone_id=milestone_id, old_status=old_status, new_status=new_status)
        return self._create(MilestoneStatusChanged, payload, timestamp)

    def milestone_added_to_project(self, milestone_id: str, project_id: str) -> MilestoneAddedToProject:
        return self._create(MilestoneAddedToProject, MilestoneProjectPayload(milestone_id=milestone_id, project_id=project_id))

    def milestone_dependency_added(self, milestone_id: str, depends_on: str) -> MilestoneDependencyAdded:
        payload = MilestoneDependencyPayload(milestone_id=milestone_id, depends_on_milestone_id=depends_on)
        return self._create(MilestoneDependencyAdded, payload)

    def milestone_dependency_removed(self, milestone_id: str, depends_on: str) -> MilestoneDependencyRemoved:
        payload = MilestoneDependencyPayload(milestone_id=milestone_id, depends_on_milestone_id=depends_on)
        return self._create(MilestoneDependencyRemoved, payload)

    # Tasks

    def task_created(self, milestone_id: str, title: str, description: Optional[str] = None,
                     estimated_points: float = 1.0, priority: TaskPriority = TaskPriority.MUST,
                     tags=()) -> TaskCreated:
        payload = TaskCreatedPayload(
            task_id=new_id(), milestone_id=milestone_id, title=title, description=description,
            priority=priority, estimated_points=estimated_points, tags=tuple(sorted_unique(tags)),
        )
        return self._create(TaskCreated, payload)

    def task_updated(self, task_id: str, title: Optional[str] = None, description: Optional[str] = None,
                     estimated_points: Optional[float] = None, priority: Optional[TaskPriority] = None,
                     tags=None) -> TaskUpdated:
        payload = TaskUpdatedPayload(
            task_id=task_id, title=title, description=description, estimated_points=estimated_points,
            priority=priority, tags=tuple(sorted_unique(tags)) if tags is not None else None,
        )
        return self._create(TaskUpdated, payload)

    def task_deleted(self, task_id: str) -> TaskDeleted:
        return self._create(TaskDeleted, TaskRefPayload(task_id=task_id))

    def task_status_changed(self, task_id: str, old_status: Status, new_status: Status,
                            reason: Optional[str] = None) -> TaskStatusChanged:
        payload = TaskStatusPayload(task_id=task_id, old_status=old_status, new_status=new_status, reason=reason)
        return self._create(TaskStatusChanged, payload)

    def task_added_to_milestone(self, task_id: str, milestone_id: str) -> TaskAddedToMilestone:
        return self._create(TaskAddedToMilestone, TaskMilestonePayload(task_id=task_id, milestone_id=milestone_id))

    def task_dependency_added(self, task_id: str, depends_on: str) -> TaskDependencyAdded:
        return self._create(TaskDependencyAdded, TaskDependencyPayload(task_id=task_id, depends_on_task_id=depends_on))

    def task_dependency_removed(self, task_id: str, depends_on: str) -> TaskDependencyRemoved:
        return self._create(TaskDependencyRemoved, TaskDependencyPayload(task_id=task_id, depends_on_task_id=depends_on))

    def task_started(self, task_id: str) -> TaskStarted:
        now = self.context.now()
        return self._create(TaskStarted, TaskStartedPayload(task_id=task_id, start_time=now), now)

    def task_completed(self, task_id: str, actual_points: Optional[float] = None) -> TaskCompleted:
        now = self.context.now()
        return self._create(TaskCompleted, TaskCompletedPayload(task_id=task_id, end_time=now, actual_points=actual_points), now)

    def task_blocked(self, task_id: str, reason: str) -> TaskBlocked:
        return self._create(TaskBlocked, TaskBlockedPayload(task_id=task_id, reason=reason))

    def task_unblocked(self, task_id: str) -> TaskUnblocked:
        return self._create(TaskUnblocked, TaskRefPayload(task_id=task_id))

    def task_time_logged(self, task_id: str, minutes: float, description: Optional[str] = None) -> TaskTimeLogged:
        return self._create(TaskTimeLogged, TaskTimeLoggedPayload(task_id=task_id, minutes=minutes, description=description))
