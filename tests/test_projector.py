"""Unit tests for StateProjector."""

import pytest
from unittest.mock import patch

from panopticon.events import EVENT_TYPES, ProjectCreated, ProjectCreatedPayload
from panopticon.models import Status
from panopticon.projector import StateProjector
from panopticon.recovery import FatalError, UnknownEventError


def _scenario(factory):
    """A log exercising creation, work, moves, dependencies and deletes."""
    events = []
    project = factory.project_created("Website")
    other_project = factory.project_created("Docs")
    pid, other_pid = project.payload.project_id, other_project.payload.project_id
    milestone = factory.milestone_created(pid, "Launch")
    second = factory.milestone_created(pid, "Polish")
    mid, second_mid = milestone.payload.milestone_id, second.payload.milestone_id
    design = factory.task_created(mid, "Design", estimated_points=2)
    build = factory.task_created(mid, "Build", estimated_points=3)
    ship = factory.task_created(second_mid, "Ship", estimated_points=5, tags=["release"])
    design_id, build_id, ship_id = (e.payload.task_id for e in (design, build, ship))
    events += [project, other_project, milestone, second, design, build, ship]
    events += [
        factory.task_dependency_added(build_id, design_id),
        factory.milestone_dependency_added(second_mid, mid),
        factory.task_started(design_id),
        factory.task_time_logged(design_id, 25, "pomodoro"),
        factory.task_completed(design_id),
        factory.task_started(build_id),
        factory.task_blocked(build_id, "waiting for review"),
        factory.task_unblocked(build_id),
        factory.task_updated(ship_id, estimated_points=8),
        factory.task_added_to_milestone(ship_id, mid),
        factory.milestone_added_to_project(second_mid, other_pid),
        factory.project_updated(pid, title="Website relaunch"),
        factory.task_deleted(design_id),
    ]
    return events


class TestConstruction:
    """Test handler coverage."""

    def test_every_kind_has_a_handler(self, projector):
        """Test that construction succeeds with full coverage."""
        assert set(projector._handlers) == set(EVENT_TYPES)

    def test_missing_handler_detected(self, context):
        """Test that an unhandled kind fails construction."""
        with patch.dict("panopticon.projector.EVENT_TYPES", {"project_archived": ProjectCreated}):
            with pytest.raises(FatalError, match="project_archived"):
                StateProjector(context)


class TestFold:
    """Test single-event folding."""

    def test_fold_is_pure(self, projector, factory):
        """Test that the input state is never modified."""
        state = projector.empty_state()
        before = state.to_json()
        after = projector.fold(state, factory.project_created("A"))
        assert state.to_json() == before
        assert len(after.projects) == 1
        assert after.event_count == 1

    def test_bookkeeping_uses_event_timestamp(self, projector, factory):
        """Test lastUpdated and lastEventId."""
        event = factory.project_created("A")
        state = projector.fold(projector.empty_state(), event)
        assert state.last_updated == event.timestamp
        assert state.last_event_id == event.id

    def test_unknown_version_rejected(self, projector, factory):
        """Test that a version this build cannot apply stops the fold."""
        event = factory.project_created("A").model_copy(update={"version": 99})
        with pytest.raises(UnknownEventError):
            projector.fold(projector.empty_state(), event)

    def test_missing_references_are_noops(self, projector, factory):
        """Test events about entities the projection does not know."""
        state = projector.empty_state()
        for event in (factory.task_started("ghost"), factory.milestone_created("nowhere", "M"),
                      factory.task_deleted("ghost"), factory.project_updated("nowhere", title="x")):
            state = projector.fold(state, event)
        assert state.tasks == {} and state.milestones == {} and state.projects == {}
        assert state.event_count == 4

    def test_apply_returns_cascade(self, projector, factory):
        """Test that starting the first task cascades upwards."""
        events = _scenario(factory)[:7]
        state = projector.project(events)
        task_id = events[4].payload.task_id
        state, changes = projector.apply(state, factory.task_started(task_id))
        assert [(c.aggregate, c.new_status) for c in changes] == [
            ("milestone", Status.IN_PROGRESS),
            ("project", Status.IN_PROGRESS),
        ]
        assert state.tasks[task_id].start_time is not None

    def test_status_events_are_informational(self, projector, factory):
        """Test that a milestone status event cannot override the children."""
        events = _scenario(factory)[:7]
        state = projector.project(events)
        mid = events[2].payload.milestone_id
        state = projector.fold(state, factory.milestone_status_changed(mid, Status.NOT_STARTED, Status.COMPLETED))
        assert state.milestones[mid].status == Status.NOT_STARTED


class TestReplay:
    """Test whole-log projection."""

    def test_scenario_state(self, projector, factory):
        """Test the projection of a mixed log."""
        events = _scenario(factory)
        state = projector.project(events)
        pid, other_pid = events[0].payload.project_id, events[1].payload.project_id
        mid, second_mid = events[2].payload.milestone_id, events[3].payload.milestone_id
        design_id, build_id, ship_id = (e.payload.task_id for e in events[4:7])

        assert state.projects[pid].title == "Website relaunch"
        assert design_id not in state.tasks
        assert state.tasks[build_id].status == Status.IN_PROGRESS
        assert state.tasks[build_id].depends_on == []
        assert state.tasks[ship_id].milestone_id == mid
        assert state.tasks[ship_id].estimated_points == 8.0
        assert state.relations.milestone_to_tasks[mid] == [build_id, ship_id]
        assert state.relations.milestone_to_tasks[second_mid] == []
        assert state.milestones[second_mid].project_id == other_pid
        assert state.projects[pid].milestone_ids == [mid]
        assert state.relations.project_to_milestones[other_pid] == [second_mid]
        assert state.milestones[second_mid].depends_on == [mid]
        assert state.milestones[mid].status == Status.IN_PROGRESS
        assert state.statistics.total_tasks == 2
        assert state.event_count == len(events)

    def test_idempotent_replay(self, projector, factory):
        """Test that two replays give byte-identical JSON."""
        events = _scenario(factory)
        assert projector.project(events).to_json() == projector.project(events).to_json()

    def test_incremental_equals_full_for_every_prefix(self, projector, factory):
        """Test folding one by one against replaying each prefix."""
        events = _scenario(factory)
        state = projector.empty_state()
        for i, event in enumerate(events, start=1):
            state = projector.fold(state, event)
            assert state.to_json() == projector.project(events[:i]).to_json()

    def test_replay_continues_from_state(self, projector, factory):
        """Test resuming from an intermediate state."""
        events = _scenario(factory)
        middle = projector.project(events[:10])
        assert projector.replay(middle, events[10:]).to_json() == projector.project(events).to_json()

    def test_time_logging_accumulates(self, projector, factory):
        """Test that logged minutes add up and leave status alone."""
        events = _scenario(factory)[:7]
        task_id = events[4].payload.task_id
        events += [factory.task_time_logged(task_id, 25), factory.task_time_logged(task_id, 5)]
        state = projector.project(events)
        assert state.tasks[task_id].logged_minutes == 30.0
        assert state.tasks[task_id].status == Status.NOT_STARTED

    def test_project_delete_removes_children(self, projector, factory):
        """Test that deleting a project leaves no orphans."""
        events = _scenario(factory)[:9]
        pid = events[0].payload.project_id
        state = projector.project(events + [factory.project_deleted(pid)])
        assert pid not in state.projects
        assert state.milestones == {}
        assert state.tasks == {}
        assert state.relations.task_to_milestone == {}
        assert state.relations.milestone_to_project == {}
        assert state.relations.task_dependencies == {}
        assert state.statistics.total_tasks == 0

    def test_milestone_delete_cascades_project(self, projector, factory):
        """Test that removing the only active milestone updates the project."""
        events = _scenario(factory)[:7]
        design_id = events[4].payload.task_id
        mid = events[2].payload.milestone_id
        pid = events[0].payload.project_id
        state = projector.project(events + [factory.task_started(design_id)])
        assert state.projects[pid].status == Status.IN_PROGRESS
        state = projector.fold(state, factory.milestone_deleted(mid))
        assert state.projects[pid].status == Status.NOT_STARTED
        assert design_id not in state.tasks

    def test_duplicate_create_keeps_first(self, projector, factory, clock):
        """Test that a repeated create event does not overwrite the entity."""
        first = factory.project_created("Original")
        again = ProjectCreated(
            timestamp=clock(),
            payload=ProjectCreatedPayload(project_id=first.payload.project_id, title="Copy"),
        )
        state = projector.project([first, again])
        assert state.projects[first.payload.project_id].title == "Original"
