"""Unit tests for the ProgressManager command layer."""

import json
import pytest
import threading
from unittest.mock import patch

from panopticon.config import Config
from panopticon.context import PanopticonContext
from panopticon.data import DataCore
from panopticon.manager import ProgressManager
from panopticon.models import Status, TaskPriority
from panopticon.recovery import (
    CycleError, FatalError, NotFoundError, PersistenceError, ValidationError
)


class TestLifecycle:
    """Test opening and closing."""

    def test_commands_require_open(self, context, data_dir):
        """Test that an unopened manager refuses work."""
        manager = ProgressManager(context, DataCore(context, data_dir))
        with pytest.raises(FatalError):
            manager.create_project("A")

    def test_state_survives_reopen(self, context, data_dir, hierarchy, manager):
        """Test that a second manager sees the same state."""
        manager.start_task(hierarchy["tasks"][0])
        expected = manager.state().to_json()
        with ProgressManager(context, DataCore(context, data_dir)) as reopened:
            assert reopened.state().to_json() == expected

    def test_close_writes_snapshot(self, context, data_dir):
        """Test that closing snapshots pending events."""
        with ProgressManager(context, DataCore(context, data_dir)) as manager:
            manager.create_project("A")
        assert (data_dir / DataCore.SNAPSHOT_FILE).exists()

    def test_reads_are_copies(self, manager, hierarchy):
        """Test that callers cannot mutate committed state."""
        state = manager.state()
        state.projects[hierarchy["project"]].title = "hacked"
        task = manager.get_task(hierarchy["tasks"][0])
        task.status = Status.COMPLETED
        assert manager.get_project(hierarchy["project"]).title == "Website"
        assert manager.get_task(hierarchy["tasks"][0]).status == Status.NOT_STARTED


class TestHierarchyCommands:
    """Test create, update, move and delete commands."""

    def test_create(self, manager, hierarchy):
        """Test the hierarchy built by the fixture."""
        state = manager.state()
        assert state.projects[hierarchy["project"]].milestone_ids == [hierarchy["milestone"]]
        assert state.milestones[hierarchy["milestone"]].task_ids == hierarchy["tasks"]
        assert state.statistics.total_points == 10.0

    def test_create_requires_parent(self, manager):
        """Test that children need an existing parent."""
        with pytest.raises(NotFoundError) as excinfo:
            manager.create_milestone("missing", "M")
        assert excinfo.value.kind == "project"
        with pytest.raises(NotFoundError):
            manager.create_task("missing", "T")

    def test_validation_happens_before_append(self, manager):
        """Test that rejected commands leave the log untouched."""
        before = len(manager.history())
        with pytest.raises(ValidationError):
            manager.create_project("   ")
        project_id = manager.create_project("A")
        milestone_id = manager.create_milestone(project_id, "M")
        with pytest.raises(ValidationError):
            manager.create_task(milestone_id, "T", estimated_points=-1)
        with pytest.raises(ValidationError):
            manager.create_task(milestone_id, "T", estimated_points=float("nan"))
        assert len(manager.history()) == before + 2

    def test_updates(self, manager, hierarchy):
        """Test project, milestone and task updates."""
        manager.update_project(hierarchy["project"], title="Relaunch")
        manager.update_milestone(hierarchy["milestone"], description="Go live")
        manager.update_task(hierarchy["tasks"][0], estimated_points=4, priority=TaskPriority.ENHANCE, tags=["ux"])
        assert manager.get_project(hierarchy["project"]).title == "Relaunch"
        assert manager.get_milestone(hierarchy["milestone"]).description == "Go live"
        task = manager.get_task(hierarchy["tasks"][0])
        assert task.estimated_points == 4.0
        assert task.priority == TaskPriority.ENHANCE
        assert task.tags == ["ux"]
        assert manager.statistics().total_points == 12.0
        with pytest.raises(ValidationError):
            manager.update_task(hierarchy["tasks"][0])

    def test_move_task_cascades_both_milestones(self, manager, hierarchy):
        """Test re-parenting a task recomputes old and new parents."""
        other = manager.create_milestone(hierarchy["project"], "Later")
        task_id = hierarchy["tasks"][0]
        manager.start_task(task_id)
        assert manager.get_milestone(hierarchy["milestone"]).status == Status.IN_PROGRESS

        manager.move_task(task_id, other)
        assert manager.get_milestone(hierarchy["milestone"]).status == Status.NOT_STARTED
        assert manager.get_milestone(other).status == Status.IN_PROGRESS
        assert manager.get_task(task_id).milestone_id == other
        with pytest.raises(ValidationError):
            manager.move_task(task_id, other)

    def test_move_milestone(self, manager, hierarchy):
        """Test re-parenting a milestone."""
        target = manager.create_project("Docs")
        manager.move_milestone(hierarchy["milestone"], target)
        assert manager.get_project(target).milestone_ids == [hierarchy["milestone"]]
        assert manager.get_project(hierarchy["project"]).milestone_ids == []

    def test_delete_project_removes_everything(self, manager, hierarchy):
        """Test the project tombstone."""
        manager.delete_project(hierarchy["project"])
        state = manager.state()
        assert state.projects == {} and state.milestones == {} and state.tasks == {}
        with pytest.raises(NotFoundError):
            manager.get_task(hierarchy["tasks"][0])
        assert len(manager.history(kind="project_created")) == 1

    def test_delete_task(self, manager, hierarchy):
        """Test the task tombstone."""
        manager.delete_task(hierarchy["tasks"][2])
        assert manager.statistics().total_tasks == 2
        with pytest.raises(NotFoundError):
            manager.delete_task(hierarchy["tasks"][2])


class TestDependencies:
    """Test dependency commands."""

    def test_task_cycle_rejected_and_log_unchanged(self, manager, hierarchy):
        """Test that a cycle is refused before anything is appended."""
        a, b, c = hierarchy["tasks"]
        manager.add_task_dependency(b, a)
        manager.add_task_dependency(c, b)
        before = len(manager.history())
        with pytest.raises(CycleError) as excinfo:
            manager.add_task_dependency(a, c)
        assert excinfo.value.path[0] == excinfo.value.path[-1]
        assert len(manager.history()) == before
        assert manager.get_task(a).depends_on == []

    def test_self_dependency_rejected(self, manager, hierarchy):
        """Test that a task cannot wait for itself."""
        with pytest.raises(CycleError):
            manager.add_task_dependency(hierarchy["tasks"][0], hierarchy["tasks"][0])

    def test_add_and_remove_task_dependency(self, manager, hierarchy):
        """Test the dependency round trip."""
        a, b, _ = hierarchy["tasks"]
        manager.add_task_dependency(b, a)
        assert manager.get_task(b).depends_on == [a]
        with pytest.raises(ValidationError):
            manager.add_task_dependency(b, a)
        manager.remove_task_dependency(b, a)
        assert manager.get_task(b).depends_on == []
        with pytest.raises(ValidationError):
            manager.remove_task_dependency(b, a)

    def test_milestone_dependencies(self, manager, hierarchy):
        """Test milestone edges and their cycle check."""
        second = manager.create_milestone(hierarchy["project"], "Second")
        manager.add_milestone_dependency(second, hierarchy["milestone"])
        with pytest.raises(CycleError):
            manager.add_milestone_dependency(hierarchy["milestone"], second)
        manager.remove_milestone_dependency(second, hierarchy["milestone"])
        assert manager.get_milestone(second).depends_on == []


class TestStatusCommands:
    """Test task status transitions and their cascade."""

    def test_worked_scenario(self, manager, hierarchy):
        """Test completing tasks of 2, 3 and 5 points."""
        for task_id in hierarchy["tasks"]:
            manager.start_task(task_id)
            manager.complete_task(task_id)
        stats = manager.statistics()
        assert stats.total_points == 10.0
        assert stats.earned_points == 10.0
        assert stats.completed_tasks == 3
        assert manager.get_milestone(hierarchy["milestone"]).status == Status.COMPLETED
        assert manager.get_milestone(hierarchy["milestone"]).completed_date is not None
        assert manager.get_project(hierarchy["project"]).status == Status.COMPLETED

    def test_average_points_per_hour(self, manager, hierarchy, clock):
        """Test the pace computed from start and end times."""
        task_id = hierarchy["tasks"][1]
        manager.start_task(task_id)
        clock.advance(minutes=59)
        manager.complete_task(task_id)
        assert manager.statistics().average_points_per_hour == pytest.approx(3.0)

    def test_derived_events_are_logged(self, manager, hierarchy):
        """Test that cascades are recorded as status-changed events."""
        task_id = hierarchy["tasks"][0]
        manager.start_task(task_id)
        milestone_events = manager.history(kind="milestone_status_changed")
        project_events = manager.history(kind="project_status_changed")
        assert len(milestone_events) == 1
        assert milestone_events[0].payload.new_status == Status.IN_PROGRESS
        assert len(project_events) == 1
        started = manager.history(kind="task_started")[0]
        assert milestone_events[0].timestamp == started.timestamp

    def test_block_and_unblock(self, manager, hierarchy):
        """Test blocking with a reason."""
        task_id = hierarchy["tasks"][0]
        manager.start_task(task_id)
        with pytest.raises(ValidationError):
            manager.block_task(task_id, "")
        manager.block_task(task_id, "waiting for review")
        assert manager.get_task(task_id).blocked_reason == "waiting for review"
        assert manager.get_milestone(hierarchy["milestone"]).status == Status.BLOCKED
        with pytest.raises(ValidationError):
            manager.start_task(task_id)
        manager.unblock_task(task_id)
        assert manager.get_task(task_id).status == Status.IN_PROGRESS
        with pytest.raises(ValidationError):
            manager.unblock_task(task_id)

    def test_illegal_transitions(self, manager, hierarchy):
        """Test that the transition table is enforced."""
        task_id = hierarchy["tasks"][0]
        with pytest.raises(ValidationError):
            manager.complete_task(task_id)
        with pytest.raises(ValidationError):
            manager.block_task(task_id, "reason")
        manager.start_task(task_id)
        manager.complete_task(task_id, actual_points=1)
        with pytest.raises(ValidationError):
            manager.start_task(task_id)
        assert manager.get_task(task_id).actual_points == 1.0

    def test_set_task_status(self, manager, hierarchy):
        """Test the generic transition command."""
        task_id = hierarchy["tasks"][0]
        manager.set_task_status(task_id, Status.IN_PROGRESS)
        with pytest.raises(ValidationError):
            manager.set_task_status(task_id, Status.BLOCKED)
        manager.set_task_status(task_id, Status.BLOCKED, reason="offline")
        task = manager.get_task(task_id)
        assert task.status == Status.BLOCKED
        assert task.blocked_reason == "offline"
        assert len(manager.history(kind="task_status_changed")) == 2

    def test_log_time(self, manager, hierarchy):
        """Test reporting timer sessions."""
        task_id = hierarchy["tasks"][0]
        manager.log_time(task_id, 25, "pomodoro")
        manager.log_time(task_id, 25)
        assert manager.get_task(task_id).logged_minutes == 50.0
        with pytest.raises(ValidationError):
            manager.log_time(task_id, 0)


class TestPersistenceFailures:
    """Test behaviour when the disk misbehaves."""

    def test_failed_append_leaves_state_unchanged(self, manager, hierarchy):
        """Test that a PersistenceError aborts the command cleanly."""
        task_id = hierarchy["tasks"][0]
        before = manager.state().to_json()
        events_before = len(manager.history())
        with patch("panopticon.data.io.os.fsync", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                manager.start_task(task_id)
        assert manager.state().to_json() == before
        assert len(manager.history()) == events_before

    def test_periodic_snapshot(self, clock, data_dir):
        """Test that snapshots are written every snapshotInterval events."""
        config = Config({"progress": {"snapshotInterval": 3}, "storage": {"retryDelay": 0}})
        context = PanopticonContext(config=config, clock=clock)
        with ProgressManager(context, DataCore(context, data_dir)) as manager:
            manager.create_project("A")
            manager.create_project("B")
            assert not (data_dir / DataCore.SNAPSHOT_FILE).exists()
            manager.create_project("C")
            assert (data_dir / DataCore.SNAPSHOT_FILE).exists()

    def test_periodic_snapshot_failure_is_not_raised(self, clock, data_dir):
        """Test that a failing periodic snapshot does not fail the command."""
        config = Config({"progress": {"snapshotInterval": 1}, "storage": {"retryDelay": 0}})
        context = PanopticonContext(config=config, clock=clock)
        manager = ProgressManager(context, DataCore(context, data_dir))
        manager.open()
        with patch.object(manager.data.snapshots, "save", side_effect=PersistenceError("read-only")):
            project_id = manager.create_project("A")
            with pytest.raises(PersistenceError):
                manager.save_snapshot()
        assert manager.get_project(project_id).title == "A"


class TestNotifications:
    """Test event publication after commit."""

    def test_subscribers_receive_command_and_derived_events(self, manager, hierarchy):
        """Test that every applied event is published in order."""
        received = []
        manager.bus.subscribe(lambda event: received.append(event.type))
        manager.start_task(hierarchy["tasks"][0])
        assert received == ["task_started", "milestone_status_changed", "project_status_changed"]

    def test_failing_handler_does_not_break_command(self, manager, hierarchy):
        """Test handler isolation."""
        received = []

        def broken(event):
            raise RuntimeError("boom")

        manager.bus.subscribe(broken)
        manager.bus.subscribe(received.append, kinds=["task_started"])
        manager.start_task(hierarchy["tasks"][0])
        assert [e.type for e in received] == ["task_started"]
        assert manager.get_task(hierarchy["tasks"][0]).status == Status.IN_PROGRESS

    def test_no_notification_on_failure(self, manager, hierarchy):
        """Test that rejected commands publish nothing."""
        received = []
        manager.bus.subscribe(received.append)
        with pytest.raises(ValidationError):
            manager.complete_task(hierarchy["tasks"][0])
        assert received == []


class TestConcurrency:
    """Test commands issued from several threads at once."""

    def test_concurrent_commands_are_serialized(self, clock, data_dir):
        """Test that concurrent task creation keeps log, state and restore in agreement."""
        config = Config({"progress": {"snapshotInterval": 5}, "storage": {"retryDelay": 0}})
        context = PanopticonContext(config=config, clock=clock)
        count = 16
        with ProgressManager(context, DataCore(context, data_dir)) as manager:
            milestone_id = manager.create_milestone(manager.create_project("Website"), "Launch")
            barrier = threading.Barrier(count)
            created = []
            errors = []

            def worker(i):
                barrier.wait()
                try:
                    created.append(manager.create_task(milestone_id, f"Task {i}"))
                except Exception as e:
                    errors.append(e)

            threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            assert errors == []
            assert len(set(created)) == count
            assert sorted(manager.get_milestone(milestone_id).task_ids) == sorted(created)
            state = manager.state()
            assert state.event_count == len(manager.history()) == count + 2

        lines = (data_dir / DataCore.EVENTS_FILE).read_text().splitlines()
        assert len(lines) == count + 2
        assert [json.loads(line)["id"] for line in lines][-1] == state.last_event_id

        restored = DataCore(context, data_dir)
        assert restored.restore().to_json() == state.to_json()
        assert restored.projector.project(restored.events.all()).to_json() == state.to_json()
