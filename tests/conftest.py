"""Pytest configuration and fixtures for the progress engine."""

import logging
import pytest
from datetime import datetime, timedelta, timezone

from panopticon.config import Config
from panopticon.context import PanopticonContext
from panopticon.data import DataCore
from panopticon.events import EventFactory
from panopticon.manager import ProgressManager
from panopticon.projector import StateProjector


class FakeClock:
    """Deterministic clock: every call returns a time one minute later."""

    def __init__(self, start=None, step=timedelta(minutes=1)):
        self.current = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        now = self.current
        self.current = self.current + self.step
        return now

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Defaults with retries that do not sleep."""
    return Config({"storage": {"retryDelay": 0}})


@pytest.fixture
def context(config, clock):
    return PanopticonContext(config=config, logger=logging.getLogger("panopticon.test"), clock=clock)


@pytest.fixture
def factory(context):
    return EventFactory(context)


@pytest.fixture
def projector(context):
    return StateProjector(context)


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def manager(context, data_dir):
    """An opened ProgressManager over an empty data directory."""
    with ProgressManager(context, DataCore(context, data_dir)) as progress:
        yield progress


@pytest.fixture
def hierarchy(manager):
    """One project with one milestone holding three tasks.

    Returns:
        Dict of ids: project, milestone, tasks (list of three).
    """
    project_id = manager.create_project("Website", "Public site relaunch")
    milestone_id = manager.create_milestone(project_id, "Launch")
    tasks = [
        manager.create_task(milestone_id, "Design", estimated_points=2),
        manager.create_task(milestone_id, "Build", estimated_points=3),
        manager.create_task(milestone_id, "Ship", estimated_points=5),
    ]
    return {"project": project_id, "milestone": milestone_id, "tasks": tasks}
