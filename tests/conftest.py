from datetime import datetime, timedelta, timezone

import pytest
from click.testing import CliRunner

from convoy_control.cli.main import cli
from convoy_control.core.config import OrchestrationSettings
from convoy_control.core.context import OrchestrationContext
from convoy_control.core.convoy_engine import ConvoyEngine
from convoy_control.core.safety_control import SafetyControlEngine
from convoy_control.core.task_engine import TaskEngine
from convoy_control.models.task import TaskConfig


class FakeClock:
    """Controllable UTC clock for window and expiry tests."""

    def __init__(self, start=None):
        self.current = start or datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def cli_runner():
    """Provides a Click CLI runner for testing commands."""
    return CliRunner()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary project directory."""
    return OrchestrationSettings(project_root=tmp_path, hooks_path="./hooks")


@pytest.fixture
def context(settings, clock):
    with OrchestrationContext(settings, clock=clock) as ctx:
        yield ctx


@pytest.fixture
def task_engine(context):
    return TaskEngine(context)


@pytest.fixture
def convoy_engine(context, task_engine):
    return ConvoyEngine(context, task_engine)


@pytest.fixture
def safety_engine(context):
    return SafetyControlEngine(context)


@pytest.fixture
def make_task(task_engine):
    """Factory creating tasks with sensible defaults."""
    def _make(name="Task", **kwargs):
        return task_engine.create_task(TaskConfig(name=name, **kwargs))
    return _make


@pytest.fixture
def run_task(task_engine):
    """Drive a task from pending to in progress."""
    def _run(task_id, agent="script_polecat"):
        assert task_engine.assign_task(task_id, agent).success
        assert task_engine.start_task(task_id).success
    return _run


@pytest.fixture
def invoke(cli_runner, tmp_path):
    """Run the CLI against a hooks directory inside tmp_path."""
    def _invoke(*args, **kwargs):
        return cli_runner.invoke(cli, ['--hooks-path', str(tmp_path / 'hooks'), *args], **kwargs)
    return _invoke
