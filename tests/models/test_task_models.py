"""Tests for task and convoy models."""
from datetime import datetime, timezone

import pytest

from convoy_control.models.convoy import ConvoyInfo, ConvoyProgress, ConvoyStatus, ConvoyStatusFilter
from convoy_control.models.result import OperationResult
from convoy_control.models.task import AgentType, TaskInfo, TaskStatus, TaskStatusFilter

CREATED = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _task(status=TaskStatus.PENDING, **kwargs):
    return TaskInfo(id="task-001", name="t", status=status, created_at=CREATED, **kwargs)


class TestAgentType:
    """Test suite for agent type parsing."""

    @pytest.mark.parametrize("raw,expected", [
        ("script_polecat", AgentType.SCRIPT_POLECAT),
        ("ScriptPolecat", AgentType.SCRIPT_POLECAT),
        ("scene-polecat", AgentType.SCENE_POLECAT),
        ("asset", AgentType.ASSET_POLECAT),
        ("Eyes", AgentType.EYES_POLECAT),
        ("evaluator", AgentType.EVALUATOR),
        (AgentType.MAYOR, AgentType.MAYOR),
    ])
    def test_parse(self, raw, expected):
        assert AgentType.parse(raw) == expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown agent type"):
            AgentType.parse("janitor")


class TestTaskStatusFilter:
    """Test suite for TaskStatusFilter.matches."""

    def test_default_hides_terminal(self):
        task_filter = TaskStatusFilter()

        assert task_filter.matches(_task())
        assert not task_filter.matches(_task(TaskStatus.COMPLETED))
        assert not task_filter.matches(_task(TaskStatus.CANCELLED))
        assert task_filter.matches(_task(TaskStatus.FAILED))

    def test_explicit_status_shows_terminal(self):
        assert TaskStatusFilter(status=TaskStatus.COMPLETED).matches(_task(TaskStatus.COMPLETED))

    def test_field_filters(self):
        task = _task(assigned_agent=AgentType.SCENE_POLECAT, convoy_id="convoy-001", iteration="Iteration1")

        assert TaskStatusFilter(agent_type=AgentType.SCENE_POLECAT).matches(task)
        assert not TaskStatusFilter(agent_type=AgentType.ASSET_POLECAT).matches(task)
        assert not TaskStatusFilter(convoy_id="convoy-002").matches(task)
        assert not TaskStatusFilter(iteration="Iteration2").matches(task)


class TestConvoyProgress:
    """Test suite for derived convoy progress."""

    def test_counts_and_percent(self):
        tasks = [_task(TaskStatus.COMPLETED), _task(TaskStatus.IN_PROGRESS), _task(TaskStatus.PENDING)]

        progress = ConvoyProgress.from_tasks(3, tasks)

        assert progress.completed_tasks == 1
        assert progress.in_progress_tasks == 1
        assert progress.pending_tasks == 1
        assert progress.percent_complete == 33
        assert progress.has_started
        assert not progress.all_tasks_complete

    def test_empty_convoy(self):
        progress = ConvoyProgress.from_tasks(0, [])

        assert progress.percent_complete == 0
        assert not progress.all_tasks_complete
        assert not progress.has_started

    def test_missing_tasks_keep_total(self):
        progress = ConvoyProgress.from_tasks(2, [_task(TaskStatus.COMPLETED)])

        assert progress.total_tasks == 2
        assert not progress.all_tasks_complete

    def test_failures(self):
        assert ConvoyProgress.from_tasks(1, [_task(TaskStatus.FAILED)]).has_failures


class TestConvoyStatusFilter:
    def test_default_hides_terminal(self):
        convoy = ConvoyInfo(id="convoy-001", name="c", status=ConvoyStatus.CANCELLED, created_at=CREATED)

        assert not ConvoyStatusFilter().matches(convoy)
        assert ConvoyStatusFilter(include_completed=True).matches(convoy)


class TestOperationResult:
    def test_factories(self):
        ok = OperationResult.ok("task-001", TaskStatus.ASSIGNED, "Assigned")
        rejected = OperationResult.rejected("task-001", TaskStatus.COMPLETED, "Invalid transition")
        failed = OperationResult.failed("task-001", "disk full")

        assert ok and ok.status == "assigned"
        assert not rejected and rejected.invalid_transition
        assert not failed and not failed.invalid_transition
        assert failed.to_dict() == {
            'success': False,
            'message': "disk full",
            'entity_id': "task-001",
            'status': None,
            'invalid_transition': False,
        }
