"""Tests for the task command group."""

import json

from convoy_control.cli.commands.task import task


class TestTaskCommand:
    """Test task command functionality."""

    def test_task_help(self, cli_runner):
        """Test task command help."""
        result = cli_runner.invoke(task, ['--help'])

        assert result.exit_code == 0
        assert "Create and progress tasks" in result.output
        for name in ["create", "show", "list", "assign", "start", "complete", "fail", "retry", "next"]:
            assert name in result.output

    def test_create(self, invoke, tmp_path):
        result = invoke('task', 'create', 'Build level', '-d', 'First playable level',
                        '--iteration', 'Iteration1', '--priority', '2', '--criterion', 'Loads without errors')

        assert result.exit_code == 0
        assert "✅ Created task task-001 (pending)" in result.output
        data = json.loads((tmp_path / 'hooks' / 'tasks' / 'task-001.json').read_text())
        assert data['priority'] == 2
        assert data['success_criteria'] == ['Loads without errors']

    def test_create_blocked(self, invoke):
        invoke('task', 'create', 'Base')

        result = invoke('task', 'create', 'Dependent', '--depends-on', 'task-001')

        assert result.exit_code == 0
        assert "Created task task-002 (blocked)" in result.output
        assert "Waiting on: task-001" in result.output

    def test_create_empty_name(self, invoke):
        result = invoke('task', 'create', '')

        assert result.exit_code == 1
        assert "Error: Task name is required" in result.output

    def test_create_into_convoy(self, invoke):
        invoke('convoy', 'create', 'Level 1')

        invoke('task', 'create', 'Lighting', '--convoy', 'convoy-001')

        result = invoke('convoy', 'show', 'convoy-001')
        assert "0/1 complete" in result.output

    def test_create_into_unknown_convoy_leaves_no_task(self, invoke):
        result = invoke('task', 'create', 'Lighting', '--convoy', 'convoy-999')

        assert result.exit_code == 1
        assert "No convoy found with ID: convoy-999" in result.output
        assert "No tasks found" in invoke('task', 'list').output

    def test_list_empty(self, invoke):
        result = invoke('task', 'list')

        assert result.exit_code == 0
        assert "No tasks found" in result.output

    def test_list_and_filter(self, invoke):
        invoke('task', 'create', 'Player script')
        invoke('task', 'create', 'Tileset')
        invoke('task', 'assign', 'task-001', 'script')

        result = invoke('task', 'list')
        assert "Player script" in result.output
        assert "Tileset" in result.output
        assert "ITER" in result.output

        filtered = invoke('task', 'list', '--status', 'assigned')
        assert "Player script" in filtered.output
        assert "Tileset" not in filtered.output

    def test_full_lifecycle(self, invoke):
        invoke('task', 'create', 'Player script')

        assert invoke('task', 'assign', 'task-001', 'ScriptPolecat').exit_code == 0
        assert invoke('task', 'start', 'task-001').exit_code == 0
        result = invoke('task', 'complete', 'task-001', '--summary', 'Movement done', '--created', 'player.gd')

        assert result.exit_code == 0
        assert "✅ Movement done" in result.output

        shown = invoke('task', 'show', 'task-001', '--history')
        assert "Task Details: task-001" in shown.output
        assert "COMPLETED" in shown.output
        assert "in_progress -> completed" in shown.output

    def test_invalid_transition_exits_nonzero(self, invoke):
        invoke('task', 'create', 'Player script')

        result = invoke('task', 'complete', 'task-001')

        assert result.exit_code == 1
        assert "Rejected: Invalid transition for task-001: pending -> completed" in result.output

    def test_unknown_agent(self, invoke):
        invoke('task', 'create', 'Player script')

        result = invoke('task', 'assign', 'task-001', 'janitor')

        assert result.exit_code == 1
        assert "Unknown agent type" in result.output

    def test_unknown_task(self, invoke):
        result = invoke('task', 'start', 'task-404')

        assert result.exit_code == 1
        assert "Error: Task 'task-404' not found" in result.output

    def test_show_unknown(self, invoke):
        result = invoke('task', 'show', 'task-404')

        assert result.exit_code == 1
        assert "No task found with ID: task-404" in result.output

    def test_fail_and_retry(self, invoke):
        invoke('task', 'create', 'Flaky', '--max-iterations', '1')
        invoke('task', 'assign', 'task-001', 'scene')
        invoke('task', 'start', 'task-001')

        failed = invoke('task', 'fail', 'task-001', 'crashed')
        assert failed.exit_code == 0
        assert "Failed (iteration 1): crashed" in failed.output
        assert "Escalation required" in failed.output

        retried = invoke('task', 'retry', 'task-001')
        assert retried.exit_code == 0
        assert "Retrying (iteration 1)" in retried.output

    def test_cancel(self, invoke):
        invoke('task', 'create', 'Obsolete')

        result = invoke('task', 'cancel', 'task-001', '--reason', 'descoped')

        assert result.exit_code == 0
        assert "Cancelled: descoped" in result.output

    def test_next(self, invoke):
        assert "No ready tasks" in invoke('task', 'next').output

        invoke('task', 'create', 'Low', '--priority', '0')
        invoke('task', 'create', 'Urgent', '--priority', '3')

        result = invoke('task', 'next')
        assert "Urgent" in result.output
        assert "Low" not in result.output
