"""Tests for OrchestrationSettings."""
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from convoy_control.core.config import OrchestrationSettings


class TestOrchestrationSettings:
    """Test cases for settings resolution."""

    def test_defaults(self):
        settings = OrchestrationSettings.from_env({})

        assert settings.hooks_path == "./hooks"
        assert settings.max_iterations_per_task == 50
        assert settings.hourly_budget == Decimal("10.00")
        assert settings.max_parallel_agents == 5
        assert settings.approval_expiry == timedelta(hours=24)
        assert settings.agent_ttl is None

    def test_environment_values(self, tmp_path):
        settings = OrchestrationSettings.from_env({
            "HOOKS_PATH": "state",
            "CONVOY_PROJECT_ROOT": str(tmp_path),
            "CONVOY_MAX_ITERATIONS": "10",
            "CONVOY_HOURLY_BUDGET": "2.50",
            "CONVOY_MAX_PARALLEL_AGENTS": "3",
            "CONVOY_AGENT_TTL_MINUTES": "45",
        })

        assert settings.hooks_root == tmp_path / "state"
        assert settings.max_iterations_per_task == 10
        assert settings.hourly_budget == Decimal("2.50")
        assert settings.max_parallel_agents == 3
        assert settings.agent_ttl == timedelta(minutes=45)

    def test_bad_numbers_fall_back(self):
        settings = OrchestrationSettings.from_env({
            "CONVOY_MAX_ITERATIONS": "lots",
            "CONVOY_HOURLY_BUDGET": "cheap",
        })

        assert settings.max_iterations_per_task == 50
        assert settings.hourly_budget == Decimal("10.00")

    def test_overrides_win(self):
        settings = OrchestrationSettings.from_env({"HOOKS_PATH": "from-env"}, hooks_path="from-flag", project_root=None)

        assert settings.hooks_path == "from-flag"

    def test_hooks_root_resolution(self, tmp_path):
        relative = OrchestrationSettings(project_root=tmp_path, hooks_path="./hooks")
        absolute = OrchestrationSettings(project_root=tmp_path, hooks_path=str(tmp_path / "elsewhere"))

        assert relative.hooks_root == tmp_path / "hooks"
        assert relative.tasks_dir == tmp_path / "hooks" / "tasks"
        assert relative.convoys_dir == tmp_path / "hooks" / "convoys"
        assert relative.orchestration_dir == tmp_path / "hooks" / "orchestration"
        assert relative.reviews_dir == tmp_path / "hooks" / "reviews"
        assert absolute.hooks_root == Path(tmp_path / "elsewhere")
