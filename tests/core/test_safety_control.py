"""Tests for SafetyControlEngine."""
import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from convoy_control.core.context import OrchestrationContext
from convoy_control.core.safety_control import SafetyControlEngine
from convoy_control.models.safety import ApprovalCategory, ApprovalState
from convoy_control.services.exceptions import GitServiceError, InvalidArgumentError


@pytest.fixture
def git_factory():
    factory = MagicMock()
    git = factory.return_value
    git.get_commit_hash.side_effect = lambda ref: "1111111aaaa" if ref == "HEAD" else "0000000bbbb"
    git.get_changed_files.return_value = ["scenes/level1.tscn"]
    return factory


class TestBudgetGuard:
    """Test cases for the hourly budget ledger."""

    def test_crossing_the_limit_pauses(self, safety_engine):
        safety_engine.record_cost("6.00", "scene generation")
        assert safety_engine.check_budget("0.01")

        budget = safety_engine.record_cost("5.00", "asset generation")

        assert budget.spent_this_hour == Decimal("11.00")
        assert budget.is_paused
        assert budget.pause_reason.startswith("Hourly budget limit ($10.00) reached at ")
        assert not safety_engine.check_budget("0.01")
        assert not safety_engine.check_budget()

    def test_estimate_beyond_remaining_is_refused(self, safety_engine):
        safety_engine.record_cost("9.50", "big run")

        assert safety_engine.check_budget("0.50")
        assert not safety_engine.check_budget("0.51")

    def test_window_rollover_resets_and_unpauses(self, safety_engine, clock):
        safety_engine.record_cost("12.00", "runaway agent")
        assert safety_engine.get_budget_status().is_paused

        clock.advance(hours=1)

        assert safety_engine.check_budget("1.00")
        budget = safety_engine.get_budget_status()
        assert budget.spent_this_hour == Decimal("0")
        assert budget.total_spent == Decimal("12.00")
        assert not budget.is_paused
        assert budget.hour_window_start == clock()

    def test_old_costs_are_pruned(self, safety_engine, clock):
        safety_engine.record_cost("1.00", "morning")
        clock.advance(hours=25)

        budget = safety_engine.record_cost("2.00", "next day")

        assert [entry.description for entry in budget.recent_costs] == ["next day"]
        assert budget.total_spent == Decimal("3.00")

    @pytest.mark.parametrize("amount", ["0", "-1.00"])
    def test_non_positive_cost_rejected(self, safety_engine, amount):
        with pytest.raises(InvalidArgumentError):
            safety_engine.record_cost(amount, "refund")

    @pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity", None, float("nan")])
    def test_non_numeric_cost_rejected(self, safety_engine, amount):
        with pytest.raises(InvalidArgumentError):
            safety_engine.record_cost(amount, "garbage")

        assert safety_engine.get_budget_status().total_spent == Decimal("0")

    def test_non_numeric_estimate_rejected(self, safety_engine):
        with pytest.raises(InvalidArgumentError):
            safety_engine.check_budget("lots")

    def test_engines_on_one_context_share_the_ledger(self, context):
        first = SafetyControlEngine(context)
        second = SafetyControlEngine(context)

        first.record_cost("6.00", "scene generation")
        second.record_cost("5.00", "asset generation")

        for engine in (first, second):
            budget = engine.get_budget_status()
            assert budget.spent_this_hour == Decimal("11.00")
            assert budget.is_paused
        data = json.loads((context.settings.orchestration_dir / "budget.json").read_text())
        assert Decimal(str(data["spent_this_hour"])) == Decimal("11.00")

    def test_cost_attribution_is_recorded(self, safety_engine):
        budget = safety_engine.record_cost("0.25", "lint", task_id="task-001", agent_id="agent-a")

        entry = budget.recent_costs[-1]
        assert entry.task_id == "task-001"
        assert entry.agent_id == "agent-a"

    def test_ledger_survives_restart(self, safety_engine, settings, clock):
        safety_engine.record_cost("4.00", "first session")

        reopened = SafetyControlEngine(OrchestrationContext(settings, clock=clock))

        assert reopened.get_budget_status().spent_this_hour == Decimal("4.00")

    def test_returned_snapshot_is_a_copy(self, safety_engine):
        budget = safety_engine.record_cost("1.00", "x")
        budget.spent_this_hour = Decimal("999")

        assert safety_engine.get_budget_status().spent_this_hour == Decimal("1.00")


class TestApprovals:
    """Test cases for the human approval workflow."""

    def test_budget_approval_lifts_pause(self, safety_engine):
        safety_engine.record_cost("11.00", "overspend")
        request = safety_engine.request_human_approval("Budget exceeded for level art")
        assert request.category == ApprovalCategory.BUDGET
        assert request.status == ApprovalState.PENDING

        status = safety_engine.resolve_approval(request.request_id, approved=True, reviewer_notes="ok")

        assert status.is_approved
        assert status.reviewer_notes == "ok"
        assert not safety_engine.get_budget_status().is_paused
        assert safety_engine.check_budget("0.01") is False  # still over the hourly limit

    def test_rejected_budget_approval_keeps_pause(self, safety_engine):
        safety_engine.record_cost("11.00", "overspend")
        request = safety_engine.request_human_approval("budget exceeded")

        status = safety_engine.resolve_approval(request.request_id, approved=False)

        assert status.status == ApprovalState.REJECTED
        assert safety_engine.get_budget_status().is_paused

    def test_iteration_approval_resets_counter(self, safety_engine):
        for _ in range(3):
            safety_engine.increment_iteration("task-001")
        request = safety_engine.request_human_approval(
            "Iteration limit hit", category="iteration", task_id="task-001"
        )

        safety_engine.resolve_approval(request.request_id, approved=True)

        assert safety_engine.get_iteration_info("task-001").current_iteration == 0

    def test_task_id_taken_from_context(self, safety_engine):
        request = safety_engine.request_human_approval("Needs a look", context={"task_id": "task-007"})

        assert request.task_id == "task-007"
        assert request.category == ApprovalCategory.OTHER

    def test_invalid_requests(self, safety_engine):
        with pytest.raises(InvalidArgumentError):
            safety_engine.request_human_approval("  ")
        with pytest.raises(InvalidArgumentError):
            safety_engine.request_human_approval("why", category="vibes")

    def test_expiry_after_a_day(self, safety_engine, clock):
        request = safety_engine.request_human_approval("rollback the level")
        assert safety_engine.get_approval_status(request.request_id).time_remaining == timedelta(hours=24)

        clock.advance(hours=24, seconds=1)

        status = safety_engine.get_approval_status(request.request_id)
        assert status.status == ApprovalState.EXPIRED
        assert status.time_remaining is None
        assert safety_engine.list_pending_approvals() == []

    def test_expired_request_cannot_be_approved(self, safety_engine, clock):
        request = safety_engine.request_human_approval("budget exceeded")
        clock.advance(hours=25)

        status = safety_engine.resolve_approval(request.request_id, approved=True)

        assert status.status == ApprovalState.EXPIRED

    def test_resolved_request_is_left_unchanged(self, safety_engine):
        request = safety_engine.request_human_approval("other thing")
        safety_engine.resolve_approval(request.request_id, approved=False, reviewer_notes="no")

        status = safety_engine.resolve_approval(request.request_id, approved=True, reviewer_notes="yes")

        assert status.status == ApprovalState.REJECTED
        assert status.reviewer_notes == "no"

    def test_unknown_request(self, safety_engine):
        assert safety_engine.get_approval_status("approval-x").status == ApprovalState.NOT_FOUND
        assert safety_engine.resolve_approval("approval-x", approved=True).status == ApprovalState.NOT_FOUND

    def test_pending_sorted_by_priority(self, safety_engine, clock):
        low = safety_engine.request_human_approval("low", priority=0)
        clock.advance(seconds=1)
        high = safety_engine.request_human_approval("high", priority=3)

        pending = safety_engine.list_pending_approvals()

        assert [request.request_id for request in pending] == [high.request_id, low.request_id]

    def test_requests_persist_as_a_list(self, safety_engine, context, settings, clock):
        first = safety_engine.request_human_approval("one")
        second = safety_engine.request_human_approval("two")

        data = json.loads((context.settings.reviews_dir / "pending-approval.json").read_text())
        assert [entry["request_id"] for entry in data] == [first.request_id, second.request_id]

        reopened = SafetyControlEngine(OrchestrationContext(settings, clock=clock))
        assert len(reopened.list_pending_approvals()) == 2

    def test_engines_on_one_context_share_approvals(self, context):
        first = SafetyControlEngine(context)
        second = SafetyControlEngine(context)
        first.record_cost("11.00", "overspend")

        request = first.request_human_approval("Budget exceeded")
        second.resolve_approval(request.request_id, approved=True)

        assert first.get_approval_status(request.request_id).status == ApprovalState.APPROVED
        assert not first.get_budget_status().is_paused

    def test_legacy_single_object_file(self, context, settings, clock):
        legacy = {
            "request_id": "approval-legacy",
            "reason": "Budget exceeded",
            "status": "pending",
            "created_at": clock().isoformat(),
            "category": "budget",
        }
        (context.settings.reviews_dir / "pending-approval.json").write_text(json.dumps(legacy))

        engine = SafetyControlEngine(OrchestrationContext(settings, clock=clock))

        assert engine.get_approval_status("approval-legacy").status == ApprovalState.PENDING


class TestIterationGuard:
    def test_limit_check(self, safety_engine, context):
        context.iterations.set_ceiling("task-001", 2)

        safety_engine.increment_iteration("task-001")
        assert safety_engine.check_iteration_limit("task-001")
        info = safety_engine.increment_iteration("task-001")

        assert info.limit_reached
        assert info.remaining_iterations == 0
        assert not safety_engine.check_iteration_limit("task-001")

    def test_reset(self, safety_engine):
        assert not safety_engine.reset_iterations("task-404")
        safety_engine.increment_iteration("task-001")

        assert safety_engine.reset_iterations("task-001")
        assert safety_engine.get_iteration_info("task-001").current_iteration == 0

    def test_shared_with_task_engine(self, safety_engine, task_engine, make_task, run_task):
        task = make_task("flaky")
        run_task(task.id)
        task_engine.fail_task(task.id, "crash")

        assert safety_engine.get_iteration_info(task.id).current_iteration == 1


class TestConcurrencyGuard:
    """Test cases for active agent tracking."""

    def test_capacity(self, safety_engine):
        for index in range(5):
            safety_engine.register_agent(f"agent-{index}", "script_polecat")

        assert safety_engine.get_active_agent_count() == 5
        assert not safety_engine.check_parallel_agents()

        assert safety_engine.unregister_agent("agent-0")
        assert not safety_engine.unregister_agent("agent-0")
        assert safety_engine.check_parallel_agents()

    def test_register_requires_id(self, safety_engine):
        with pytest.raises(InvalidArgumentError):
            safety_engine.register_agent("")

    def test_list_sorted_by_start(self, safety_engine, clock):
        safety_engine.register_agent("late-starter")
        clock.advance(minutes=5)
        safety_engine.register_agent("early-bird")

        agents = safety_engine.list_active_agents()

        assert [agent.agent_id for agent in agents] == ["late-starter", "early-bird"]

    def test_prune_stale(self, safety_engine, clock):
        safety_engine.register_agent("stuck")
        clock.advance(hours=2)
        safety_engine.register_agent("fresh")

        assert safety_engine.prune_stale_agents() == []
        assert safety_engine.prune_stale_agents(timedelta(hours=1)) == ["stuck"]
        assert [agent.agent_id for agent in safety_engine.list_active_agents()] == ["fresh"]

    def test_configured_ttl_expires_registrations(self, settings, clock):
        settings.agent_ttl = timedelta(minutes=30)
        with OrchestrationContext(settings, clock=clock) as context:
            engine = SafetyControlEngine(context)
            engine.register_agent("worker")
            clock.advance(minutes=31)

            assert engine.get_active_agent_count() == 0


class TestRollback:
    """Test cases for version-control rollback."""

    def test_successful_rollback_is_logged(self, context, git_factory):
        engine = SafetyControlEngine(context, git_service_factory=git_factory)

        result = engine.trigger_rollback("broken build")

        assert result.success
        assert result.rolled_back_from_commit == "1111111aaaa"
        assert result.rolled_back_to_commit == "0000000bbbb"
        assert result.commits_rolled_back == 1
        assert result.affected_files == ["scenes/level1.tscn"]
        git_factory.assert_called_once_with(context.settings.project_root)
        git_factory.return_value.reset_hard.assert_called_once_with("HEAD~1")
        assert [entry.reason for entry in engine.get_rollback_log()] == ["broken build"]

    def test_git_failure_is_reported(self, context, git_factory):
        git_factory.return_value.reset_hard.side_effect = GitServiceError("Git command failed: locked")
        engine = SafetyControlEngine(context, git_service_factory=git_factory)

        result = engine.trigger_rollback("broken build")

        assert not result.success
        assert "locked" in result.error_message
        assert engine.get_rollback_log() == []

    def test_not_a_repository(self, context):
        factory = MagicMock(side_effect=GitServiceError("/tmp is not a git repository"))
        engine = SafetyControlEngine(context, git_service_factory=factory)

        result = engine.trigger_rollback("oops")

        assert not result.success
        assert "not a git repository" in result.error_message

    def test_log_is_capped(self, context, git_factory):
        context.settings.rollback_log_limit = 2
        engine = SafetyControlEngine(context, git_service_factory=git_factory)

        for reason in ("first", "second", "third"):
            engine.trigger_rollback(reason)

        assert [entry.reason for entry in engine.get_rollback_log()] == ["second", "third"]


class TestCheckLimits:
    def test_all_clear_by_default(self, safety_engine):
        report = safety_engine.check_limits()

        assert report.all_clear
        assert report.iteration is None
        assert report.remaining_budget == Decimal("10.00")
        assert report.max_parallel_agents == 5
        assert report.pending_approvals == 0

    def test_reports_each_guard(self, safety_engine, context):
        context.iterations.set_ceiling("task-001", 1)
        safety_engine.increment_iteration("task-001")
        safety_engine.record_cost("10.00", "all of it")
        safety_engine.request_human_approval("budget exceeded")

        report = safety_engine.check_limits(task_id="task-001")

        assert not report.all_clear
        assert not report.iteration_ok
        assert not report.budget_ok
        assert report.budget_paused
        assert report.agents_ok
        assert report.pending_approvals == 1
