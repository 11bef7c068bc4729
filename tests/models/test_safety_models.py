"""Tests for safety models."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from convoy_control.models.safety import (
    ApprovalCategory,
    ApprovalState,
    ApprovalStatus,
    BudgetInfo,
    IterationInfo,
    LimitsReport,
)

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestApprovalCategory:
    @pytest.mark.parametrize("reason,expected", [
        ("Budget exceeded", ApprovalCategory.BUDGET),
        ("Hit the ITERATION limit", ApprovalCategory.ITERATION),
        ("Please rollback the last commit", ApprovalCategory.ROLLBACK),
        ("Something else entirely", ApprovalCategory.OTHER),
        ("", ApprovalCategory.OTHER),
    ])
    def test_infer(self, reason, expected):
        assert ApprovalCategory.infer(reason) == expected


class TestBudgetInfo:
    """Test suite for BudgetInfo."""

    def test_remaining_and_window_end(self):
        budget = BudgetInfo(spent_this_hour=Decimal("2.50"), hour_window_start=NOW)

        assert budget.remaining_budget == Decimal("7.50")
        assert budget.hour_window_end == NOW + timedelta(hours=1)

    def test_decimal_round_trip_through_json(self):
        budget = BudgetInfo(spent_this_hour=Decimal("0.10"), total_spent=Decimal("0.30"), hour_window_start=NOW)

        restored = BudgetInfo.model_validate_json(budget.model_dump_json())

        assert restored.total_spent == Decimal("0.30")


class TestIterationInfo:
    def test_limit(self):
        info = IterationInfo(task_id="task-001", current_iteration=3, max_iterations=3,
                             first_iteration=NOW, last_iteration=NOW)

        assert info.limit_reached
        assert info.remaining_iterations == 0


class TestApprovalStatus:
    @pytest.mark.parametrize("state,resolved", [
        (ApprovalState.PENDING, False),
        (ApprovalState.APPROVED, True),
        (ApprovalState.REJECTED, True),
        (ApprovalState.EXPIRED, True),
        (ApprovalState.NOT_FOUND, False),
    ])
    def test_is_resolved(self, state, resolved):
        assert ApprovalStatus(request_id="approval-1", status=state).is_resolved == resolved


class TestLimitsReport:
    def test_all_clear_needs_every_guard(self):
        report = LimitsReport(
            budget_ok=True,
            budget_paused=False,
            remaining_budget=Decimal("1"),
            agents_ok=False,
            active_agents=5,
            max_parallel_agents=5,
            pending_approvals=0,
        )

        assert not report.all_clear
