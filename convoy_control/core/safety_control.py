"""Safety guards: iteration ceilings, hourly budget, agent concurrency, approvals and rollback."""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from convoy_control.core.constants import BUDGET_WINDOW, COST_RETENTION, ROLLBACK_LOG_FILE_NAME
from convoy_control.core.context import OrchestrationContext
from convoy_control.core.record_store import read_json, write_json_atomic
from convoy_control.models.safety import (
    ActiveAgent,
    ApprovalCategory,
    ApprovalRequest,
    ApprovalState,
    ApprovalStatus,
    BudgetInfo,
    CostEntry,
    IterationInfo,
    LimitsReport,
    RollbackResult,
)
from convoy_control.services.exceptions import GitServiceError, InvalidArgumentError, PersistenceError
from convoy_control.services.git_service import GitService

logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, float, str]


def _to_decimal(value: Amount) -> Decimal:
    """Convert a money amount, rejecting anything that is not a finite number."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise InvalidArgumentError(f"Invalid amount: {value}") from e
    if not amount.is_finite():
        raise InvalidArgumentError(f"Invalid amount: {value}")
    return amount


class SafetyControlEngine:
    """Cross-cutting guard consulted before and after each unit of work.

    The guards are advisory: checks return booleans and nothing here rejects
    work on the caller's behalf. Approval resolution is the one place that
    reaches into the other guards, lifting a budget pause or resetting a
    task's iteration counter.
    """

    def __init__(self, context: OrchestrationContext,
                 git_service_factory: Callable[..., GitService] = GitService):
        """Initialize the engine on the context's shared ledgers.

        Args:
            context: Shared orchestration context
            git_service_factory: Builds the GitService used for rollbacks
        """
        self.context = context
        self.settings = context.settings
        self._git_service_factory = git_service_factory

        self._ledger = context.budget
        self._queue = context.approvals
        self._rollback_log_path = self.settings.orchestration_dir / ROLLBACK_LOG_FILE_NAME

    # Iteration guard

    def check_iteration_limit(self, task_id: str) -> bool:
        """True while the task is below its iteration ceiling."""
        return self.context.iterations.within_limit(task_id)

    def increment_iteration(self, task_id: str) -> IterationInfo:
        return self.context.iterations.increment(task_id)

    def get_iteration_info(self, task_id: str) -> IterationInfo:
        return self.context.iterations.get(task_id)

    def reset_iterations(self, task_id: str) -> bool:
        return self.context.iterations.reset(task_id)

    # Budget guard

    def _ensure_budget_window(self) -> None:
        """Roll the hourly window forward once it has elapsed.

        Must be called with the budget lock held.
        """
        now = self.context.now()
        if now < self._ledger.info.hour_window_start + BUDGET_WINDOW:
            return

        self._ledger.info.hour_window_start = now
        self._ledger.info.spent_this_hour = Decimal("0")
        if self._ledger.info.is_paused and "budget" in (self._ledger.info.pause_reason or "").lower():
            self._ledger.info.is_paused = False
            self._ledger.info.pause_reason = None
            logger.info("New hour window started. Budget reset.")
        self._ledger.save()

    def check_budget(self, cost_estimate: Amount = Decimal("0")) -> bool:
        """Check whether ``cost_estimate`` still fits in the current window.

        Returns:
            False while paused or when the estimate would exceed the hourly limit

        Raises:
            InvalidArgumentError: If the estimate is not a finite number
        """
        estimate = _to_decimal(cost_estimate)
        with self._ledger.lock:
            self._ensure_budget_window()
            if self._ledger.info.is_paused:
                return False
            return self._ledger.info.spent_this_hour + estimate <= self._ledger.info.hourly_limit

    def record_cost(self, amount: Amount, description: str,
                    task_id: Optional[str] = None, agent_id: Optional[str] = None) -> BudgetInfo:
        """Commit a spend to the ledger.

        Crossing the hourly limit pauses the ledger until the window rolls
        over or a budget approval is granted.

        Args:
            amount: Positive cost in dollars
            description: What the money was spent on
            task_id: Task the cost belongs to
            agent_id: Agent that incurred the cost

        Returns:
            Snapshot of the ledger after recording

        Raises:
            InvalidArgumentError: If the amount is not a positive finite number
        """
        value = _to_decimal(amount)
        if value <= 0:
            raise InvalidArgumentError(f"Cost amount must be positive, got {value}")

        with self._ledger.lock:
            self._ensure_budget_window()
            now = self.context.now()
            budget = self._ledger.info
            budget.spent_this_hour += value
            budget.total_spent += value
            budget.recent_costs.append(CostEntry(
                amount=value, description=description, timestamp=now, task_id=task_id, agent_id=agent_id
            ))
            cutoff = now - COST_RETENTION
            budget.recent_costs = [entry for entry in budget.recent_costs if entry.timestamp > cutoff]

            logger.info(
                f"Recorded cost: ${value:.4f} - {description}. "
                f"Spent this hour: ${budget.spent_this_hour:.4f}/${budget.hourly_limit:.2f}"
            )

            if budget.spent_this_hour >= budget.hourly_limit and not budget.is_paused:
                budget.is_paused = True
                budget.pause_reason = f"Hourly budget limit (${budget.hourly_limit:.2f}) reached at {now.isoformat()}"
                logger.warning(
                    f"Budget limit reached! Spent ${budget.spent_this_hour:.4f} of ${budget.hourly_limit:.2f} limit. "
                    "Operations paused until next hour window."
                )

            self._ledger.save()
            return budget.model_copy(deep=True)

    def get_budget_status(self) -> BudgetInfo:
        with self._ledger.lock:
            self._ensure_budget_window()
            return self._ledger.info.model_copy(deep=True)

    def _unpause_budget(self) -> None:
        with self._ledger.lock:
            if self._ledger.info.is_paused:
                self._ledger.info.is_paused = False
                self._ledger.info.pause_reason = None
                self._ledger.save()
                logger.info("Budget pause lifted by approval")

    # Concurrency guard

    def check_parallel_agents(self) -> bool:
        """True if another agent may start."""
        return self.context.agents.has_capacity()

    def register_agent(self, agent_id: str, agent_type: Optional[str] = None,
                       task_id: Optional[str] = None) -> ActiveAgent:
        if not agent_id:
            raise InvalidArgumentError("Agent id is required")
        return self.context.agents.register(agent_id, agent_type, task_id)

    def unregister_agent(self, agent_id: str) -> bool:
        return self.context.agents.unregister(agent_id)

    def get_active_agent_count(self) -> int:
        return self.context.agents.count()

    def list_active_agents(self) -> List[ActiveAgent]:
        return self.context.agents.list()

    def prune_stale_agents(self, max_age: Optional[timedelta] = None) -> List[str]:
        """Drop registrations older than ``max_age`` (defaults to the configured TTL).

        Returns:
            Ids of the removed agents; empty when no age is given or configured
        """
        max_age = max_age or self.settings.agent_ttl
        if max_age is None:
            return []
        return self.context.agents.prune_stale(max_age)

    # Rollback

    def trigger_rollback(self, reason: str) -> RollbackResult:
        """Reset the project working tree by one commit.

        Failures of the git invocation are reported in the result, not raised.
        """
        result = RollbackResult(reason=reason, timestamp=self.context.now())
        try:
            git = self._git_service_factory(self.settings.project_root)
            result.rolled_back_from_commit = git.get_commit_hash("HEAD")
            result.rolled_back_to_commit = git.get_commit_hash("HEAD~1")
            result.affected_files = git.get_changed_files("HEAD~1", "HEAD")
            git.reset_hard("HEAD~1")
            result.success = True
            result.commits_rolled_back = 1
            logger.info(
                f"Rollback successful. From: {result.rolled_back_from_commit[:7]} "
                f"To: {result.rolled_back_to_commit[:7]}. Reason: {reason}"
            )
        except GitServiceError as e:
            result.success = False
            result.error_message = str(e)
            logger.error(f"Rollback failed: {e}")

        if result.success:
            self._log_rollback(result)
        return result

    def get_rollback_log(self) -> List[RollbackResult]:
        with self.context.rollback_lock:
            return self._read_rollback_log()

    def _read_rollback_log(self) -> List[RollbackResult]:
        try:
            data = read_json(self._rollback_log_path) or []
            return [RollbackResult.model_validate(entry) for entry in data]
        except (PersistenceError, ValidationError, TypeError) as e:
            logger.warning(f"Rollback log unreadable, starting fresh: {e}")
            return []

    def _log_rollback(self, result: RollbackResult) -> None:
        with self.context.rollback_lock:
            log = self._read_rollback_log()
            log.append(result)
            log = log[-self.settings.rollback_log_limit:]
            try:
                write_json_atomic(self._rollback_log_path, [entry.model_dump(mode='json') for entry in log])
            except PersistenceError as e:
                logger.error(f"Failed to write rollback log: {e}")

    # Approval workflow

    def _expire_if_stale(self, request: ApprovalRequest) -> bool:
        now = self.context.now()
        if request.status == ApprovalState.PENDING and now > request.created_at + self.settings.approval_expiry:
            request.status = ApprovalState.EXPIRED
            request.resolved_at = now
            logger.info(f"Approval {request.request_id} expired")
            return True
        return False

    def _status_of(self, request: ApprovalRequest) -> ApprovalStatus:
        time_remaining = None
        if request.status == ApprovalState.PENDING:
            time_remaining = request.created_at + self.settings.approval_expiry - self.context.now()
        return ApprovalStatus(
            request_id=request.request_id,
            status=request.status,
            reviewer_notes=request.reviewer_notes,
            resolved_at=request.resolved_at,
            time_remaining=time_remaining,
        )

    def request_human_approval(self, reason: str, context: Optional[Dict[str, Any]] = None,
                               category: Optional[Union[ApprovalCategory, str]] = None,
                               task_id: Optional[str] = None, agent_id: Optional[str] = None,
                               priority: int = 1) -> ApprovalRequest:
        """Open a pending approval request.

        Args:
            reason: Why approval is needed
            context: Free-form details for the reviewer
            category: Explicit category; inferred from ``reason`` when omitted
            task_id: Task the request concerns (falls back to ``context["task_id"]``)
            agent_id: Agent that raised the request
            priority: Higher sorts first in the pending list

        Returns:
            The persisted request

        Raises:
            InvalidArgumentError: If the reason is empty or the category unknown
        """
        if not reason or not reason.strip():
            raise InvalidArgumentError("Approval reason is required")
        if category is None:
            resolved_category = ApprovalCategory.infer(reason)
        else:
            try:
                resolved_category = ApprovalCategory(category)
            except ValueError as e:
                raise InvalidArgumentError(f"Unknown approval category: {category}") from e

        context = dict(context or {})
        if task_id is None and context.get("task_id"):
            task_id = str(context["task_id"])

        now = self.context.now()
        request = ApprovalRequest(
            request_id=f"approval-{now:%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}",
            reason=reason,
            context=context,
            created_at=now,
            task_id=task_id,
            agent_id=agent_id,
            priority=priority,
            category=resolved_category,
        )

        with self._queue.lock:
            self._queue.requests[request.request_id] = request
            self._queue.save()

        logger.info(f"Created approval request: {request.request_id} ({resolved_category.value}) - {reason}")
        return request.model_copy(deep=True)

    def get_approval_status(self, request_id: str) -> ApprovalStatus:
        """Look up a request, expiring it first if its time is up.

        Unknown ids report ``not_found`` rather than raising.
        """
        with self._queue.lock:
            request = self._queue.requests.get(request_id)
            if request is None:
                return ApprovalStatus(request_id=request_id, status=ApprovalState.NOT_FOUND)
            if self._expire_if_stale(request):
                self._queue.save()
            return self._status_of(request)

    def list_pending_approvals(self) -> List[ApprovalRequest]:
        with self._queue.lock:
            expired = [request for request in self._queue.requests.values() if self._expire_if_stale(request)]
            if expired:
                self._queue.save()
            pending = [
                request.model_copy(deep=True) for request in self._queue.requests.values()
                if request.status == ApprovalState.PENDING
            ]
        return sorted(pending, key=lambda request: (-request.priority, request.created_at))

    def resolve_approval(self, request_id: str, approved: bool,
                         reviewer_notes: Optional[str] = None) -> ApprovalStatus:
        """Approve or reject a pending request.

        Approving a ``budget`` request lifts the budget pause; approving an
        ``iteration`` request resets the task's iteration counter. Requests
        that are no longer pending are left unchanged.

        Returns:
            The request's status after the call
        """
        with self._queue.lock:
            request = self._queue.requests.get(request_id)
            if request is None:
                logger.warning(f"Approval {request_id} not found")
                return ApprovalStatus(request_id=request_id, status=ApprovalState.NOT_FOUND)

            if self._expire_if_stale(request):
                self._queue.save()
            if request.status != ApprovalState.PENDING:
                logger.warning(f"Approval {request_id} is already {request.status.value}")
                return self._status_of(request)

            request.status = ApprovalState.APPROVED if approved else ApprovalState.REJECTED
            request.resolved_at = self.context.now()
            request.reviewer_notes = reviewer_notes
            self._queue.save()
            status = self._status_of(request)
            category = request.category
            task_id = request.task_id

        logger.info(f"Approval {request_id} {status.status.value}: {reviewer_notes or '(no notes)'}")

        if approved:
            if category == ApprovalCategory.BUDGET:
                self._unpause_budget()
            elif category == ApprovalCategory.ITERATION and task_id:
                self.reset_iterations(task_id)
        return status

    # Combined view

    def check_limits(self, task_id: Optional[str] = None, cost_estimate: Amount = Decimal("0")) -> LimitsReport:
        """Snapshot every guard at once."""
        iteration = self.get_iteration_info(task_id) if task_id else None
        budget = self.get_budget_status()
        active = self.get_active_agent_count()
        return LimitsReport(
            iteration_ok=iteration is None or not iteration.limit_reached,
            iteration=iteration,
            budget_ok=self.check_budget(cost_estimate),
            budget_paused=budget.is_paused,
            remaining_budget=budget.remaining_budget,
            agents_ok=active < self.settings.max_parallel_agents,
            active_agents=active,
            max_parallel_agents=self.settings.max_parallel_agents,
            pending_approvals=len(self.list_pending_approvals()),
        )
