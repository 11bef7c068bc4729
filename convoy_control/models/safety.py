"""Safety control data models."""
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ApprovalCategory(str, Enum):
    """What kind of limit an approval request unblocks."""
    BUDGET = "budget"
    ITERATION = "iteration"
    ROLLBACK = "rollback"
    OTHER = "other"

    @classmethod
    def infer(cls, reason: str) -> "ApprovalCategory":
        """Guess a category from free-form reason text."""
        text = (reason or "").lower()
        for category in (cls.BUDGET, cls.ITERATION, cls.ROLLBACK):
            if category.value in text:
                return category
        return cls.OTHER


class ApprovalState(str, Enum):
    """Approval request lifecycle."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


class CostEntry(BaseModel):
    """A single recorded spend."""
    amount: Decimal
    description: str
    timestamp: datetime
    task_id: Optional[str] = None
    agent_id: Optional[str] = None


class BudgetInfo(BaseModel):
    """Rolling hourly spend ledger persisted to orchestration/budget.json."""
    hourly_limit: Decimal = Decimal("10.00")
    spent_this_hour: Decimal = Decimal("0")
    hour_window_start: datetime
    total_spent: Decimal = Decimal("0")
    recent_costs: List[CostEntry] = Field(default_factory=list)
    is_paused: bool = False
    pause_reason: Optional[str] = None

    @property
    def remaining_budget(self) -> Decimal:
        return self.hourly_limit - self.spent_this_hour

    @property
    def hour_window_end(self) -> datetime:
        return self.hour_window_start + timedelta(hours=1)


class IterationInfo(BaseModel):
    """Execution-attempt counter for one task."""
    task_id: str
    current_iteration: int = 0
    max_iterations: int = 50
    first_iteration: datetime
    last_iteration: datetime

    @property
    def remaining_iterations(self) -> int:
        return self.max_iterations - self.current_iteration

    @property
    def limit_reached(self) -> bool:
        return self.current_iteration >= self.max_iterations


class ActiveAgent(BaseModel):
    """A currently running agent, used only to bound concurrency."""
    agent_id: str
    agent_type: Optional[str] = None
    started_at: datetime
    task_id: Optional[str] = None


class SafetyState(BaseModel):
    """Snapshot persisted to orchestration/safety-state.json."""
    iterations: Dict[str, IterationInfo] = Field(default_factory=dict)
    active_agents: Dict[str, ActiveAgent] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None


class ApprovalRequest(BaseModel):
    """Durable record gating a paused operation."""
    request_id: str
    reason: str
    context: Dict[str, Any] = Field(default_factory=dict)
    status: ApprovalState = ApprovalState.PENDING
    created_at: datetime
    resolved_at: Optional[datetime] = None
    reviewer_notes: Optional[str] = None
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    priority: int = 1
    category: ApprovalCategory = ApprovalCategory.OTHER


class ApprovalStatus(BaseModel):
    """Point-in-time view of an approval request."""
    request_id: str
    status: ApprovalState
    reviewer_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    time_remaining: Optional[timedelta] = None

    @property
    def is_resolved(self) -> bool:
        return self.status in (ApprovalState.APPROVED, ApprovalState.REJECTED, ApprovalState.EXPIRED)

    @property
    def is_approved(self) -> bool:
        return self.status == ApprovalState.APPROVED


class RollbackResult(BaseModel):
    """Outcome of a version-control rollback."""
    success: bool = False
    rolled_back_to_commit: Optional[str] = None
    rolled_back_from_commit: Optional[str] = None
    commits_rolled_back: int = 0
    reason: str
    timestamp: datetime
    error_message: Optional[str] = None
    affected_files: List[str] = Field(default_factory=list)


class LimitsReport(BaseModel):
    """Combined snapshot of every guard."""
    iteration_ok: bool = True
    iteration: Optional[IterationInfo] = None
    budget_ok: bool
    budget_paused: bool
    remaining_budget: Decimal
    agents_ok: bool
    active_agents: int
    max_parallel_agents: int
    pending_approvals: int

    @property
    def all_clear(self) -> bool:
        return self.iteration_ok and self.budget_ok and self.agents_ok
