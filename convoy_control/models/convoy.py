"""Convoy data models."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .task import AgentType, TaskInfo, TaskStatus


class ConvoyStatus(str, Enum):
    """Convoy status enumeration."""
    PENDING = "pending"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_CONVOY_STATUSES = frozenset({ConvoyStatus.COMPLETED, ConvoyStatus.CANCELLED})


class ConvoyProgress(BaseModel):
    """Aggregate view of member task states.

    Always recomputed from the current task records; never persisted.
    """
    total_tasks: int = 0
    pending_tasks: int = 0
    assigned_tasks: int = 0
    in_progress_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    blocked_tasks: int = 0
    cancelled_tasks: int = 0

    @property
    def percent_complete(self) -> int:
        if self.total_tasks <= 0:
            return 0
        return (self.completed_tasks * 100) // self.total_tasks

    @property
    def all_tasks_complete(self) -> bool:
        return self.total_tasks > 0 and self.completed_tasks == self.total_tasks

    @property
    def has_failures(self) -> bool:
        return self.failed_tasks > 0

    @property
    def has_started(self) -> bool:
        """Whether any member task has begun work."""
        return (self.in_progress_tasks + self.completed_tasks + self.failed_tasks) > 0

    @classmethod
    def from_tasks(cls, total: int, tasks: List[TaskInfo]) -> "ConvoyProgress":
        """Count tasks per status.

        Args:
            total: Number of member ids, including ids that no longer resolve
            tasks: Member tasks that could be loaded
        """
        progress = cls(total_tasks=total)
        counters = {
            TaskStatus.PENDING: "pending_tasks",
            TaskStatus.ASSIGNED: "assigned_tasks",
            TaskStatus.IN_PROGRESS: "in_progress_tasks",
            TaskStatus.COMPLETED: "completed_tasks",
            TaskStatus.FAILED: "failed_tasks",
            TaskStatus.BLOCKED: "blocked_tasks",
            TaskStatus.CANCELLED: "cancelled_tasks",
        }
        for task in tasks:
            field_name = counters[task.status]
            setattr(progress, field_name, getattr(progress, field_name) + 1)
        return progress


class ConvoyConfig(BaseModel):
    """Configuration for creating a new convoy."""
    name: str
    description: Optional[str] = None
    iteration: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    task_ids: List[str] = Field(default_factory=list)
    priority: int = 1
    assigned_agent: Optional[AgentType] = None
    deliverables: List[str] = Field(default_factory=list)
    completion_criteria: List[str] = Field(default_factory=list)


class ConvoyInfo(BaseModel):
    """Convoy record persisted to convoys/<id>.json."""
    id: str  # convoy-NNN
    name: str
    description: Optional[str] = None
    iteration: Optional[str] = None
    status: ConvoyStatus = ConvoyStatus.PENDING
    dependencies: List[str] = Field(default_factory=list)
    task_ids: List[str] = Field(default_factory=list)
    priority: int = 1
    assigned_agent: Optional[AgentType] = None
    deliverables: List[str] = Field(default_factory=list)
    completion_criteria: List[str] = Field(default_factory=list)
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    progress: ConvoyProgress = Field(default_factory=ConvoyProgress, exclude=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CONVOY_STATUSES


class ConvoyStatusFilter(BaseModel):
    """Filter for querying convoys."""
    status: Optional[ConvoyStatus] = None
    iteration: Optional[str] = None
    include_completed: bool = False
    limit: Optional[int] = None

    def matches(self, convoy: ConvoyInfo) -> bool:
        if self.status is not None and convoy.status != self.status:
            return False
        if self.iteration and convoy.iteration != self.iteration:
            return False
        if self.status is None and not self.include_completed and convoy.is_terminal:
            return False
        return True


class ConvoyTasksSummary(BaseModel):
    """Member tasks of a convoy grouped by status."""
    convoy_id: str
    convoy_name: str
    pending: List[TaskInfo] = Field(default_factory=list)
    blocked: List[TaskInfo] = Field(default_factory=list)
    assigned: List[TaskInfo] = Field(default_factory=list)
    in_progress: List[TaskInfo] = Field(default_factory=list)
    completed: List[TaskInfo] = Field(default_factory=list)
    failed: List[TaskInfo] = Field(default_factory=list)
    cancelled: List[TaskInfo] = Field(default_factory=list)
