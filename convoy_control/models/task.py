"""Task data models."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    """Task status enumeration."""
    PENDING = "pending"
    BLOCKED = "blocked"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


class AgentType(str, Enum):
    """Specialized agent roles that can execute tasks."""
    SCRIPT_POLECAT = "script_polecat"
    SCENE_POLECAT = "scene_polecat"
    ASSET_POLECAT = "asset_polecat"
    EYES_POLECAT = "eyes_polecat"
    EVALUATOR = "evaluator"
    MAYOR = "mayor"  # orchestrates, never executes

    @classmethod
    def parse(cls, value: "str | AgentType") -> "AgentType":
        """Parse an agent type, accepting short names and CamelCase spellings.

        Args:
            value: e.g. "script", "ScriptPolecat", "script-polecat"

        Returns:
            Matching AgentType

        Raises:
            ValueError: If the value names no known agent type
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        for member in cls:
            if normalized in (member.value, member.value.replace("_", "")):
                return member
            if member.value.endswith("_polecat") and normalized == member.value[:-len("_polecat")]:
                return member
        raise ValueError(f"Unknown agent type: {value}")


class VerificationResult(BaseModel):
    """Verification report attached to a completion result."""
    passed: bool = False
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    missing_references: List[str] = Field(default_factory=list)
    verified_at: Optional[datetime] = None


class TaskCompletionResult(BaseModel):
    """Result data recorded when a task completes."""
    success: bool = True
    summary: Optional[str] = None
    files_created: List[str] = Field(default_factory=list)
    files_modified: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    verification: Optional[VerificationResult] = None
    # Opaque payloads from external introspection tools
    attachments: Dict[str, Any] = Field(default_factory=dict)


class TaskHistoryEntry(BaseModel):
    """A single status transition in a task's audit trail."""
    timestamp: datetime
    from_status: Optional[TaskStatus] = None
    to_status: TaskStatus
    agent: Optional[AgentType] = None
    message: Optional[str] = None


class TaskConfig(BaseModel):
    """Configuration for creating a new task."""
    name: str
    description: Optional[str] = None
    iteration: Optional[str] = None  # e.g. "Iteration1"
    convoy_id: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    priority: int = 1  # 0=low, 1=normal, 2=high, 3=critical
    deliverable: Optional[str] = None
    success_criteria: List[str] = Field(default_factory=list)
    specification: Dict[str, Any] = Field(default_factory=dict)
    estimated_minutes: int = 15
    max_iterations: int = 50


class TaskInfo(BaseModel):
    """Task record persisted to tasks/<id>.json."""
    id: str  # task-NNN
    name: str
    description: Optional[str] = None
    iteration: Optional[str] = None
    convoy_id: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    assigned_agent: Optional[AgentType] = None
    dependencies: List[str] = Field(default_factory=list)
    priority: int = 1
    deliverable: Optional[str] = None
    success_criteria: List[str] = Field(default_factory=list)
    specification: Dict[str, Any] = Field(default_factory=dict)
    estimated_minutes: int = 15
    max_iterations: int = 50
    # Owned by the iteration tracker; filled in on read, never written here
    iteration_count: int = Field(default=0, exclude=True)
    created_at: datetime
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result: Optional[TaskCompletionResult] = None
    history: List[TaskHistoryEntry] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class TaskStatusFilter(BaseModel):
    """Filter for querying tasks."""
    status: Optional[TaskStatus] = None
    agent_type: Optional[AgentType] = None
    convoy_id: Optional[str] = None
    iteration: Optional[str] = None
    include_completed: bool = False
    limit: Optional[int] = None

    def matches(self, task: TaskInfo) -> bool:
        """Check whether a task passes this filter (limit excluded)."""
        if self.status is not None and task.status != self.status:
            return False
        if self.agent_type is not None and task.assigned_agent != self.agent_type:
            return False
        if self.convoy_id and task.convoy_id != self.convoy_id:
            return False
        if self.iteration and task.iteration != self.iteration:
            return False
        # An explicit status filter wins over the completed/cancelled default
        if self.status is None and not self.include_completed and task.is_terminal:
            return False
        return True
