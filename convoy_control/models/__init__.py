"""Models for Convoy Control."""

from .convoy import (
    ConvoyConfig,
    ConvoyInfo,
    ConvoyProgress,
    ConvoyStatus,
    ConvoyStatusFilter,
    ConvoyTasksSummary,
)
from .result import OperationResult
from .safety import (
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
    SafetyState,
)
from .task import (
    AgentType,
    TaskCompletionResult,
    TaskConfig,
    TaskHistoryEntry,
    TaskInfo,
    TaskStatus,
    TaskStatusFilter,
    VerificationResult,
)

__all__ = [
    'ActiveAgent',
    'AgentType',
    'ApprovalCategory',
    'ApprovalRequest',
    'ApprovalState',
    'ApprovalStatus',
    'BudgetInfo',
    'ConvoyConfig',
    'ConvoyInfo',
    'ConvoyProgress',
    'ConvoyStatus',
    'ConvoyStatusFilter',
    'ConvoyTasksSummary',
    'CostEntry',
    'IterationInfo',
    'LimitsReport',
    'OperationResult',
    'RollbackResult',
    'SafetyState',
    'TaskCompletionResult',
    'TaskConfig',
    'TaskHistoryEntry',
    'TaskInfo',
    'TaskStatus',
    'TaskStatusFilter',
    'VerificationResult',
]
