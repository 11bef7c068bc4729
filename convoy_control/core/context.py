"""Process-scoped state shared by the orchestration engines."""
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from convoy_control.core.config import OrchestrationSettings
from convoy_control.core.constants import (
    APPROVALS_FILE_NAME,
    BUDGET_FILE_NAME,
    CONVOY_ID_PREFIX,
    SAFETY_STATE_FILE_NAME,
    TASK_ID_PREFIX,
)
from convoy_control.core.record_store import JsonRecordStore, LockRegistry
from convoy_control.core.safety_state import (
    AgentRegistry,
    ApprovalQueue,
    BudgetLedger,
    IterationTracker,
    SafetyStateStore,
)
from convoy_control.models.convoy import ConvoyInfo
from convoy_control.models.task import TaskInfo

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrchestrationContext:
    """Stores, locks, id counters, safety ledgers and the clock for one orchestration root.

    Engines receive a context instead of reaching for module-level state, so
    tests can build an isolated context per temporary directory.
    """

    def __init__(self, settings: Optional[OrchestrationSettings] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """Initialize the context and recover id counters from disk.

        Args:
            settings: Settings to use (defaults to ``OrchestrationSettings.from_env()``)
            clock: Callable returning the current UTC time
        """
        self.settings = settings or OrchestrationSettings.from_env()
        self.clock = clock or utc_now

        self.tasks = JsonRecordStore(self.settings.tasks_dir, TaskInfo, TASK_ID_PREFIX)
        self.convoys = JsonRecordStore(self.settings.convoys_dir, ConvoyInfo, CONVOY_ID_PREFIX)
        self.settings.orchestration_dir.mkdir(parents=True, exist_ok=True)
        self.settings.reviews_dir.mkdir(parents=True, exist_ok=True)

        self.task_locks = LockRegistry()
        self.convoy_locks = LockRegistry()
        self.task_ids = self.tasks.create_allocator()
        self.convoy_ids = self.convoys.create_allocator()

        self.safety_state = SafetyStateStore(
            self.settings.orchestration_dir / SAFETY_STATE_FILE_NAME, self.clock
        )
        self.iterations = IterationTracker(
            self.safety_state, self.clock, self.settings.max_iterations_per_task
        )
        self.agents = AgentRegistry(
            self.safety_state, self.clock, self.settings.max_parallel_agents, self.settings.agent_ttl
        )
        self.budget = BudgetLedger(
            self.settings.orchestration_dir / BUDGET_FILE_NAME, self.clock, self.settings.hourly_budget
        )
        self.approvals = ApprovalQueue(self.settings.reviews_dir / APPROVALS_FILE_NAME)
        self.rollback_lock = threading.Lock()

        logger.info(
            f"Orchestration context at {self.settings.hooks_root} "
            f"(tasks from {self.task_ids.current + 1}, convoys from {self.convoy_ids.current + 1})"
        )

    def now(self) -> datetime:
        return self.clock()

    def close(self) -> None:
        """Drop caches and locks; on-disk state is untouched."""
        self.tasks.clear_cache()
        self.convoys.clear_cache()
        self.task_locks.clear()
        self.convoy_locks.clear()

    def __enter__(self) -> 'OrchestrationContext':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
