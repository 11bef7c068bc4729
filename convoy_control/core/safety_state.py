"""Process-wide safety state: iteration counters, agent registrations, the budget ledger and approvals."""
import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from convoy_control.core.record_store import read_json, write_json_atomic, write_text_atomic
from convoy_control.models.safety import ActiveAgent, ApprovalRequest, BudgetInfo, IterationInfo, SafetyState
from convoy_control.services.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class SafetyStateStore:
    """Holds the safety snapshot in memory and mirrors it to disk."""

    def __init__(self, path: Path, clock: Callable[[], datetime]):
        self.path = path
        self._clock = clock
        self.lock = threading.RLock()
        self.state = self._load()

    def _load(self) -> SafetyState:
        try:
            data = read_json(self.path)
            if data is not None:
                return SafetyState.model_validate(data)
        except (PersistenceError, ValueError) as e:
            logger.warning(f"Failed to load safety state: {e}")
        return SafetyState()

    def save(self) -> None:
        """Persist the snapshot; failures are logged and memory is kept."""
        with self.lock:
            self.state.last_updated = self._clock()
            try:
                write_text_atomic(self.path, self.state.model_dump_json(indent=2))
            except PersistenceError as e:
                logger.error(f"Failed to save safety state: {e}")


class IterationTracker:
    """The one authoritative execution-attempt counter per task.

    Both the task engine (retry tracking) and the safety guard (limit checks)
    read and advance these records.
    """

    def __init__(self, store: SafetyStateStore, clock: Callable[[], datetime], default_max: int):
        self._store = store
        self._clock = clock
        self.default_max = default_max

    def _peek(self, task_id: str) -> IterationInfo:
        """The stored record, or an unsaved default for tasks never counted."""
        info = self._store.state.iterations.get(task_id)
        if info is None:
            now = self._clock()
            info = IterationInfo(
                task_id=task_id,
                current_iteration=0,
                max_iterations=self.default_max,
                first_iteration=now,
                last_iteration=now,
            )
        return info

    def _get_or_create(self, task_id: str) -> IterationInfo:
        info = self._peek(task_id)
        self._store.state.iterations.setdefault(task_id, info)
        return info

    def get(self, task_id: str) -> IterationInfo:
        with self._store.lock:
            return self._peek(task_id).model_copy()

    def count(self, task_id: str) -> int:
        with self._store.lock:
            info = self._store.state.iterations.get(task_id)
            return info.current_iteration if info else 0

    def set_ceiling(self, task_id: str, max_iterations: int) -> None:
        """Record a task-specific ceiling, capped by the global ceiling."""
        with self._store.lock:
            info = self._get_or_create(task_id)
            info.max_iterations = min(max_iterations, self.default_max)
            self._store.save()

    def within_limit(self, task_id: str) -> bool:
        with self._store.lock:
            return not self._peek(task_id).limit_reached

    def increment(self, task_id: str) -> IterationInfo:
        with self._store.lock:
            info = self._get_or_create(task_id)
            info.current_iteration += 1
            info.last_iteration = self._clock()
            self._store.save()
            snapshot = info.model_copy()

        logger.info(f"Task {task_id}: iteration {snapshot.current_iteration}/{snapshot.max_iterations}")
        if snapshot.limit_reached:
            logger.warning(f"Task {task_id} has reached its iteration limit ({snapshot.max_iterations})")
        return snapshot

    def reset(self, task_id: str) -> bool:
        """Zero a task's counter.

        Returns:
            True if a counter existed and was reset
        """
        with self._store.lock:
            info = self._store.state.iterations.get(task_id)
            if info is None:
                return False
            now = self._clock()
            info.current_iteration = 0
            info.first_iteration = now
            info.last_iteration = now
            self._store.save()
        logger.info(f"Reset iterations for task {task_id}")
        return True


class AgentRegistry:
    """Currently running agents, used only to bound concurrency."""

    def __init__(self, store: SafetyStateStore, clock: Callable[[], datetime],
                 max_parallel: int, ttl: Optional[timedelta] = None):
        self._store = store
        self._clock = clock
        self.max_parallel = max_parallel
        self.ttl = ttl

    def _expire(self) -> None:
        if self.ttl is not None:
            self.prune_stale(self.ttl)

    def count(self) -> int:
        with self._store.lock:
            self._expire()
            return len(self._store.state.active_agents)

    def has_capacity(self) -> bool:
        return self.count() < self.max_parallel

    def list(self) -> List[ActiveAgent]:
        with self._store.lock:
            self._expire()
            agents = [agent.model_copy() for agent in self._store.state.active_agents.values()]
        return sorted(agents, key=lambda agent: agent.started_at)

    def register(self, agent_id: str, agent_type: Optional[str] = None,
                 task_id: Optional[str] = None) -> ActiveAgent:
        with self._store.lock:
            agent = ActiveAgent(
                agent_id=agent_id,
                agent_type=agent_type,
                started_at=self._clock(),
                task_id=task_id,
            )
            self._store.state.active_agents[agent_id] = agent
            self._store.save()
            active = len(self._store.state.active_agents)

        logger.info(f"Registered agent: {agent_id} ({agent_type}). Active agents: {active}/{self.max_parallel}")
        if active >= self.max_parallel:
            logger.warning(f"Parallel agent limit reached ({self.max_parallel}). New agents should wait.")
        return agent

    def unregister(self, agent_id: str) -> bool:
        with self._store.lock:
            agent = self._store.state.active_agents.pop(agent_id, None)
            if agent is None:
                return False
            self._store.save()
            active = len(self._store.state.active_agents)

        duration = self._clock() - agent.started_at
        logger.info(
            f"Unregistered agent: {agent_id}. Duration: {duration.total_seconds():.1f}s. "
            f"Active agents: {active}/{self.max_parallel}"
        )
        return True

    def prune_stale(self, max_age: timedelta) -> List[str]:
        """Drop registrations older than ``max_age``.

        Returns:
            Ids of the agents that were removed
        """
        with self._store.lock:
            cutoff = self._clock() - max_age
            stale = [
                agent_id for agent_id, agent in self._store.state.active_agents.items()
                if agent.started_at < cutoff
            ]
            for agent_id in stale:
                del self._store.state.active_agents[agent_id]
            if stale:
                self._store.save()

        for agent_id in stale:
            logger.warning(f"Dropped stale agent registration: {agent_id}")
        return stale


class BudgetLedger:
    """The hourly spend ledger, one per orchestration root.

    Every safety engine built on the same context reads and writes this
    instance under ``lock``.
    """

    def __init__(self, path: Path, clock: Callable[[], datetime], hourly_limit: Decimal):
        self.path = path
        self._clock = clock
        self.hourly_limit = hourly_limit
        self.lock = threading.Lock()
        self.info = self._load()

    def _load(self) -> BudgetInfo:
        try:
            data = read_json(self.path)
            if data is not None:
                budget = BudgetInfo.model_validate(data)
                budget.hourly_limit = self.hourly_limit
                return budget
        except (PersistenceError, ValidationError) as e:
            logger.warning(f"Failed to load budget state: {e}")
        return BudgetInfo(hourly_limit=self.hourly_limit, hour_window_start=self._clock())

    def save(self) -> None:
        """Persist the ledger; failures are logged and memory is kept."""
        try:
            write_text_atomic(self.path, self.info.model_dump_json(indent=2))
        except PersistenceError as e:
            logger.error(f"Failed to save budget: {e}")


class ApprovalQueue:
    """Approval requests keyed by id, mirrored to the reviews directory."""

    def __init__(self, path: Path):
        self.path = path
        self.lock = threading.Lock()
        self.requests: Dict[str, ApprovalRequest] = self._load()

    def _load(self) -> Dict[str, ApprovalRequest]:
        """Read the approvals file, accepting the legacy single-object layout."""
        try:
            data = read_json(self.path)
        except PersistenceError as e:
            logger.warning(f"Failed to load approvals: {e}")
            return {}
        if data is None:
            return {}

        entries = data if isinstance(data, list) else [data]
        requests = {}
        for entry in entries:
            try:
                request = ApprovalRequest.model_validate(entry)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable approval request: {e}")
                continue
            if request.request_id:
                requests[request.request_id] = request
        return requests

    def save(self) -> None:
        payload = [request.model_dump(mode='json') for request in self.requests.values()]
        try:
            write_json_atomic(self.path, payload)
        except PersistenceError as e:
            logger.error(f"Failed to save approvals: {e}")
