"""Task lifecycle: creation, assignment, progress, failure/retry and dependency blocking."""
import logging
from datetime import datetime
from typing import Callable, Collection, Dict, FrozenSet, Iterable, List, Optional

from convoy_control.core.context import OrchestrationContext
from convoy_control.models.result import OperationResult
from convoy_control.models.task import (
    AgentType,
    TaskCompletionResult,
    TaskConfig,
    TaskHistoryEntry,
    TaskInfo,
    TaskStatus,
    TaskStatusFilter,
)
from convoy_control.services.exceptions import InvalidArgumentError, PersistenceError, TaskNotFoundError

logger = logging.getLogger(__name__)

TaskListener = Callable[[TaskInfo], None]
TaskMutator = Callable[[TaskInfo, datetime], Optional[str]]

TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.ASSIGNED, TaskStatus.BLOCKED, TaskStatus.CANCELLED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Check whether the task state machine allows ``current -> target``."""
    return target in TASK_TRANSITIONS.get(current, frozenset())


class TaskEngine:
    """Owns task records and every status change made to them.

    Each mutation takes the task's lock, re-reads the record from disk,
    validates the transition, appends a history entry and saves. Work that
    touches other entities (unblocking dependents, convoy listeners) runs
    after the lock is released.
    """

    def __init__(self, context: OrchestrationContext):
        self.context = context
        self._listeners: List[TaskListener] = []

    def add_listener(self, listener: TaskListener) -> None:
        """Register a callback invoked with the task after each status change."""
        self._listeners.append(listener)

    def _notify(self, task: TaskInfo) -> None:
        for listener in self._listeners:
            listener(task)

    def _with_iterations(self, task: Optional[TaskInfo]) -> Optional[TaskInfo]:
        if task is not None:
            task.iteration_count = self.context.iterations.count(task.id)
        return task

    def _require(self, task_id: str) -> TaskInfo:
        task = self.context.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found")
        return task

    def dependencies_satisfied(self, dependency_ids: Iterable[str]) -> bool:
        """True when every id resolves to a completed task; unknown ids never satisfy."""
        for dependency_id in dependency_ids:
            dependency = self.context.tasks.get(dependency_id)
            if dependency is None or dependency.status != TaskStatus.COMPLETED:
                return False
        return True

    def _recheck_blocked(self, task_id: str) -> Optional[TaskInfo]:
        """Release a blocked task whose dependencies completed while it was being saved.

        A dependency that completes between the check and the save scans for
        dependents before this record is on disk, so the task re-validates itself.

        Returns:
            The unblocked task, or None if it is still blocked
        """
        task = self.context.tasks.get(task_id)
        if task is None or task.status != TaskStatus.BLOCKED or not self.dependencies_satisfied(task.dependencies):
            return None
        outcome = self._transition(
            task_id,
            TaskStatus.PENDING,
            "Dependencies satisfied, task unblocked",
            required_from={TaskStatus.BLOCKED},
        )
        if not outcome.success:
            return None
        logger.info(f"Task {task_id} unblocked after its dependencies completed during blocking")
        return self.context.tasks.get(task_id)

    def create_task(self, config: TaskConfig) -> TaskInfo:
        """Create and persist a new task.

        Args:
            config: Task configuration

        Returns:
            The created task, ``pending`` or ``blocked`` on its dependencies

        Raises:
            InvalidArgumentError: If the name is empty
            PersistenceError: If the record cannot be written
        """
        if not config.name or not config.name.strip():
            raise InvalidArgumentError("Task name is required")

        task_id = self.context.task_ids.next_id()
        now = self.context.now()
        task = TaskInfo(
            id=task_id,
            name=config.name,
            description=config.description,
            iteration=config.iteration,
            convoy_id=config.convoy_id,
            dependencies=list(config.dependencies),
            priority=config.priority,
            deliverable=config.deliverable,
            success_criteria=list(config.success_criteria),
            specification=dict(config.specification),
            estimated_minutes=config.estimated_minutes,
            max_iterations=min(config.max_iterations, self.context.settings.max_iterations_per_task),
            created_at=now,
            history=[TaskHistoryEntry(timestamp=now, to_status=TaskStatus.PENDING, message="Task created")],
        )

        if task.dependencies and not self.dependencies_satisfied(task.dependencies):
            task.status = TaskStatus.BLOCKED
            task.history.append(TaskHistoryEntry(
                timestamp=now,
                from_status=TaskStatus.PENDING,
                to_status=TaskStatus.BLOCKED,
                message="Blocked by pending dependencies",
            ))

        with self.context.task_locks.get(task_id):
            self.context.tasks.save(task)
        self.context.iterations.set_ceiling(task_id, task.max_iterations)

        logger.info(f"Created task {task_id}: {config.name} ({task.status.value})")
        if task.status == TaskStatus.BLOCKED:
            task = self._recheck_blocked(task_id) or task
        return self._with_iterations(task)

    def get_task(self, task_id: str) -> Optional[TaskInfo]:
        """Get a task by id, or None if it does not exist."""
        return self._with_iterations(self.context.tasks.get(task_id))

    def list_tasks(self, status_filter: Optional[TaskStatusFilter] = None) -> List[TaskInfo]:
        """List tasks ordered by priority (highest first), then creation time.

        Without a filter every task is returned, completed ones included.
        """
        tasks = self.context.tasks.list_all()
        if status_filter is not None:
            tasks = [task for task in tasks if status_filter.matches(task)]
        tasks.sort(key=lambda task: (-task.priority, task.created_at))
        if status_filter is not None and status_filter.limit and status_filter.limit > 0:
            tasks = tasks[:status_filter.limit]
        return [self._with_iterations(task) for task in tasks]

    def get_next_task(self, iteration: Optional[str] = None) -> Optional[TaskInfo]:
        """Find the highest-priority pending task whose dependencies are met."""
        candidates = self.list_tasks(TaskStatusFilter(status=TaskStatus.PENDING, iteration=iteration))
        for task in candidates:
            if self.dependencies_satisfied(task.dependencies):
                return task
        return None

    def _transition(self, task_id: str, target: TaskStatus, message: str,
                    mutate: Optional[TaskMutator] = None,
                    required_from: Optional[Collection[TaskStatus]] = None) -> OperationResult:
        """Apply a validated status change under the task's lock.

        ``mutate`` may adjust other fields and return a replacement history
        message. ``required_from`` narrows the allowed source statuses for
        operations such as retry that share a target with other transitions.
        """
        self._require(task_id)

        with self.context.task_locks.get(task_id):
            task = self.context.tasks.load(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task '{task_id}' not found")

            previous = task.status
            allowed = can_transition(previous, target)
            if required_from is not None and previous not in required_from:
                allowed = False
            if not allowed:
                logger.warning(f"Invalid transition for {task_id}: {previous.value} -> {target.value}")
                return OperationResult.rejected(
                    task_id, previous, f"Invalid transition for {task_id}: {previous.value} -> {target.value}"
                )

            now = self.context.now()
            task.status = target
            if mutate is not None:
                message = mutate(task, now) or message
            task.history.append(TaskHistoryEntry(
                timestamp=now,
                from_status=previous,
                to_status=target,
                agent=task.assigned_agent,
                message=message,
            ))

            try:
                self.context.tasks.save(task)
            except PersistenceError as e:
                logger.error(f"Failed to save task {task_id}: {e}")
                return OperationResult.failed(task_id, f"Failed to save task {task_id}: {e}", previous)

        logger.info(f"Task {task_id}: {previous.value} -> {target.value} ({message})")
        self._notify(self._with_iterations(task))
        return OperationResult.ok(task_id, target, message)

    def assign_task(self, task_id: str, agent_type) -> OperationResult:
        """Assign a pending task to an agent type.

        Args:
            task_id: Task to assign
            agent_type: AgentType or a name ``AgentType.parse`` accepts

        Raises:
            InvalidArgumentError: If the agent type is unknown or is the orchestrator role
            TaskNotFoundError: If the task does not exist
        """
        try:
            agent = AgentType.parse(agent_type)
        except ValueError as e:
            raise InvalidArgumentError(str(e)) from e
        if agent == AgentType.MAYOR:
            raise InvalidArgumentError("Mayor should not be assigned tasks - it orchestrates, not executes")

        def apply(task: TaskInfo, now: datetime) -> None:
            task.assigned_agent = agent
            task.assigned_at = now

        return self._transition(task_id, TaskStatus.ASSIGNED, f"Assigned to {agent.value}", apply)

    def unassign_task(self, task_id: str, reason: Optional[str] = None) -> OperationResult:
        """Return an assigned task to the pending pool."""
        def apply(task: TaskInfo, now: datetime) -> None:
            task.assigned_agent = None
            task.assigned_at = None

        message = f"Unassigned: {reason}" if reason else "Unassigned"
        return self._transition(task_id, TaskStatus.PENDING, message, apply, required_from={TaskStatus.ASSIGNED})

    def start_task(self, task_id: str) -> OperationResult:
        def apply(task: TaskInfo, now: datetime) -> None:
            task.started_at = now

        return self._transition(task_id, TaskStatus.IN_PROGRESS, "Task started", apply)

    def complete_task(self, task_id: str, result: Optional[TaskCompletionResult] = None) -> OperationResult:
        """Mark an in-progress task completed and unblock tasks waiting on it.

        Args:
            task_id: Task to complete
            result: Optional completion report stored on the task
        """
        def apply(task: TaskInfo, now: datetime) -> None:
            task.completed_at = now
            task.result = result

        message = result.summary if result is not None and result.summary else "Task completed"
        outcome = self._transition(task_id, TaskStatus.COMPLETED, message, apply)
        if outcome.success:
            self.unblock_dependent_tasks(task_id)
        return outcome

    def fail_task(self, task_id: str, reason: str) -> OperationResult:
        """Mark an in-progress task failed and count the attempt.

        The attempt is recorded on the shared iteration tracker. Reaching the
        ceiling only logs a warning; escalation is up to the caller.
        """
        reached = []

        def apply(task: TaskInfo, now: datetime) -> str:
            task.completed_at = now
            task.error_message = reason
            info = self.context.iterations.increment(task.id)
            if info.limit_reached:
                reached.append(info.max_iterations)
            return f"Failed (iteration {info.current_iteration}): {reason}"

        outcome = self._transition(task_id, TaskStatus.FAILED, f"Failed: {reason}", apply)
        if reached:
            logger.warning(f"Task {task_id} exceeded max iterations ({reached[0]}). Escalation required.")
        return outcome

    def cancel_task(self, task_id: str, reason: Optional[str] = None) -> OperationResult:
        message = f"Cancelled: {reason}" if reason else "Task cancelled"
        return self._transition(task_id, TaskStatus.CANCELLED, message)

    def retry_task(self, task_id: str) -> OperationResult:
        """Reset a failed task to pending, keeping its iteration count."""
        def apply(task: TaskInfo, now: datetime) -> str:
            task.assigned_agent = None
            task.assigned_at = None
            task.started_at = None
            task.completed_at = None
            task.error_message = None
            return f"Retrying (iteration {self.context.iterations.count(task.id)})"

        return self._transition(task_id, TaskStatus.PENDING, "Retrying", apply, required_from={TaskStatus.FAILED})

    def increment_task_iteration(self, task_id: str) -> int:
        """Count an execution attempt without changing status.

        Returns:
            The new iteration count

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        self._require(task_id)
        with self.context.task_locks.get(task_id):
            task = self.context.tasks.load(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task '{task_id}' not found")
            info = self.context.iterations.increment(task_id)
            task.history.append(TaskHistoryEntry(
                timestamp=self.context.now(),
                to_status=task.status,
                message=f"Iteration incremented to {info.current_iteration}",
            ))
            try:
                self.context.tasks.save(task)
            except PersistenceError as e:
                logger.error(f"Failed to save task {task_id}: {e}")
        return info.current_iteration

    def add_task_dependency(self, task_id: str, dependency_id: str) -> OperationResult:
        """Make a task depend on another task.

        A pending task whose new dependency is not yet completed is blocked.

        Raises:
            InvalidArgumentError: If the task would depend on itself
            TaskNotFoundError: If either task does not exist
        """
        if task_id == dependency_id:
            raise InvalidArgumentError(f"Task {task_id} cannot depend on itself")
        self._require(dependency_id)
        self._require(task_id)
        satisfied = self.dependencies_satisfied([dependency_id])

        with self.context.task_locks.get(task_id):
            task = self.context.tasks.load(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task '{task_id}' not found")
            if dependency_id in task.dependencies:
                return OperationResult.ok(task_id, task.status, f"{task_id} already depends on {dependency_id}")

            task.dependencies.append(dependency_id)
            blocked = not satisfied and task.status == TaskStatus.PENDING
            if blocked:
                task.history.append(TaskHistoryEntry(
                    timestamp=self.context.now(),
                    from_status=task.status,
                    to_status=TaskStatus.BLOCKED,
                    message=f"Blocked by new dependency {dependency_id}",
                ))
                task.status = TaskStatus.BLOCKED
            try:
                self.context.tasks.save(task)
            except PersistenceError as e:
                logger.error(f"Failed to save task {task_id}: {e}")
                return OperationResult.failed(task_id, f"Failed to save task {task_id}: {e}")

        logger.info(f"Task {task_id} now depends on {dependency_id}")
        if blocked:
            self._notify(self._with_iterations(task))
            task = self._recheck_blocked(task_id) or task
        return OperationResult.ok(task_id, task.status, f"Added dependency {dependency_id}")

    def set_task_convoy(self, task_id: str, convoy_id: Optional[str]) -> bool:
        """Stamp or clear a task's owning convoy.

        Returns:
            True if the record was saved
        """
        self._require(task_id)
        with self.context.task_locks.get(task_id):
            task = self.context.tasks.load(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task '{task_id}' not found")
            task.convoy_id = convoy_id
            try:
                self.context.tasks.save(task)
            except PersistenceError as e:
                logger.error(f"Failed to save task {task_id}: {e}")
                return False
        return True

    def unblock_dependent_tasks(self, completed_task_id: str) -> List[str]:
        """Move blocked tasks waiting on ``completed_task_id`` back to pending.

        Each dependent is handled under its own lock, one at a time.

        Returns:
            Ids of the tasks that were unblocked
        """
        unblocked = []
        for candidate in self.context.tasks.list_all():
            if candidate.status != TaskStatus.BLOCKED or completed_task_id not in candidate.dependencies:
                continue
            if not self.dependencies_satisfied(candidate.dependencies):
                continue
            outcome = self._transition(
                candidate.id,
                TaskStatus.PENDING,
                "Dependencies satisfied, task unblocked",
                required_from={TaskStatus.BLOCKED},
            )
            if outcome.success:
                logger.info(f"Task {candidate.id} unblocked (dependency {completed_task_id} completed)")
                unblocked.append(candidate.id)
        return unblocked
