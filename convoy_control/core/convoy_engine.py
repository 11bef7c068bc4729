"""Convoys: groups of tasks with their own dependency graph and derived progress."""
import logging
from datetime import datetime
from typing import Callable, Collection, Dict, FrozenSet, Iterable, List, Optional

from convoy_control.core.context import OrchestrationContext
from convoy_control.core.task_engine import TaskEngine
from convoy_control.models.convoy import (
    ConvoyConfig,
    ConvoyInfo,
    ConvoyProgress,
    ConvoyStatus,
    ConvoyStatusFilter,
    ConvoyTasksSummary,
)
from convoy_control.models.result import OperationResult
from convoy_control.models.task import TaskConfig, TaskInfo, TaskStatus
from convoy_control.services.exceptions import (
    ConvoyNotFoundError,
    InvalidArgumentError,
    PersistenceError,
    TaskNotFoundError,
)

logger = logging.getLogger(__name__)

ConvoyMutator = Callable[[ConvoyInfo, datetime], None]
ConvoyCheck = Callable[[ConvoyInfo], Optional[str]]

CONVOY_TRANSITIONS: Dict[ConvoyStatus, FrozenSet[ConvoyStatus]] = {
    ConvoyStatus.PENDING: frozenset({ConvoyStatus.IN_PROGRESS, ConvoyStatus.BLOCKED, ConvoyStatus.CANCELLED}),
    ConvoyStatus.BLOCKED: frozenset({ConvoyStatus.PENDING, ConvoyStatus.IN_PROGRESS, ConvoyStatus.CANCELLED}),
    ConvoyStatus.IN_PROGRESS: frozenset({ConvoyStatus.COMPLETED, ConvoyStatus.FAILED, ConvoyStatus.CANCELLED}),
    ConvoyStatus.COMPLETED: frozenset(),
    ConvoyStatus.FAILED: frozenset({ConvoyStatus.PENDING}),
    ConvoyStatus.CANCELLED: frozenset(),
}

_SUMMARY_FIELDS = {
    TaskStatus.PENDING: "pending",
    TaskStatus.BLOCKED: "blocked",
    TaskStatus.ASSIGNED: "assigned",
    TaskStatus.IN_PROGRESS: "in_progress",
    TaskStatus.COMPLETED: "completed",
    TaskStatus.FAILED: "failed",
    TaskStatus.CANCELLED: "cancelled",
}


def can_transition(current: ConvoyStatus, target: ConvoyStatus) -> bool:
    """Check whether the convoy state machine allows ``current -> target``."""
    return target in CONVOY_TRANSITIONS.get(current, frozenset())


class ConvoyEngine:
    """Manages convoy records on top of the task engine.

    Convoy status follows member tasks: a pending convoy is promoted to
    ``in_progress`` once any member task has started, and a blocked convoy
    is released when its convoy dependencies complete. The engine learns
    about task changes through a task engine listener, which runs after the
    task's lock has been released.
    """

    def __init__(self, context: OrchestrationContext, task_engine: TaskEngine):
        self.context = context
        self.tasks = task_engine
        self.tasks.add_listener(self._on_task_changed)

    def _require(self, convoy_id: str) -> ConvoyInfo:
        convoy = self.context.convoys.get(convoy_id)
        if convoy is None:
            raise ConvoyNotFoundError(f"Convoy '{convoy_id}' not found")
        return convoy

    def _member_tasks(self, convoy: ConvoyInfo) -> List[TaskInfo]:
        members = []
        for task_id in convoy.task_ids:
            task = self.tasks.get_task(task_id)
            if task is not None:
                members.append(task)
        return members

    def calculate_progress(self, convoy: ConvoyInfo) -> ConvoyProgress:
        """Recompute progress from the current member task records."""
        return ConvoyProgress.from_tasks(len(convoy.task_ids), self._member_tasks(convoy))

    def _with_progress(self, convoy: Optional[ConvoyInfo]) -> Optional[ConvoyInfo]:
        if convoy is not None:
            convoy.progress = self.calculate_progress(convoy)
        return convoy

    def dependencies_satisfied(self, dependency_ids: Iterable[str]) -> bool:
        """True when every id resolves to a completed convoy; unknown ids never satisfy."""
        for dependency_id in dependency_ids:
            dependency = self.context.convoys.get(dependency_id)
            if dependency is None or dependency.status != ConvoyStatus.COMPLETED:
                return False
        return True

    def are_dependencies_satisfied(self, convoy_id: str) -> bool:
        convoy = self.context.convoys.get(convoy_id)
        if convoy is None:
            return False
        return self.dependencies_satisfied(convoy.dependencies)

    def _refresh_status(self, convoy: ConvoyInfo, now: datetime) -> bool:
        """Apply automatic promotion/unblocking in place.

        Returns:
            True if the status changed
        """
        progress = convoy.progress
        if convoy.status == ConvoyStatus.PENDING and progress.has_started:
            convoy.status = ConvoyStatus.IN_PROGRESS
        elif convoy.status == ConvoyStatus.BLOCKED and self.dependencies_satisfied(convoy.dependencies):
            convoy.status = ConvoyStatus.IN_PROGRESS if progress.has_started else ConvoyStatus.PENDING
        else:
            return False
        if convoy.status == ConvoyStatus.IN_PROGRESS and convoy.started_at is None:
            convoy.started_at = now
        return True

    def _owner_elsewhere(self, task: TaskInfo, convoy_id: str) -> bool:
        """Whether another existing convoy lists ``task`` as a member."""
        if not task.convoy_id or task.convoy_id == convoy_id:
            return False
        owner = self.context.convoys.get(task.convoy_id)
        return owner is not None and task.id in owner.task_ids

    def _save(self, convoy: ConvoyInfo) -> Optional[str]:
        try:
            self.context.convoys.save(convoy)
        except PersistenceError as e:
            logger.error(f"Failed to save convoy {convoy.id}: {e}")
            return f"Failed to save convoy {convoy.id}: {e}"
        return None

    def create_convoy(self, config: ConvoyConfig, task_configs: Optional[List[TaskConfig]] = None) -> ConvoyInfo:
        """Create a convoy, optionally creating its member tasks first.

        Args:
            config: Convoy configuration; ``task_ids`` lists existing tasks to attach.
                Tasks that already belong to another convoy are left out.
            task_configs: New tasks to create, stamped with the convoy id and iteration

        Returns:
            The created convoy with progress filled in

        Raises:
            InvalidArgumentError: If the name is empty
            PersistenceError: If the convoy record cannot be written
        """
        if not config.name or not config.name.strip():
            raise InvalidArgumentError("Convoy name is required")

        convoy_id = self.context.convoy_ids.next_id()
        task_ids = list(dict.fromkeys(config.task_ids))

        for existing_id in list(task_ids):
            task = self.tasks.get_task(existing_id)
            if task is None:
                continue
            if self._owner_elsewhere(task, convoy_id):
                logger.warning(f"Skipping task {existing_id}: it already belongs to convoy {task.convoy_id}")
                task_ids.remove(existing_id)
                continue
            self.tasks.set_task_convoy(existing_id, convoy_id)

        for task_config in task_configs or []:
            member_config = task_config.model_copy(update={
                'convoy_id': convoy_id,
                'iteration': config.iteration or task_config.iteration,
            })
            task_ids.append(self.tasks.create_task(member_config).id)

        now = self.context.now()
        convoy = ConvoyInfo(
            id=convoy_id,
            name=config.name,
            description=config.description,
            iteration=config.iteration,
            dependencies=list(config.dependencies),
            task_ids=task_ids,
            priority=config.priority,
            assigned_agent=config.assigned_agent,
            deliverables=list(config.deliverables),
            completion_criteria=list(config.completion_criteria),
            created_at=now,
        )
        if convoy.dependencies and not self.dependencies_satisfied(convoy.dependencies):
            convoy.status = ConvoyStatus.BLOCKED

        convoy.progress = self.calculate_progress(convoy)
        self._refresh_status(convoy, now)

        with self.context.convoy_locks.get(convoy_id):
            self.context.convoys.save(convoy)

        logger.info(f"Created convoy {convoy_id}: {config.name} with {len(task_ids)} tasks ({convoy.status.value})")
        return convoy

    def get_convoy(self, convoy_id: str) -> Optional[ConvoyInfo]:
        """Get a convoy with freshly computed progress, or None."""
        return self._with_progress(self.context.convoys.get(convoy_id))

    def list_convoys(self, status_filter: Optional[ConvoyStatusFilter] = None) -> List[ConvoyInfo]:
        """List convoys ordered by priority (highest first), then creation time."""
        convoys = self.context.convoys.list_all()
        if status_filter is not None:
            convoys = [convoy for convoy in convoys if status_filter.matches(convoy)]
        convoys.sort(key=lambda convoy: (-convoy.priority, convoy.created_at))
        if status_filter is not None and status_filter.limit and status_filter.limit > 0:
            convoys = convoys[:status_filter.limit]
        return [self._with_progress(convoy) for convoy in convoys]

    def _transition(self, convoy_id: str, target: ConvoyStatus, message: str,
                    mutate: Optional[ConvoyMutator] = None,
                    required_from: Optional[Collection[ConvoyStatus]] = None,
                    precondition: Optional[ConvoyCheck] = None) -> OperationResult:
        """Apply a validated status change under the convoy's lock.

        Automatic promotion is applied to the freshly loaded record before
        the requested transition is validated, so a convoy whose tasks have
        all finished can be completed even if no task event promoted it.
        """
        self._require(convoy_id)

        with self.context.convoy_locks.get(convoy_id):
            convoy = self._with_progress(self.context.convoys.load(convoy_id))
            if convoy is None:
                raise ConvoyNotFoundError(f"Convoy '{convoy_id}' not found")

            now = self.context.now()
            refreshed = self._refresh_status(convoy, now)
            previous = convoy.status

            rejection = precondition(convoy) if precondition is not None else None
            if rejection is None and (not can_transition(previous, target)
                                      or (required_from is not None and previous not in required_from)):
                rejection = f"Invalid transition for {convoy_id}: {previous.value} -> {target.value}"
            if rejection is not None:
                logger.warning(rejection)
                if refreshed:
                    self._save(convoy)
                return OperationResult.rejected(convoy_id, previous, rejection)

            convoy.status = target
            if mutate is not None:
                mutate(convoy, now)
            error = self._save(convoy)
            if error is not None:
                return OperationResult.failed(convoy_id, error, previous)

        logger.info(f"Convoy {convoy_id}: {previous.value} -> {target.value} ({message})")
        if target == ConvoyStatus.COMPLETED:
            self.unblock_dependent_convoys(convoy_id)
        return OperationResult.ok(convoy_id, target, message)

    def complete_convoy(self, convoy_id: str) -> OperationResult:
        """Complete a convoy; refused unless every member task is completed right now."""
        def all_tasks_done(convoy: ConvoyInfo) -> Optional[str]:
            progress = convoy.progress
            if progress.all_tasks_complete:
                return None
            return (
                f"Cannot complete convoy {convoy.id}: not all tasks are complete "
                f"({progress.completed_tasks}/{progress.total_tasks})"
            )

        def apply(convoy: ConvoyInfo, now: datetime) -> None:
            convoy.completed_at = now

        return self._transition(convoy_id, ConvoyStatus.COMPLETED, "Convoy completed", apply,
                                precondition=all_tasks_done)

    def fail_convoy(self, convoy_id: str, reason: str) -> OperationResult:
        def apply(convoy: ConvoyInfo, now: datetime) -> None:
            convoy.completed_at = now
            convoy.error_message = reason

        return self._transition(convoy_id, ConvoyStatus.FAILED, f"Failed: {reason}", apply)

    def cancel_convoy(self, convoy_id: str, reason: Optional[str] = None) -> OperationResult:
        def apply(convoy: ConvoyInfo, now: datetime) -> None:
            convoy.completed_at = now
            convoy.error_message = reason

        return self._transition(convoy_id, ConvoyStatus.CANCELLED, reason or "Convoy cancelled", apply)

    def retry_convoy(self, convoy_id: str) -> OperationResult:
        """Return a failed convoy to pending."""
        def apply(convoy: ConvoyInfo, now: datetime) -> None:
            convoy.completed_at = None
            convoy.error_message = None

        return self._transition(convoy_id, ConvoyStatus.PENDING, "Retrying", apply,
                                required_from={ConvoyStatus.FAILED})

    def try_auto_complete(self, convoy_id: str) -> bool:
        """Complete an in-progress convoy whose member tasks are all completed.

        Returns:
            True if the convoy was completed by this call
        """
        convoy = self.get_convoy(convoy_id)
        if convoy is None or convoy.status != ConvoyStatus.IN_PROGRESS:
            return False
        if not convoy.progress.all_tasks_complete:
            return False
        return self.complete_convoy(convoy_id).success

    def refresh_convoy_status(self, convoy_id: str) -> Optional[ConvoyStatus]:
        """Re-derive a convoy's automatic status from its tasks and dependencies.

        Returns:
            The convoy status afterwards, or None if the convoy does not exist
        """
        with self.context.convoy_locks.get(convoy_id):
            convoy = self._with_progress(self.context.convoys.load(convoy_id))
            if convoy is None:
                return None
            previous = convoy.status
            if self._refresh_status(convoy, self.context.now()) and self._save(convoy) is None:
                logger.info(f"Convoy {convoy_id}: {previous.value} -> {convoy.status.value}")
            return convoy.status

    def _on_task_changed(self, task: TaskInfo) -> None:
        if task.convoy_id:
            self.refresh_convoy_status(task.convoy_id)

    def unblock_dependent_convoys(self, completed_convoy_id: str) -> List[str]:
        """Release blocked convoys that were waiting on ``completed_convoy_id``."""
        released = []
        for convoy in self.context.convoys.list_all():
            if convoy.status != ConvoyStatus.BLOCKED or completed_convoy_id not in convoy.dependencies:
                continue
            status = self.refresh_convoy_status(convoy.id)
            if status is not None and status != ConvoyStatus.BLOCKED:
                logger.info(f"Convoy {convoy.id} unblocked (dependency {completed_convoy_id} completed)")
                released.append(convoy.id)
        return released

    def get_next_ready_convoy(self, iteration: Optional[str] = None) -> Optional[ConvoyInfo]:
        """Pick the highest-priority pending convoy whose dependencies are met.

        When no pending convoy qualifies, blocked convoys are re-checked and
        the first one whose dependencies have since completed is unblocked
        and returned.
        """
        pending = self.list_convoys(ConvoyStatusFilter(status=ConvoyStatus.PENDING, iteration=iteration))
        for convoy in pending:
            if self.dependencies_satisfied(convoy.dependencies):
                return convoy

        blocked = self.list_convoys(ConvoyStatusFilter(status=ConvoyStatus.BLOCKED, iteration=iteration))
        for convoy in blocked:
            if not self.dependencies_satisfied(convoy.dependencies):
                continue
            status = self.refresh_convoy_status(convoy.id)
            if status is not None and status != ConvoyStatus.BLOCKED:
                logger.info(f"Convoy {convoy.id} unblocked while selecting the next convoy")
                return self.get_convoy(convoy.id)
        return None

    def add_task(self, convoy_id: str, task_id: str) -> OperationResult:
        """Attach an existing task to a convoy.

        A task belongs to at most one convoy; one owned elsewhere is rejected
        until it is removed from that convoy.

        Raises:
            ConvoyNotFoundError: If the convoy does not exist
            TaskNotFoundError: If the task does not exist
        """
        self._require(convoy_id)
        task = self.tasks.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task '{task_id}' not found")

        with self.context.convoy_locks.get(convoy_id):
            convoy = self.context.convoys.load(convoy_id)
            if convoy is None:
                raise ConvoyNotFoundError(f"Convoy '{convoy_id}' not found")
            if convoy.is_terminal:
                message = f"Cannot add tasks to {convoy.status.value} convoy {convoy_id}"
                logger.warning(message)
                return OperationResult.rejected(convoy_id, convoy.status, message)
            if self._owner_elsewhere(task, convoy_id):
                message = f"Task {task_id} already belongs to convoy {task.convoy_id}"
                logger.warning(message)
                return OperationResult.rejected(convoy_id, convoy.status, message)
            if task_id not in convoy.task_ids:
                convoy.task_ids.append(task_id)
                error = self._save(convoy)
                if error is not None:
                    return OperationResult.failed(convoy_id, error, convoy.status)

        self.tasks.set_task_convoy(task_id, convoy_id)
        status = self.refresh_convoy_status(convoy_id)
        logger.info(f"Added task {task_id} to convoy {convoy_id}")
        return OperationResult.ok(convoy_id, status, f"Added task {task_id}")

    def remove_task(self, convoy_id: str, task_id: str) -> OperationResult:
        self._require(convoy_id)

        with self.context.convoy_locks.get(convoy_id):
            convoy = self.context.convoys.load(convoy_id)
            if convoy is None:
                raise ConvoyNotFoundError(f"Convoy '{convoy_id}' not found")
            if task_id not in convoy.task_ids:
                return OperationResult.failed(convoy_id, f"Task {task_id} is not in convoy {convoy_id}", convoy.status)
            convoy.task_ids.remove(task_id)
            error = self._save(convoy)
            if error is not None:
                return OperationResult.failed(convoy_id, error, convoy.status)

        task = self.tasks.get_task(task_id)
        if task is not None and task.convoy_id == convoy_id:
            self.tasks.set_task_convoy(task_id, None)
        logger.info(f"Removed task {task_id} from convoy {convoy_id}")
        return OperationResult.ok(convoy_id, convoy.status, f"Removed task {task_id}")

    def add_dependency(self, convoy_id: str, depends_on_convoy_id: str) -> OperationResult:
        """Make a convoy wait for another convoy.

        Raises:
            InvalidArgumentError: If the convoy would depend on itself
            ConvoyNotFoundError: If either convoy does not exist
        """
        if convoy_id == depends_on_convoy_id:
            raise InvalidArgumentError(f"Convoy {convoy_id} cannot depend on itself")
        self._require(convoy_id)
        try:
            self._require(depends_on_convoy_id)
        except ConvoyNotFoundError as e:
            raise ConvoyNotFoundError(f"Dependency convoy '{depends_on_convoy_id}' not found") from e
        satisfied = self.dependencies_satisfied([depends_on_convoy_id])

        with self.context.convoy_locks.get(convoy_id):
            convoy = self.context.convoys.load(convoy_id)
            if convoy is None:
                raise ConvoyNotFoundError(f"Convoy '{convoy_id}' not found")
            if depends_on_convoy_id not in convoy.dependencies:
                convoy.dependencies.append(depends_on_convoy_id)
                if not satisfied and convoy.status == ConvoyStatus.PENDING:
                    convoy.status = ConvoyStatus.BLOCKED
                error = self._save(convoy)
                if error is not None:
                    return OperationResult.failed(convoy_id, error)

        logger.info(f"Convoy {convoy_id} now depends on {depends_on_convoy_id}")
        return OperationResult.ok(convoy_id, convoy.status, f"Added dependency {depends_on_convoy_id}")

    def remove_dependency(self, convoy_id: str, depends_on_convoy_id: str) -> OperationResult:
        self._require(convoy_id)

        with self.context.convoy_locks.get(convoy_id):
            convoy = self._with_progress(self.context.convoys.load(convoy_id))
            if convoy is None:
                raise ConvoyNotFoundError(f"Convoy '{convoy_id}' not found")
            if depends_on_convoy_id in convoy.dependencies:
                convoy.dependencies.remove(depends_on_convoy_id)
                self._refresh_status(convoy, self.context.now())
                error = self._save(convoy)
                if error is not None:
                    return OperationResult.failed(convoy_id, error)

        logger.info(f"Removed dependency {depends_on_convoy_id} from convoy {convoy_id}")
        return OperationResult.ok(convoy_id, convoy.status, f"Removed dependency {depends_on_convoy_id}")

    def get_tasks_summary(self, convoy_id: str) -> ConvoyTasksSummary:
        """Group a convoy's member tasks by status.

        Raises:
            ConvoyNotFoundError: If the convoy does not exist
        """
        convoy = self._require(convoy_id)
        summary = ConvoyTasksSummary(convoy_id=convoy_id, convoy_name=convoy.name)
        for task in self._member_tasks(convoy):
            getattr(summary, _SUMMARY_FIELDS[task.status]).append(task)
        return summary
