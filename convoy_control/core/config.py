"""Runtime settings for the orchestration core."""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Mapping, Optional

from .constants import (
    AGENT_TTL_ENV,
    APPROVAL_EXPIRY,
    CONVOYS_DIR_NAME,
    DEFAULT_HOOKS_PATH,
    HOOKS_PATH_ENV,
    HOURLY_BUDGET_ENV,
    MAX_API_COST_PER_HOUR,
    MAX_ITERATIONS_ENV,
    MAX_ITERATIONS_PER_TASK,
    MAX_PARALLEL_AGENTS,
    MAX_PARALLEL_AGENTS_ENV,
    ORCHESTRATION_DIR_NAME,
    PROJECT_ROOT_ENV,
    REVIEWS_DIR_NAME,
    ROLLBACK_LOG_LIMIT,
    TASKS_DIR_NAME,
)

logger = logging.getLogger(__name__)


@dataclass
class OrchestrationSettings:
    """Where state lives and which limits apply."""

    project_root: Path = field(default_factory=Path.cwd)
    hooks_path: str = DEFAULT_HOOKS_PATH
    max_iterations_per_task: int = MAX_ITERATIONS_PER_TASK
    hourly_budget: Decimal = MAX_API_COST_PER_HOUR
    max_parallel_agents: int = MAX_PARALLEL_AGENTS
    approval_expiry: timedelta = APPROVAL_EXPIRY
    rollback_log_limit: int = ROLLBACK_LOG_LIMIT
    # None keeps agent registrations until they unregister
    agent_ttl: Optional[timedelta] = None

    @property
    def hooks_root(self) -> Path:
        """Hooks directory resolved against the project root."""
        hooks_path = self.hooks_path
        if hooks_path.startswith("./"):
            hooks_path = hooks_path[2:]
        path = Path(hooks_path).expanduser()
        if path.is_absolute():
            return path
        return Path(self.project_root) / path

    @property
    def tasks_dir(self) -> Path:
        return self.hooks_root / TASKS_DIR_NAME

    @property
    def convoys_dir(self) -> Path:
        return self.hooks_root / CONVOYS_DIR_NAME

    @property
    def orchestration_dir(self) -> Path:
        return self.hooks_root / ORCHESTRATION_DIR_NAME

    @property
    def reviews_dir(self) -> Path:
        return self.hooks_root / REVIEWS_DIR_NAME

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'OrchestrationSettings':
        """Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            **overrides: Values that win over the environment

        Returns:
            OrchestrationSettings instance
        """
        env = os.environ if environ is None else environ
        values = {
            'hooks_path': env.get(HOOKS_PATH_ENV, DEFAULT_HOOKS_PATH) or DEFAULT_HOOKS_PATH,
            'max_iterations_per_task': _int_from(env, MAX_ITERATIONS_ENV, MAX_ITERATIONS_PER_TASK),
            'hourly_budget': _decimal_from(env, HOURLY_BUDGET_ENV, MAX_API_COST_PER_HOUR),
            'max_parallel_agents': _int_from(env, MAX_PARALLEL_AGENTS_ENV, MAX_PARALLEL_AGENTS),
        }
        if env.get(PROJECT_ROOT_ENV):
            values['project_root'] = Path(env[PROJECT_ROOT_ENV])

        ttl_minutes = _int_from(env, AGENT_TTL_ENV, 0)
        if ttl_minutes > 0:
            values['agent_ttl'] = timedelta(minutes=ttl_minutes)

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


def _int_from(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring {key}={raw!r}: not an integer")
        return default


def _decimal_from(env: Mapping[str, str], key: str, default: Decimal) -> Decimal:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return Decimal(raw)
    except InvalidOperation:
        logger.warning(f"Ignoring {key}={raw!r}: not a number")
        return default
