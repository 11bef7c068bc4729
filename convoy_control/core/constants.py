"""Constants used throughout the Convoy Control application."""

from datetime import timedelta
from decimal import Decimal


# Environment variables
HOOKS_PATH_ENV = "HOOKS_PATH"
PROJECT_ROOT_ENV = "CONVOY_PROJECT_ROOT"
MAX_ITERATIONS_ENV = "CONVOY_MAX_ITERATIONS"
HOURLY_BUDGET_ENV = "CONVOY_HOURLY_BUDGET"
MAX_PARALLEL_AGENTS_ENV = "CONVOY_MAX_PARALLEL_AGENTS"
AGENT_TTL_ENV = "CONVOY_AGENT_TTL_MINUTES"
LOG_LEVEL_ENV = "CONVOY_LOG_LEVEL"

DEFAULT_HOOKS_PATH = "./hooks"

# Store layout under the hooks root
TASKS_DIR_NAME = "tasks"
CONVOYS_DIR_NAME = "convoys"
ORCHESTRATION_DIR_NAME = "orchestration"
REVIEWS_DIR_NAME = "reviews"
BUDGET_FILE_NAME = "budget.json"
SAFETY_STATE_FILE_NAME = "safety-state.json"
ROLLBACK_LOG_FILE_NAME = "rollback-log.json"
APPROVALS_FILE_NAME = "pending-approval.json"
TEMP_SUFFIX = ".tmp"

# Sequential ids
TASK_ID_PREFIX = "task"
CONVOY_ID_PREFIX = "convoy"
ID_NUMBER_WIDTH = 3

# Safety limits
MAX_ITERATIONS_PER_TASK = 50
MAX_API_COST_PER_HOUR = Decimal("10.00")
MAX_PARALLEL_AGENTS = 5

BUDGET_WINDOW = timedelta(hours=1)
COST_RETENTION = timedelta(hours=24)
APPROVAL_EXPIRY = timedelta(hours=24)
ROLLBACK_LOG_LIMIT = 100

# Task defaults
DEFAULT_PRIORITY = 1
DEFAULT_ESTIMATED_MINUTES = 15
