"""CLI Helper Functions for Convoy Control.

Shared plumbing for the command groups:
- Building the orchestration context and engines from the CLI settings
- Reporting engine results and errors with consistent exit codes
- Table formatting for tasks and convoys
"""

import sys
from dataclasses import dataclass
from typing import Any, List, Optional

import click
from tabulate import tabulate

from convoy_control.core.config import OrchestrationSettings
from convoy_control.core.context import OrchestrationContext
from convoy_control.core.convoy_engine import ConvoyEngine
from convoy_control.core.safety_control import SafetyControlEngine
from convoy_control.core.task_engine import TaskEngine
from convoy_control.models.convoy import ConvoyInfo, ConvoyStatus
from convoy_control.models.result import OperationResult
from convoy_control.models.task import TaskInfo, TaskStatus


@dataclass
class Engines:
    """Engines wired to one orchestration context."""

    context: OrchestrationContext
    tasks: TaskEngine
    convoys: ConvoyEngine
    safety: SafetyControlEngine


def get_engines(ctx: click.Context) -> Engines:
    """Build the engines for the settings stored on the root command.

    Args:
        ctx: Click context whose ``obj`` holds OrchestrationSettings

    Returns:
        Engines instance
    """
    settings = ctx.find_root().obj
    if not isinstance(settings, OrchestrationSettings):
        settings = OrchestrationSettings.from_env()
    context = OrchestrationContext(settings)
    ctx.call_on_close(context.close)
    tasks = TaskEngine(context)
    return Engines(
        context=context,
        tasks=tasks,
        convoys=ConvoyEngine(context, tasks),
        safety=SafetyControlEngine(context),
    )


def fail(message: str) -> None:
    """Print an error and exit with status 1."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def report_result(result: OperationResult) -> None:
    """Echo an engine result; exit with status 1 if it did not succeed."""
    if result.success:
        click.echo(f"✅ {result.message}")
        return
    if result.invalid_transition:
        click.echo(f"⚠️  Rejected: {result.message}", err=True)
    else:
        click.echo(f"❌ {result.message}", err=True)
    sys.exit(1)


TASK_STATUS_COLORS = {
    TaskStatus.PENDING: 'white',
    TaskStatus.BLOCKED: 'magenta',
    TaskStatus.ASSIGNED: 'cyan',
    TaskStatus.IN_PROGRESS: 'yellow',
    TaskStatus.COMPLETED: 'green',
    TaskStatus.FAILED: 'red',
    TaskStatus.CANCELLED: 'bright_black',
}

CONVOY_STATUS_COLORS = {
    ConvoyStatus.PENDING: 'white',
    ConvoyStatus.BLOCKED: 'magenta',
    ConvoyStatus.IN_PROGRESS: 'yellow',
    ConvoyStatus.COMPLETED: 'green',
    ConvoyStatus.FAILED: 'red',
    ConvoyStatus.CANCELLED: 'bright_black',
}


def _truncate(text: Optional[str], max_length: int) -> str:
    line = (text or "").split('\n')[0]
    if len(line) > max_length:
        line = line[:max_length - 3] + "..."
    return line


def format_task_table(tasks: List[TaskInfo],
                      headers: Optional[List[str]] = None,
                      max_name_length: int = 40) -> str:
    """Format tasks as a table with consistent styling.

    Args:
        tasks: List of tasks to display
        headers: Optional custom headers (defaults to standard headers)
        max_name_length: Maximum name length before truncation

    Returns:
        Formatted table string
    """
    if headers is None:
        headers = ["ID", "STATUS", "NAME", "AGENT", "PRIORITY", "ITER", "CONVOY", "CREATED"]

    table_data = []
    for task_item in tasks:
        status_display = click.style(
            task_item.status.value.upper(),
            fg=TASK_STATUS_COLORS.get(task_item.status, 'white')
        )
        table_data.append([
            task_item.id,
            status_display,
            _truncate(task_item.name, max_name_length),
            task_item.assigned_agent.value if task_item.assigned_agent else "",
            task_item.priority,
            f"{task_item.iteration_count}/{task_item.max_iterations}",
            task_item.convoy_id or "",
            task_item.created_at.strftime("%Y-%m-%d %H:%M"),
        ])

    return tabulate(table_data, headers=headers, tablefmt="simple")


def format_convoy_table(convoys: List[ConvoyInfo],
                        headers: Optional[List[str]] = None,
                        max_name_length: int = 40) -> str:
    """Format convoys as a table, including derived progress."""
    if headers is None:
        headers = ["ID", "STATUS", "NAME", "PRIORITY", "PROGRESS", "DEPENDS ON", "CREATED"]

    table_data = []
    for convoy_item in convoys:
        progress = convoy_item.progress
        status_display = click.style(
            convoy_item.status.value.upper(),
            fg=CONVOY_STATUS_COLORS.get(convoy_item.status, 'white')
        )
        table_data.append([
            convoy_item.id,
            status_display,
            _truncate(convoy_item.name, max_name_length),
            convoy_item.priority,
            f"{progress.completed_tasks}/{progress.total_tasks} ({progress.percent_complete}%)",
            ", ".join(convoy_item.dependencies),
            convoy_item.created_at.strftime("%Y-%m-%d %H:%M"),
        ])

    return tabulate(table_data, headers=headers, tablefmt="simple")


def print_table(headers: List[str], rows: List[List[Any]],
                tablefmt: str = "simple") -> None:
    """Print a table with project-wide defaults."""
    click.echo(tabulate(rows, headers=headers, tablefmt=tablefmt))


__all__ = [
    'Engines',
    'get_engines',
    'fail',
    'report_result',
    'format_task_table',
    'format_convoy_table',
    'print_table',
]
