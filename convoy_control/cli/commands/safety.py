"""Safety command group for Convoy Control."""

from decimal import Decimal, InvalidOperation

import click
from rich.console import Console
from rich.table import Table

from ..helpers import fail, get_engines, print_table
from ...models.safety import ApprovalCategory, ApprovalState
from ...services.exceptions import ServiceError

CATEGORY_CHOICES = [category.value for category in ApprovalCategory]


def _yes_no(ok: bool) -> str:
    return click.style("OK", fg='green') if ok else click.style("LIMIT", fg='red')


@click.group()
def safety():
    """Inspect and control safety limits"""
    pass


@safety.command('limits')
@click.option('--task', 'task_id', help='Include the iteration guard for this task')
@click.option('--cost', default='0', show_default=True, help='Estimated cost of the next operation')
@click.pass_context
def limits(ctx, task_id, cost):
    """Show every guard at a glance"""
    engines = get_engines(ctx)
    try:
        report = engines.safety.check_limits(task_id, Decimal(cost))
    except InvalidOperation:
        fail(f"Invalid cost: {cost}")
    except ServiceError as e:
        fail(str(e))

    rows = [
        ["Budget", _yes_no(report.budget_ok),
         f"${report.remaining_budget:.2f} remaining" + (" (paused)" if report.budget_paused else "")],
        ["Agents", _yes_no(report.agents_ok), f"{report.active_agents}/{report.max_parallel_agents} active"],
    ]
    if report.iteration is not None:
        rows.append([
            "Iterations", _yes_no(report.iteration_ok),
            f"{report.iteration.current_iteration}/{report.iteration.max_iterations} for {report.iteration.task_id}",
        ])
    rows.append(["Approvals", "", f"{report.pending_approvals} pending"])
    print_table(["GUARD", "STATE", "DETAIL"], rows)

    if not report.all_clear:
        ctx.exit(2)


@safety.command('budget')
@click.pass_context
def budget(ctx):
    """Show the hourly budget ledger"""
    engines = get_engines(ctx)
    info = engines.safety.get_budget_status()

    click.echo(f"Spent this hour: ${info.spent_this_hour:.4f} / ${info.hourly_limit:.2f}")
    click.echo(f"Remaining: ${info.remaining_budget:.4f}")
    click.echo(f"Window: {info.hour_window_start.strftime('%H:%M:%S')} - {info.hour_window_end.strftime('%H:%M:%S')}")
    click.echo(f"Total spent: ${info.total_spent:.4f}")
    if info.is_paused:
        click.echo(click.style(f"PAUSED: {info.pause_reason}", fg='red'))

    if info.recent_costs:
        rows = [
            [entry.timestamp.strftime('%Y-%m-%d %H:%M:%S'), f"${entry.amount:.4f}",
             entry.description, entry.task_id or ""]
            for entry in info.recent_costs[-10:]
        ]
        click.echo("")
        print_table(["TIME", "AMOUNT", "DESCRIPTION", "TASK"], rows)


@safety.command('record-cost')
@click.argument('amount')
@click.argument('description')
@click.option('--task', 'task_id', help='Task that incurred the cost')
@click.option('--agent', 'agent_id', help='Agent that incurred the cost')
@click.pass_context
def record_cost(ctx, amount, description, task_id, agent_id):
    """Record an API spend"""
    engines = get_engines(ctx)
    try:
        info = engines.safety.record_cost(Decimal(amount), description, task_id=task_id, agent_id=agent_id)
    except InvalidOperation:
        fail(f"Invalid amount: {amount}")
    except ServiceError as e:
        fail(str(e))

    click.echo(f"Recorded ${Decimal(amount):.4f}. Spent this hour: ${info.spent_this_hour:.4f}/${info.hourly_limit:.2f}")
    if info.is_paused:
        click.echo(click.style(f"⚠️  {info.pause_reason}", fg='red'), err=True)


@safety.command('agents')
@click.pass_context
def agents(ctx):
    """List registered agents"""
    console = Console()
    engines = get_engines(ctx)
    active = engines.safety.list_active_agents()
    limit = engines.context.settings.max_parallel_agents

    if not active:
        console.print(f"[yellow]No active agents (limit {limit}).[/yellow]")
        return

    table = Table(title=f"Active Agents ({len(active)}/{limit})")
    table.add_column("Agent", style="cyan", no_wrap=True)
    table.add_column("Type", style="green")
    table.add_column("Task", style="white")
    table.add_column("Started", style="white")
    for agent in active:
        table.add_row(
            agent.agent_id,
            agent.agent_type or "",
            agent.task_id or "",
            agent.started_at.strftime('%Y-%m-%d %H:%M:%S'),
        )
    console.print(table)


@safety.command('register-agent')
@click.argument('agent_id')
@click.option('--type', 'agent_type', help='Agent type, e.g. script_polecat')
@click.option('--task', 'task_id', help='Task the agent is working on')
@click.pass_context
def register_agent(ctx, agent_id, agent_type, task_id):
    """Register a running agent"""
    engines = get_engines(ctx)
    if not engines.safety.check_parallel_agents():
        click.echo("⚠️  Parallel agent limit already reached", err=True)
    try:
        engines.safety.register_agent(agent_id, agent_type, task_id)
    except ServiceError as e:
        fail(str(e))
    click.echo(f"✅ Registered {agent_id} ({engines.safety.get_active_agent_count()} active)")


@safety.command('unregister-agent')
@click.argument('agent_id')
@click.pass_context
def unregister_agent(ctx, agent_id):
    """Unregister an agent that has finished"""
    engines = get_engines(ctx)
    if not engines.safety.unregister_agent(agent_id):
        fail(f"Agent {agent_id} is not registered")
    click.echo(f"✅ Unregistered {agent_id}")


@safety.command('approvals')
@click.pass_context
def approvals(ctx):
    """List pending approval requests"""
    console = Console()
    engines = get_engines(ctx)
    pending = engines.safety.list_pending_approvals()

    if not pending:
        console.print("[green]No pending approvals.[/green]")
        return

    table = Table(title="Pending Approvals")
    table.add_column("Request", style="cyan", no_wrap=True)
    table.add_column("Category", style="green")
    table.add_column("Priority", justify="right")
    table.add_column("Task", style="white")
    table.add_column("Reason", style="white")
    table.add_column("Created", style="white")
    for request in pending:
        table.add_row(
            request.request_id,
            request.category.value,
            str(request.priority),
            request.task_id or "",
            request.reason,
            request.created_at.strftime('%Y-%m-%d %H:%M:%S'),
        )
    console.print(table)


@safety.command('request-approval')
@click.argument('reason')
@click.option('--category', type=click.Choice(CATEGORY_CHOICES), help='Defaults to a guess from the reason')
@click.option('--task', 'task_id', help='Task the request concerns')
@click.option('--agent', 'agent_id', help='Agent raising the request')
@click.option('--priority', type=int, default=1, show_default=True)
@click.pass_context
def request_approval(ctx, reason, category, task_id, agent_id, priority):
    """Ask a human to approve a paused operation"""
    engines = get_engines(ctx)
    try:
        request = engines.safety.request_human_approval(
            reason, category=category, task_id=task_id, agent_id=agent_id, priority=priority
        )
    except ServiceError as e:
        fail(str(e))
    click.echo(f"✅ Created {request.request_id} ({request.category.value})")


@safety.command('resolve-approval')
@click.argument('request_id')
@click.option('--approve/--reject', default=True, help='Approve (default) or reject the request')
@click.option('--notes', help='Reviewer notes')
@click.pass_context
def resolve_approval(ctx, request_id, approve, notes):
    """Approve or reject a pending request"""
    engines = get_engines(ctx)
    status = engines.safety.resolve_approval(request_id, approve, notes)
    if status.status == ApprovalState.NOT_FOUND:
        fail(f"Approval request {request_id} not found")
    if status.status not in (ApprovalState.APPROVED, ApprovalState.REJECTED) or status.is_approved != approve:
        fail(f"Approval request {request_id} is {status.status.value}")
    click.echo(f"✅ {request_id} {status.status.value}")


@safety.command('rollback')
@click.argument('reason')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def rollback(ctx, reason, yes):
    """Hard-reset the project repository by one commit"""
    engines = get_engines(ctx)
    if not yes:
        click.confirm("This discards the last commit and all uncommitted changes. Continue?", abort=True)

    result = engines.safety.trigger_rollback(reason)
    if not result.success:
        fail(f"Rollback failed: {result.error_message}")

    click.echo(f"✅ Rolled back {result.rolled_back_from_commit[:7]} -> {result.rolled_back_to_commit[:7]}")
    for path in result.affected_files:
        click.echo(f"   {path}")


@safety.command('iterations')
@click.argument('task_id')
@click.option('--reset', is_flag=True, help='Reset the counter to zero')
@click.pass_context
def iterations(ctx, task_id, reset):
    """Show or reset a task's iteration counter"""
    engines = get_engines(ctx)
    if reset:
        if not engines.safety.reset_iterations(task_id):
            fail(f"No iterations recorded for {task_id}")
        click.echo(f"✅ Reset iterations for {task_id}")
        return

    info = engines.safety.get_iteration_info(task_id)
    click.echo(f"{task_id}: {info.current_iteration}/{info.max_iterations} ({info.remaining_iterations} remaining)")
    if info.limit_reached:
        click.echo(click.style("Iteration limit reached", fg='red'))
