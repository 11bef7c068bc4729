"""Convoy command group for Convoy Control."""

import click

from ..helpers import fail, format_convoy_table, format_task_table, get_engines, report_result
from ...models.convoy import ConvoyConfig, ConvoyStatus, ConvoyStatusFilter
from ...models.task import TaskConfig
from ...services.exceptions import ServiceError

STATUS_CHOICES = [status.value for status in ConvoyStatus]


@click.group()
def convoy():
    """Group tasks into convoys"""
    pass


@convoy.command('create')
@click.argument('name')
@click.option('--description', '-d', help='What the convoy delivers')
@click.option('--iteration', help='Iteration tag, stamped on new member tasks')
@click.option('--depends-on', 'dependencies', multiple=True, help='Convoy id this convoy waits for (repeatable)')
@click.option('--task', 'task_ids', multiple=True, help='Existing task id to include (repeatable)')
@click.option('--new-task', 'new_tasks', multiple=True, help='Name of a task to create in the convoy (repeatable)')
@click.option('--priority', type=int, default=1, show_default=True)
@click.pass_context
def create_convoy(ctx, name, description, iteration, dependencies, task_ids, new_tasks, priority):
    """Create a convoy, optionally creating its tasks"""
    engines = get_engines(ctx)
    config = ConvoyConfig(
        name=name,
        description=description,
        iteration=iteration,
        dependencies=list(dependencies),
        task_ids=list(task_ids),
        priority=priority,
    )
    task_configs = [TaskConfig(name=task_name, priority=priority) for task_name in new_tasks]
    try:
        created = engines.convoys.create_convoy(config, task_configs)
    except ServiceError as e:
        fail(str(e))

    click.echo(f"✅ Created convoy {created.id} ({created.status.value}) with {len(created.task_ids)} tasks")
    for task_id in created.task_ids:
        click.echo(f"   - {task_id}")


@convoy.command('show')
@click.argument('convoy_id')
@click.pass_context
def show_convoy(ctx, convoy_id):
    """Show a convoy and its progress"""
    engines = get_engines(ctx)
    info = engines.convoys.get_convoy(convoy_id)
    if info is None:
        fail(f"No convoy found with ID: {convoy_id}")

    progress = info.progress
    click.echo("\n" + "=" * 80)
    click.echo(f"Convoy Details: {info.id}")
    click.echo("=" * 80)
    click.echo(f"   Name: {info.name}")
    click.echo(f"   Status: {click.style(info.status.value.upper(), fg='yellow')}")
    click.echo(f"   Priority: {info.priority}")
    if info.iteration:
        click.echo(f"   Iteration tag: {info.iteration}")
    if info.dependencies:
        click.echo(f"   Depends on: {', '.join(info.dependencies)}")
    click.echo(f"   Created: {info.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if info.completed_at:
        click.echo(f"   Finished: {info.completed_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if info.error_message:
        click.echo(f"   Error: {info.error_message}")

    click.echo("\n📊 Progress:")
    click.echo(f"   {progress.completed_tasks}/{progress.total_tasks} complete ({progress.percent_complete}%)")
    click.echo(
        f"   pending {progress.pending_tasks}, blocked {progress.blocked_tasks}, "
        f"assigned {progress.assigned_tasks}, in progress {progress.in_progress_tasks}, "
        f"failed {progress.failed_tasks}, cancelled {progress.cancelled_tasks}"
    )


@convoy.command('list')
@click.option('--status', type=click.Choice(STATUS_CHOICES), help='Filter by convoy status')
@click.option('--iteration', help='Filter by iteration tag')
@click.option('--all', 'include_completed', is_flag=True, help='Include completed and cancelled convoys')
@click.option('--limit', type=int, help='Show at most this many convoys')
@click.pass_context
def list_convoys(ctx, status, iteration, include_completed, limit):
    """List convoys by priority"""
    engines = get_engines(ctx)
    status_filter = ConvoyStatusFilter(
        status=ConvoyStatus(status) if status else None,
        iteration=iteration,
        include_completed=include_completed,
        limit=limit,
    )
    convoys = engines.convoys.list_convoys(status_filter)
    if not convoys:
        click.echo("No convoys found")
        return
    click.echo(format_convoy_table(convoys))


@convoy.command('add-task')
@click.argument('convoy_id')
@click.argument('task_id')
@click.pass_context
def add_task(ctx, convoy_id, task_id):
    """Add an existing task to a convoy"""
    engines = get_engines(ctx)
    try:
        result = engines.convoys.add_task(convoy_id, task_id)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@convoy.command('remove-task')
@click.argument('convoy_id')
@click.argument('task_id')
@click.pass_context
def remove_task(ctx, convoy_id, task_id):
    """Remove a task from a convoy"""
    engines = get_engines(ctx)
    try:
        result = engines.convoys.remove_task(convoy_id, task_id)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@convoy.command('add-dependency')
@click.argument('convoy_id')
@click.argument('depends_on')
@click.pass_context
def add_dependency(ctx, convoy_id, depends_on):
    """Make a convoy wait for another convoy"""
    engines = get_engines(ctx)
    try:
        result = engines.convoys.add_dependency(convoy_id, depends_on)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@convoy.command('complete')
@click.argument('convoy_id')
@click.pass_context
def complete_convoy(ctx, convoy_id):
    """Complete a convoy whose tasks are all done"""
    engines = get_engines(ctx)
    try:
        result = engines.convoys.complete_convoy(convoy_id)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@convoy.command('fail')
@click.argument('convoy_id')
@click.argument('reason')
@click.pass_context
def fail_convoy(ctx, convoy_id, reason):
    """Mark an in-progress convoy as failed"""
    engines = get_engines(ctx)
    try:
        result = engines.convoys.fail_convoy(convoy_id, reason)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@convoy.command('next')
@click.option('--iteration', help='Only consider convoys with this iteration tag')
@click.pass_context
def next_convoy(ctx, iteration):
    """Show the next convoy ready to start"""
    engines = get_engines(ctx)
    ready = engines.convoys.get_next_ready_convoy(iteration)
    if ready is None:
        click.echo("No ready convoys")
        return
    click.echo(format_convoy_table([ready]))


@convoy.command('tasks')
@click.argument('convoy_id')
@click.pass_context
def convoy_tasks(ctx, convoy_id):
    """List a convoy's tasks grouped by status"""
    engines = get_engines(ctx)
    try:
        summary = engines.convoys.get_tasks_summary(convoy_id)
    except ServiceError as e:
        fail(str(e))

    click.echo(f"\n📦 {summary.convoy_id}: {summary.convoy_name}")
    groups = [
        ("In progress", summary.in_progress),
        ("Assigned", summary.assigned),
        ("Pending", summary.pending),
        ("Blocked", summary.blocked),
        ("Failed", summary.failed),
        ("Completed", summary.completed),
        ("Cancelled", summary.cancelled),
    ]
    for label, tasks in groups:
        if tasks:
            click.echo(f"\n{label} ({len(tasks)}):")
            click.echo(format_task_table(tasks))
