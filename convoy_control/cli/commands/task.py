"""Task command group for Convoy Control."""

import click

from ..helpers import fail, format_task_table, get_engines, report_result
from ...models.task import AgentType, TaskCompletionResult, TaskConfig, TaskStatus, TaskStatusFilter
from ...services.exceptions import ServiceError

STATUS_CHOICES = [status.value for status in TaskStatus]
AGENT_CHOICES = [agent.value for agent in AgentType if agent != AgentType.MAYOR]


@click.group()
def task():
    """Create and progress tasks"""
    pass


@task.command('create')
@click.argument('name')
@click.option('--description', '-d', help='What the task should accomplish')
@click.option('--iteration', help='Iteration tag, e.g. Iteration1')
@click.option('--depends-on', 'dependencies', multiple=True, help='Task id this task waits for (repeatable)')
@click.option('--priority', type=int, default=1, show_default=True, help='0=low, 1=normal, 2=high, 3=critical')
@click.option('--deliverable', help='Expected output')
@click.option('--criterion', 'criteria', multiple=True, help='Success criterion (repeatable)')
@click.option('--estimated-minutes', type=int, default=15, show_default=True)
@click.option('--max-iterations', type=int, default=50, show_default=True)
@click.option('--convoy', 'convoy_id', help='Add the new task to this convoy')
@click.pass_context
def create_task(ctx, name, description, iteration, dependencies, priority, deliverable,
                criteria, estimated_minutes, max_iterations, convoy_id):
    """Create a new task"""
    engines = get_engines(ctx)
    config = TaskConfig(
        name=name,
        description=description,
        iteration=iteration,
        dependencies=list(dependencies),
        priority=priority,
        deliverable=deliverable,
        success_criteria=list(criteria),
        estimated_minutes=estimated_minutes,
        max_iterations=max_iterations,
    )
    if convoy_id:
        convoy = engines.convoys.get_convoy(convoy_id)
        if convoy is None:
            fail(f"No convoy found with ID: {convoy_id}")
        if convoy.is_terminal:
            fail(f"Cannot add tasks to {convoy.status.value} convoy {convoy_id}")

    try:
        created = engines.tasks.create_task(config)
        if convoy_id:
            result = engines.convoys.add_task(convoy_id, created.id)
            if not result.success:
                fail(result.message)
    except ServiceError as e:
        fail(str(e))

    click.echo(f"✅ Created task {created.id} ({created.status.value})")
    if created.status == TaskStatus.BLOCKED:
        click.echo(f"   Waiting on: {', '.join(created.dependencies)}")


@task.command('show')
@click.argument('task_id')
@click.option('--history', 'show_history', is_flag=True, help='Show status history')
@click.pass_context
def show_task(ctx, task_id, show_history):
    """Show detailed information about a task"""
    engines = get_engines(ctx)
    info = engines.tasks.get_task(task_id)
    if info is None:
        fail(f"No task found with ID: {task_id}")

    click.echo("\n" + "=" * 80)
    click.echo(f"Task Details: {info.id}")
    click.echo("=" * 80)
    click.echo(f"   Name: {info.name}")
    click.echo(f"   Status: {click.style(info.status.value.upper(), fg='yellow')}")
    click.echo(f"   Priority: {info.priority}")
    click.echo(f"   Iterations: {info.iteration_count}/{info.max_iterations}")
    if info.iteration:
        click.echo(f"   Iteration tag: {info.iteration}")
    if info.convoy_id:
        click.echo(f"   Convoy: {info.convoy_id}")
    if info.assigned_agent:
        click.echo(f"   Agent: {info.assigned_agent.value}")
    if info.dependencies:
        click.echo(f"   Depends on: {', '.join(info.dependencies)}")
    click.echo(f"   Created: {info.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if info.started_at:
        click.echo(f"   Started: {info.started_at.strftime('%Y-%m-%d %H:%M:%S')}")
    if info.completed_at:
        click.echo(f"   Finished: {info.completed_at.strftime('%Y-%m-%d %H:%M:%S')}")

    if info.description:
        click.echo("\n📄 Description:")
        for line in info.description.split('\n'):
            click.echo(f"   {line}")

    if info.error_message:
        click.echo("\n❌ Error:")
        click.echo(f"   {info.error_message}")

    if info.result and info.result.summary:
        click.echo("\n📝 Result:")
        click.echo(f"   {info.result.summary}")

    if show_history and info.history:
        click.echo("\n🕘 History:")
        for entry in info.history:
            source = entry.from_status.value if entry.from_status else "-"
            click.echo(
                f"   {entry.timestamp.strftime('%Y-%m-%d %H:%M:%S')} "
                f"{source} -> {entry.to_status.value}: {entry.message or ''}"
            )


@task.command('list')
@click.option('--status', type=click.Choice(STATUS_CHOICES), help='Filter by task status')
@click.option('--agent', type=click.Choice(AGENT_CHOICES), help='Filter by assigned agent')
@click.option('--convoy', 'convoy_id', help='Filter by convoy id')
@click.option('--iteration', help='Filter by iteration tag')
@click.option('--all', 'include_completed', is_flag=True, help='Include completed and cancelled tasks')
@click.option('--limit', type=int, help='Show at most this many tasks')
@click.pass_context
def list_tasks(ctx, status, agent, convoy_id, iteration, include_completed, limit):
    """List tasks by priority"""
    engines = get_engines(ctx)
    status_filter = TaskStatusFilter(
        status=TaskStatus(status) if status else None,
        agent_type=AgentType(agent) if agent else None,
        convoy_id=convoy_id,
        iteration=iteration,
        include_completed=include_completed,
        limit=limit,
    )
    tasks = engines.tasks.list_tasks(status_filter)
    if not tasks:
        click.echo("No tasks found")
        return
    click.echo(format_task_table(tasks))


@task.command('assign')
@click.argument('task_id')
@click.argument('agent')
@click.pass_context
def assign_task(ctx, task_id, agent):
    """Assign a pending task to an agent type"""
    engines = get_engines(ctx)
    try:
        result = engines.tasks.assign_task(task_id, agent)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@task.command('start')
@click.argument('task_id')
@click.pass_context
def start_task(ctx, task_id):
    """Mark an assigned task as in progress"""
    engines = get_engines(ctx)
    try:
        result = engines.tasks.start_task(task_id)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@task.command('complete')
@click.argument('task_id')
@click.option('--summary', '-s', help='What was done')
@click.option('--created', 'files_created', multiple=True, help='File created (repeatable)')
@click.option('--modified', 'files_modified', multiple=True, help='File modified (repeatable)')
@click.pass_context
def complete_task(ctx, task_id, summary, files_created, files_modified):
    """Mark an in-progress task as completed"""
    engines = get_engines(ctx)
    completion = TaskCompletionResult(
        summary=summary,
        files_created=list(files_created),
        files_modified=list(files_modified),
    )
    try:
        result = engines.tasks.complete_task(task_id, completion)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@task.command('fail')
@click.argument('task_id')
@click.argument('reason')
@click.pass_context
def fail_task(ctx, task_id, reason):
    """Mark an in-progress task as failed"""
    engines = get_engines(ctx)
    try:
        result = engines.tasks.fail_task(task_id, reason)
    except ServiceError as e:
        fail(str(e))
    report_result(result)
    info = engines.context.iterations.get(task_id)
    if info.limit_reached:
        click.echo(f"⚠️  Iteration limit reached ({info.max_iterations}). Escalation required.", err=True)


@task.command('cancel')
@click.argument('task_id')
@click.option('--reason', help='Why the task is cancelled')
@click.pass_context
def cancel_task(ctx, task_id, reason):
    """Cancel a task"""
    engines = get_engines(ctx)
    try:
        result = engines.tasks.cancel_task(task_id, reason)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@task.command('retry')
@click.argument('task_id')
@click.pass_context
def retry_task(ctx, task_id):
    """Return a failed task to pending"""
    engines = get_engines(ctx)
    try:
        result = engines.tasks.retry_task(task_id)
    except ServiceError as e:
        fail(str(e))
    report_result(result)


@task.command('next')
@click.option('--iteration', help='Only consider tasks with this iteration tag')
@click.pass_context
def next_task(ctx, iteration):
    """Show the next task ready to be assigned"""
    engines = get_engines(ctx)
    ready = engines.tasks.get_next_task(iteration)
    if ready is None:
        click.echo("No ready tasks")
        return
    click.echo(format_task_table([ready]))
