"""Main CLI entry point for Convoy Control."""

import logging

import click

from ..core.config import OrchestrationSettings
from ..core.constants import DEFAULT_HOOKS_PATH, HOOKS_PATH_ENV, LOG_LEVEL_ENV
from .commands.convoy import convoy
from .commands.safety import safety
from .commands.task import task

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@click.group()
@click.option('--hooks-path', envvar=HOOKS_PATH_ENV, default=DEFAULT_HOOKS_PATH, show_default=True,
              help='State directory, relative to the project root')
@click.option('--log-level', envvar=LOG_LEVEL_ENV, default='WARNING', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging verbosity')
@click.pass_context
def cli(ctx, hooks_path, log_level):
    """Convoy Control - durable task and convoy orchestration for agents"""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)
    ctx.obj = OrchestrationSettings.from_env(hooks_path=hooks_path)


# Register commands
cli.add_command(task)
cli.add_command(convoy)
cli.add_command(safety)


if __name__ == '__main__':
    cli()
