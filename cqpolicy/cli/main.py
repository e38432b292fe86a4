import logging
from pathlib import Path

import click
from rich.console import Console

from cqpolicy.config import settings
from cqpolicy.utils.logging import setup_logging

from .policy import policy_cli

console = Console()


@click.group()
@click.option('--verbose', '-v', is_flag=True, help='Enables verbose mode.')
@click.option('--quiet', '-q', is_flag=True, help='Enables quiet mode.')
@click.option(
    '--cache-dir',
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help='Policy cache directory (default: CQPOLICY_CACHE_DIR).',
)
@click.pass_context
def app(ctx, verbose, quiet, cache_dir):
    """
    cqpolicy compliance policy CLI.
    """
    ctx.ensure_object(dict)
    ctx.obj['VERBOSE'] = verbose
    ctx.obj['QUIET'] = quiet
    ctx.obj['CACHE_DIR'] = cache_dir or settings.CACHE_DIR

    if verbose:
        setup_logging(level=logging.DEBUG)
    elif quiet:
        setup_logging(level=logging.ERROR)
    else:
        setup_logging()

# Add subcommands
app.add_command(policy_cli, name='policy')

if __name__ == '__main__':
    app()
