import asyncio
import functools
import logging
import sys

from rich.console import Console
from rich.markup import escape

from cqpolicy.policy.errors import PolicyError

console = Console()
logger = logging.getLogger(__name__)


def handle_async_command(async_func):
    """Decorator to run async CLI commands and report policy errors."""
    @functools.wraps(async_func)
    def wrapper(*args, **kwargs):
        try:
            return asyncio.run(async_func(*args, **kwargs))
        except KeyboardInterrupt:
            console.print("\n[yellow]Operation cancelled by user[/yellow]")
            sys.exit(1)
        except PolicyError as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            sys.exit(1)
        except Exception as e:
            logger.debug("Command failed", exc_info=True)
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            sys.exit(1)
    return wrapper
