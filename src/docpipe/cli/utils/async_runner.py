"""
Bridge between click's synchronous callbacks and docpipe's coroutines.
"""

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console

from ...core.exceptions import DocpipeError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def async_command(f: F) -> Callable[..., Any]:
    """
    Run an ``async def`` command callback on a fresh event loop.

    Failures are printed on the command's console and mapped to exit codes
    (1 for errors, 130 for Ctrl-C). ``ctx.exit()`` raised inside the
    coroutine passes through untouched.
    """

    @wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        console = _command_console(click.get_current_context(silent=True))
        try:
            return asyncio.run(f(*args, **kwargs))
        except click.exceptions.Exit:
            raise
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted; queued documents were not processed[/yellow]")
            raise click.exceptions.Exit(EXIT_INTERRUPTED)
        except DocpipeError as e:
            console.print(f"[red]{type(e).__name__}: {e}[/red]")
            raise click.exceptions.Exit(EXIT_FAILURE)
        except Exception as e:
            logger.debug("Command failed", exc_info=True)
            console.print(f"[red]Operation failed: {e}[/red]")
            raise click.exceptions.Exit(EXIT_FAILURE)

    return wrapper


def _command_console(ctx: Optional[click.Context]) -> Console:
    if ctx is not None and isinstance(ctx.obj, dict) and "console" in ctx.obj:
        return ctx.obj["console"]
    return Console(stderr=True)
