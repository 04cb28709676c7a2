"""
docpipe command line
"""

import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install

from .. import __version__
from .commands.config import config
from .commands.process import process

install(show_locals=False, suppress=[click])

console = Console()


def configure_logging(target: Console, level: int = logging.WARNING) -> None:
    """Send log records to ``target`` through a single Rich handler."""
    handler = RichHandler(console=target, rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    for existing in [h for h in root.handlers if isinstance(h, RichHandler)]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="docpipe")
@click.option("--verbose", "-v", is_flag=True, help="Log pipeline activity (debug level for docpipe)")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, no_color: bool) -> None:
    """
    docpipe - Admission-controlled document processing

    Runs documents through a staged enrichment pipeline in bounded batches
    while keeping every analysis call inside a shared capacity budget.

    Examples:
      docpipe process report.txt --owner patient-7      # Process one document
      docpipe process *.txt --owner patient-7 -b 2      # Two at a time
      docpipe config show                               # Effective settings
    """
    ctx.ensure_object(dict)
    output = Console(force_terminal=False, no_color=True) if no_color else console

    configure_logging(output, logging.INFO if verbose else logging.WARNING)
    if verbose:
        logging.getLogger("docpipe").setLevel(logging.DEBUG)

    ctx.obj.update(console=output, verbose=verbose, no_color=no_color)


cli.add_command(process)
cli.add_command(config)


def main() -> None:
    try:
        cli(prog_name="docpipe")
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
