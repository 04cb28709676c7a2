"""
Document processing command
"""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from rich.console import Console

from ...core.admission import AdmissionController
from ...core.config_manager import ConfigurationManager
from ...core.exceptions import ConfigurationError, DocpipeError
from ...ingestion.collaborators import InMemoryNotificationChannel, InMemoryRepository, NoopIndexer
from ...ingestion.pipeline import DocumentPipeline
from ...integration.analysis_client import HttpAnalysisClient
from ...integration.local_analyzer import TextFileAnalyzer
from ..ui.display import create_budget_panel, create_error_display, create_summary_table, format_event
from ..utils.async_runner import async_command


@click.command()
@click.argument(
    "files",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option("--owner", "owner_id", required=True, help="Owner id; events are published to this topic")
@click.option("--batch-size", "-b", type=int, help="Documents processed concurrently per cycle")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (YAML)",
)
@click.option("--endpoint", help="Analysis service URL; local text analysis is used if unset")
@click.pass_context
@async_command
async def process(
    ctx: click.Context,
    files: Tuple[Path, ...],
    owner_id: str,
    batch_size: Optional[int],
    config_path: Optional[Path],
    endpoint: Optional[str],
) -> None:
    """
    Process documents through the enrichment pipeline.

    Each file is queued for OWNER, processed in batches under the shared
    capacity budget, and its progress events are printed as they arrive.

    Examples:
      docpipe process notes.txt --owner patient-7
      docpipe process *.txt --owner patient-7 --batch-size 2
    """
    console: Console = ctx.obj["console"]

    try:
        config = ConfigurationManager().load_config(config_path)
        if endpoint:
            config.analysis = config.analysis.model_validate(
                {**config.analysis.model_dump(), "endpoint": endpoint}
            )
    except (ConfigurationError, ValueError) as e:
        console.print(create_error_display(e, "Configuration Error"))
        ctx.exit(1)

    if not ctx.obj.get("verbose"):
        logging.getLogger("docpipe").setLevel(config.logging.level)

    if batch_size is not None:
        config.scheduler.batch_size = max(1, batch_size)

    admission = AdmissionController.from_config(config.admission)
    channel = InMemoryNotificationChannel()
    repository = InMemoryRepository()
    events = channel.subscribe(owner_id)

    analyzer: Any
    if config.analysis.endpoint:
        analyzer = HttpAnalysisClient(config.analysis, admission, max_retries=config.admission.max_retries)
    else:
        analyzer = TextFileAnalyzer(admission)

    pipeline = DocumentPipeline(
        analyzer=analyzer,
        indexer=NoopIndexer(),
        repository=repository,
        channel=channel,
        config=config,
        admission=admission,
    )

    try:
        async with pipeline:
            printer = asyncio.create_task(_print_events(console, events))

            for path in files:
                queued = await pipeline.queue_document(
                    id=document_id(path),
                    owner_id=owner_id,
                    content_ref=str(path),
                    initial_metadata={"original_name": path.name},
                )
                if not queued:
                    console.print(f"[yellow]Skipping duplicate document {path.name}[/yellow]")

            await pipeline.wait_until_idle()
            printer.cancel()
            while not events.empty():
                console.print(format_event(events.get_nowait()))

            budget = admission.status().to_dict()

    except DocpipeError as e:
        console.print(create_error_display(e, "Processing Error"))
        ctx.exit(1)
    finally:
        if isinstance(analyzer, HttpAnalysisClient):
            await analyzer.close()

    records = [repository.get(item_id) for item_id in dict.fromkeys(document_id(path) for path in files)]
    console.print()
    console.print(create_summary_table(record for record in records if record))
    console.print(create_budget_panel(budget))

    if any(record and record["status"] == "error" for record in records):
        ctx.exit(1)


def document_id(path: Path) -> str:
    """Readable id unique per resolved file path: ``<name>@<path digest>``."""
    digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()[:8]
    return f"{path.name}@{digest}"


async def _print_events(console: Console, events: "asyncio.Queue[Dict[str, Any]]") -> None:
    while True:
        event = await events.get()
        console.print(format_event(event))
