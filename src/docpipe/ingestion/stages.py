"""
Stage Pipeline - Per-item ordered state machine.

Drives one work item through INITIALIZING -> ANALYZING -> EXTRACTING ->
CATEGORIZING -> COMPLETE, with ERROR reachable from any stage. The pipeline
does not publish anything itself: ``run`` is an async generator yielding a
``StageEvent`` on entry to every stage and on reaching a terminal state, and
the caller decides where those events go.

Failure policy:
- analysis failures degrade to default values plus an ERROR alert
- indexing failures are logged (and optionally flagged with a DELAYED alert)
- persistence failures are logged only
- anything else aborts the item: an error record is built, persisted on a
  best-effort basis, announced with an ``error`` event, and the
  exception is re-raised
"""

import asyncio
import logging
import mimetypes
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from ..core.config_models import PipelineConfig
from ..core.exceptions import MissingIdentityFieldError
from .collaborators import Analyzer, Indexer, OwnerDirectory, PageRenderer, Repository
from .models import (
    PROCESSING_STAGES,
    AlertType,
    DocumentCategory,
    Stage,
    StageEvent,
    WorkItem,
    WorkStatus,
    empty_content,
    utc_now_iso,
)
from .owner_check import find_owner_mismatch
from .page_renderer import render_pages

logger = logging.getLogger(__name__)


class StagePipeline:
    """
    Runs work items through the enrichment stages.

    One instance is shared by all items; per-item state lives on the
    ``WorkItem`` itself.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        indexer: Indexer,
        repository: Repository,
        renderer: Optional[PageRenderer] = None,
        owner_directory: Optional[OwnerDirectory] = None,
        config: Optional[PipelineConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the stage pipeline.

        Args:
            analyzer: Analysis collaborator (structured field extraction)
            indexer: Enrichment/indexing collaborator
            repository: Persistence collaborator
            renderer: Optional page renderer run before analysis
            owner_directory: Optional owner lookup for mismatch detection
            config: Stage timing and alert settings
            sleep: Coroutine used for pacing delays
        """
        self.analyzer = analyzer
        self.indexer = indexer
        self.repository = repository
        self.renderer = renderer
        self.owner_directory = owner_directory
        self.config = config or PipelineConfig()
        self._sleep = sleep

        self._handlers: Dict[Stage, Callable[[WorkItem], Awaitable[None]]] = {
            Stage.INITIALIZING: self._initialize,
            Stage.ANALYZING: self._analyze,
            Stage.EXTRACTING: self._extract,
            Stage.CATEGORIZING: self._categorize,
        }

    async def run(self, item: WorkItem) -> AsyncIterator[StageEvent]:
        """
        Process ``item``, yielding events as stages are entered.

        The final event is ``complete`` (payload: finalized item) or
        ``error`` (payload: error record), after which the stage's
        exception propagates.
        """
        stage = Stage.INITIALIZING
        try:
            for stage in PROCESSING_STAGES:
                item.stage = stage
                item.status = WorkStatus.PROCESSING
                yield StageEvent(
                    item_id=item.id,
                    owner_id=item.owner_id,
                    status=WorkStatus.PROCESSING,
                    stage=stage,
                )
                await self._handlers[stage](item)

        except Exception as e:
            logger.error(f"Stage '{stage.value}' failed for item {item.id}: {type(e).__name__}: {e}")
            yield await self._build_error_event(item, stage, e)
            raise

        logger.info(f"Item {item.id} complete (category: {item.category}, alerts: {len(item.alerts)})")
        yield StageEvent(
            item_id=item.id,
            owner_id=item.owner_id,
            status=WorkStatus.COMPLETE,
            stage=Stage.COMPLETE,
            payload={"item": item.to_dict()},
        )

    async def _initialize(self, item: WorkItem) -> None:
        # Gives the first event a chance to reach subscribers before heavy work.
        if self.config.readiness_delay_seconds:
            await self._sleep(self.config.readiness_delay_seconds)

    async def _analyze(self, item: WorkItem) -> None:
        try:
            await self._ensure_page_images(item)

            fields = await self.analyzer.analyze(item.content_ref, item)
            item.merge_fields(fields or {})
            if not item.category:
                item.category = DocumentCategory.UNKNOWN.value

            await self._check_owner(item)

        except Exception as e:
            logger.warning(f"Analysis failed for item {item.id}, continuing with defaults: {e}")
            if not item.category:
                item.category = DocumentCategory.UNKNOWN.value
            item.add_alert(AlertType.ERROR, f"Analysis error: {str(e) or type(e).__name__}")

    async def _ensure_page_images(self, item: WorkItem) -> None:
        if self.renderer is None:
            return
        if item.content and item.content.get("page_images"):
            return

        if item.content is None:
            item.content = empty_content()

        try:
            item.content["page_images"] = await render_pages(
                self.renderer,
                item.content_ref,
                item.page_count or 1,
                batch_size=self.config.render_batch_size,
                delay=self.config.render_delay_seconds,
                sleep=self._sleep,
            )
        except Exception as e:
            logger.error(f"Failed to render pages for item {item.id}: {e}")
            item.content["page_images"] = []

    async def _check_owner(self, item: WorkItem) -> None:
        if self.owner_directory is None:
            return

        owner = await self.owner_directory.get_owner(item.owner_id)
        detected = find_owner_mismatch(item, owner)
        if detected is None:
            return

        item.is_incorrect_owner = True
        item.detected_owner_info = detected
        item.add_alert(
            AlertType.INCORRECT_OWNER,
            "Document may belong to a different owner. "
            f"Detected name: {detected.get('name') or 'Unknown'}, "
            f"DOB: {detected.get('date_of_birth') or 'Unknown'}",
        )

    async def _extract(self, item: WorkItem) -> None:
        try:
            await self.indexer.index(item.content_ref, item.owner_id)
        except Exception as e:
            logger.error(f"Indexing failed for item {item.id}, continuing: {e}")
            if self.config.record_indexing_alerts:
                item.add_alert(AlertType.DELAYED, f"Indexing failed: {str(e) or type(e).__name__}")

    async def _categorize(self, item: WorkItem) -> None:
        if not item.id:
            raise MissingIdentityFieldError("id")
        if not item.original_name:
            raise MissingIdentityFieldError("original_name")

        now = utc_now_iso()
        name = item.original_name
        extension = name.rsplit(".", 1)[-1] if "." in name else ""
        mime_type = item.mime_type or mimetypes.guess_type(name)[0] or "application/octet-stream"

        item.category = item.category or DocumentCategory.UNPROCESSED.value
        item.mime_type = mime_type
        item.title = item.title or name
        item.size = item.size or 0
        item.page_count = item.page_count or 0
        item.format = item.format or {"mime_type": mime_type, "extension": extension}
        item.document_date = item.document_date or now
        item.upload_date = item.upload_date or now
        item.processed_at = now
        item.author = item.author or ""
        item.source_system = item.source_system or "upload"
        item.confidence = item.confidence or 0
        item.content = item.content or empty_content()

        item.status = WorkStatus.COMPLETE
        item.stage = Stage.COMPLETE

        await self._persist(item)

    async def _persist(self, item: WorkItem) -> bool:
        try:
            saved = await self.repository.save(item)
        except Exception as e:
            logger.error(f"Failed to persist item {item.id} ({item.status.value}): {e}")
            return False

        if not saved:
            logger.error(f"Repository rejected item {item.id} ({item.status.value})")
        return bool(saved)

    async def _build_error_event(self, item: WorkItem, stage: Stage, error: Exception) -> StageEvent:
        message = str(error) or type(error).__name__

        try:
            item.status = WorkStatus.ERROR
            item.stage = Stage.ERROR
            item.category = DocumentCategory.ERROR.value
            item.failed_stage = stage.value
            item.original_name = item.original_name or ""
            item.title = item.title or item.original_name or f"Document-{item.id}"
            item.add_alert(AlertType.ERROR, f"Processing error in stage '{stage.value}': {message}")
            await self._persist(item)
            payload: Optional[Dict[str, Any]] = {"failed_stage": stage.value, "item": item.to_dict()}
        except Exception as secondary_error:
            logger.error(f"Failed to build error record for item {item.id}: {secondary_error}")
            payload = {"failed_stage": stage.value}

        return StageEvent(
            item_id=item.id,
            owner_id=item.owner_id,
            status=WorkStatus.ERROR,
            stage=Stage.ERROR,
            payload=payload,
            error=message,
        )
