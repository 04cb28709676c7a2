"""
Document Pipeline - Composition root for admission-controlled processing.

Builds and owns the admission controller, stage pipeline, event
dispatcher, batch scheduler and queue monitor, and exposes the
administrative surface (pause/resume/batch size/status).
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.admission import AdmissionController
from ..core.config_models import DocpipeConfig
from .collaborators import (
    Analyzer,
    Indexer,
    NotificationChannel,
    OwnerDirectory,
    PageRenderer,
    Repository,
)
from .models import Stage, StageEvent, WorkItem, WorkStatus
from .monitoring import QueueMonitor
from .notifications import EventDispatcher
from .processing_queue import BatchScheduler
from .stages import StagePipeline

logger = logging.getLogger(__name__)


class DocumentPipeline:
    """
    Admission-controlled batch processing pipeline.

    Collaborators that consume external capacity (typically the analyzer)
    should be constructed with ``pipeline.admission`` or with the same
    controller passed in here, so that all work shares one budget.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        indexer: Indexer,
        repository: Repository,
        channel: NotificationChannel,
        config: Optional[DocpipeConfig] = None,
        admission: Optional[AdmissionController] = None,
        renderer: Optional[PageRenderer] = None,
        owner_directory: Optional[OwnerDirectory] = None,
    ):
        """
        Initialize the document pipeline.

        Args:
            analyzer: Analysis collaborator
            indexer: Enrichment/indexing collaborator
            repository: Persistence collaborator
            channel: Notification channel events are published to
            config: Pipeline configuration (defaults if omitted)
            admission: Shared admission controller (built from config if omitted)
            renderer: Optional page renderer
            owner_directory: Optional owner lookup for mismatch detection
        """
        self.config = config or DocpipeConfig()
        self.admission = admission or AdmissionController.from_config(self.config.admission)

        self.stages = StagePipeline(
            analyzer=analyzer,
            indexer=indexer,
            repository=repository,
            renderer=renderer,
            owner_directory=owner_directory,
            config=self.config.pipeline,
        )
        self.dispatcher = EventDispatcher(channel)
        self.scheduler = BatchScheduler(
            item_processor=self._process_item,
            batch_size=self.config.scheduler.batch_size,
            admission=self.admission,
            history_size=self.config.scheduler.stats_history_size,
        )
        self.monitor = QueueMonitor(
            scheduler=self.scheduler,
            admission=self.admission,
            interval=self.config.scheduler.stats_interval_seconds,
            history_size=self.config.scheduler.stats_history_size,
        )

        self._initialized = False
        self._start_time: Optional[datetime] = None

        logger.info(f"Document pipeline initialized (batch size: {self.scheduler.batch_size})")

    async def initialize(self) -> None:
        if self._initialized:
            return

        await self.monitor.start()
        self._start_time = datetime.now()
        self._initialized = True
        logger.info("Document pipeline started")

    async def shutdown(self) -> None:
        """Let the running cycle finish, then stop monitoring and release waiters."""
        logger.info("Shutting down document pipeline")

        await self.scheduler.shutdown()
        await self.monitor.stop()
        await self.admission.close()

        self._initialized = False
        logger.info("Document pipeline shutdown complete")

    async def __aenter__(self) -> "DocumentPipeline":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def queue_document(
        self,
        id: str,
        owner_id: str,
        content_ref: str,
        initial_metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Queue a document for processing.

        Processing outcome is reported only through the notification stream.

        Args:
            id: Unique document id
            owner_id: Owning entity; also the notification topic
            content_ref: Locator handed to collaborators
            initial_metadata: Known fields (e.g. ``original_name``) to seed the item

        Returns:
            False if the document is already queued or processing
        """
        for name, value in (("id", id), ("owner_id", owner_id), ("content_ref", content_ref)):
            if not value:
                raise ValueError(f"{name} is required")

        if not self._initialized:
            await self.initialize()

        item = WorkItem.from_request(id, owner_id, content_ref, initial_metadata)
        if not self.scheduler.add(item):
            return False

        if self.config.scheduler.emit_queued_event:
            await self.dispatcher.dispatch(
                StageEvent(
                    item_id=item.id,
                    owner_id=item.owner_id,
                    status=WorkStatus.QUEUED,
                    stage=Stage.INITIALIZING,
                )
            )
        return True

    async def _process_item(self, item: WorkItem) -> None:
        await self.dispatcher.drain(self.stages.run(item))

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self.scheduler.wait_until_idle(), timeout=timeout)

    def pause(self) -> None:
        self.scheduler.pause()

    def resume(self) -> None:
        self.scheduler.resume()

    def set_batch_size(self, size: int) -> None:
        self.scheduler.set_batch_size(size)

    def status(self) -> Dict[str, Any]:
        return self.scheduler.status()

    def get_statistics(self) -> Dict[str, Any]:
        """Get comprehensive pipeline statistics."""
        uptime = (datetime.now() - self._start_time).total_seconds() if self._start_time else 0.0
        return {
            'initialized': self._initialized,
            'uptime_seconds': uptime,
            'scheduler': self.scheduler.get_statistics(),
            'admission': {
                **self.admission.status().to_dict(),
                'recent_requests': self.admission.recent_requests(),
            },
            'error_statistics': self.admission.classifier.get_statistics(),
            'notifications': dict(self.dispatcher.stats),
            'snapshots': self.monitor.get_history(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Summarize pipeline health from queue and budget state."""
        budget = self.admission.status()
        stats = self.scheduler.stats
        finished = stats['items_completed'] + stats['items_failed']
        success_rate = stats['items_completed'] / max(1, finished)

        if not self._initialized:
            status = 'not_initialized'
        elif budget.queued_requests and budget.usage_percentage >= 100 * self.admission.throttle_threshold:
            status = 'degraded'
        elif finished and success_rate < 0.5:
            status = 'degraded'
        else:
            status = 'healthy'

        return {
            'status': status,
            'timestamp': datetime.now().isoformat(),
            'queue': {
                'pending': self.scheduler.pending_depth,
                'in_flight': self.scheduler.in_flight,
                'paused': self.scheduler.paused,
            },
            'budget': budget.to_dict(),
            'success_rate': success_rate,
        }
