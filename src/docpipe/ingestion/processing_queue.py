"""
Batch Scheduler - Bounded-concurrency FIFO processing of work items.

Items are accepted immediately and processed in drain cycles: each cycle
takes up to ``batch_size`` items from the head of the pending queue, runs
them concurrently, and waits for all of them to settle before the next
cycle starts. Pausing stops new cycles; a running cycle always completes.
"""

import asyncio
import logging
import time
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import psutil

from ..core.admission import AdmissionController
from .models import ProcessingResult, WorkItem, WorkStatus

logger = logging.getLogger(__name__)

ItemProcessor = Callable[[WorkItem], Awaitable[None]]


class BatchScheduler:
    """
    FIFO work queue drained in fixed-size concurrent batches.

    Features:
    - Duplicate suppression across pending and in-flight items
    - At most ``batch_size`` items processing at once
    - Pause/resume and runtime batch size changes
    - Per-item results and aggregate statistics
    """

    def __init__(
        self,
        item_processor: ItemProcessor,
        batch_size: int = 3,
        admission: Optional[AdmissionController] = None,
        history_size: int = 100,
    ):
        """
        Initialize the batch scheduler.

        Args:
            item_processor: Async function running one item to a terminal state
            batch_size: Maximum items processed concurrently per cycle
            admission: Admission controller whose budget is reported in status
            history_size: Number of recent results and cycle sizes retained
        """
        self.item_processor = item_processor
        self.admission = admission
        self._batch_size = max(1, batch_size)

        self._pending: Deque[WorkItem] = deque()
        self._in_flight: Dict[str, WorkItem] = {}
        self._paused = False
        self._drain_task: Optional["asyncio.Task[None]"] = None
        self._idle = asyncio.Event()
        self._idle.set()

        self.recent_results: Deque[ProcessingResult] = deque(maxlen=history_size)
        self.cycle_sizes: Deque[int] = deque(maxlen=history_size)
        self.max_concurrency = 0

        self.stats: Dict[str, Any] = {
            'items_queued': 0,
            'duplicates_rejected': 0,
            'items_completed': 0,
            'items_failed': 0,
            'cycles_run': 0,
            'total_processing_time': 0.0,
            'last_cycle_started_at': None,
            'memory_usage_mb': 0.0,
        }

        logger.info(f"Batch scheduler initialized (batch size: {self._batch_size})")

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def running(self) -> bool:
        return self._drain_task is not None

    @property
    def pending_depth(self) -> int:
        return len(self._pending)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def has(self, item_id: str) -> bool:
        """True while ``item_id`` is pending or in flight."""
        return item_id in self._in_flight or any(item.id == item_id for item in self._pending)

    def add(self, item: WorkItem) -> bool:
        """
        Queue ``item`` for processing.

        Returns:
            False if an item with the same id is already pending or in flight
        """
        if self.has(item.id):
            self.stats['duplicates_rejected'] += 1
            logger.warning(f"Item {item.id} is already queued or processing, ignoring")
            return False

        item.status = WorkStatus.QUEUED
        self._pending.append(item)
        self.stats['items_queued'] += 1
        logger.info(f"Queued item {item.id} for owner {item.owner_id} (pending: {len(self._pending)})")

        self._schedule_drain()
        self._refresh_idle()
        return True

    def pause(self) -> None:
        """Stop starting new cycles; a running cycle finishes normally."""
        self._paused = True
        logger.info("Batch scheduler paused")
        self._refresh_idle()

    def resume(self) -> None:
        self._paused = False
        logger.info("Batch scheduler resumed")
        self._schedule_drain()
        self._refresh_idle()

    def set_batch_size(self, size: int) -> None:
        """Change the cycle size; values below 1 are clamped to 1."""
        if size < 1:
            logger.error(f"Invalid batch size {size}, using 1")
            size = 1
        self._batch_size = size
        logger.info(f"Batch size set to {size}")

    async def wait_until_idle(self) -> None:
        """Wait until no cycle is running and nothing runnable is pending."""
        await self._idle.wait()

    async def shutdown(self) -> None:
        """Pause and let the current cycle, if any, settle."""
        self.pause()
        task = self._drain_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        logger.info(f"Batch scheduler stopped ({len(self._pending)} items left pending)")

    def _schedule_drain(self) -> None:
        if self._paused or not self._pending or self._drain_task is not None:
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    def _refresh_idle(self) -> None:
        if self._drain_task is not None or (self._pending and not self._paused):
            self._idle.clear()
        else:
            self._idle.set()

    async def _drain(self) -> None:
        try:
            while self._pending and not self._paused:
                await self._run_cycle()
                # Yield to the event loop between cycles
                await asyncio.sleep(0)
        finally:
            self._drain_task = None
            self._refresh_idle()

    async def _run_cycle(self) -> List[ProcessingResult]:
        count = min(self._batch_size, len(self._pending))
        batch = [self._pending.popleft() for _ in range(count)]
        for item in batch:
            self._in_flight[item.id] = item
        self.max_concurrency = max(self.max_concurrency, len(self._in_flight))

        self.stats['cycles_run'] += 1
        self.stats['last_cycle_started_at'] = datetime.now()
        self.cycle_sizes.append(count)
        logger.info(f"Starting cycle with {count} items ({len(self._pending)} still pending)")

        results = await asyncio.gather(*(self._process_item(item) for item in batch))

        self.stats['memory_usage_mb'] = psutil.Process().memory_info().rss / 1024 / 1024
        failed = sum(1 for result in results if not result.success)
        logger.info(f"Cycle finished: {count - failed} succeeded, {failed} failed")
        return list(results)

    async def _process_item(self, item: WorkItem) -> ProcessingResult:
        start_time = time.monotonic()
        try:
            await self.item_processor(item)
            result = ProcessingResult(
                item_id=item.id,
                owner_id=item.owner_id,
                success=True,
                processing_time=time.monotonic() - start_time,
            )
            self.stats['items_completed'] += 1

        except Exception as e:
            result = ProcessingResult(
                item_id=item.id,
                owner_id=item.owner_id,
                success=False,
                processing_time=time.monotonic() - start_time,
                failed_stage=item.failed_stage,
                error_message=str(e) or type(e).__name__,
            )
            self.stats['items_failed'] += 1
            logger.error(f"Item {item.id} failed in stage {item.failed_stage}: {result.error_message}")

        finally:
            self._in_flight.pop(item.id, None)

        self.stats['total_processing_time'] += result.processing_time
        self.recent_results.append(result)
        return result

    def status(self) -> Dict[str, Any]:
        """Current queue state plus the admission budget, if one is attached."""
        budget = self.admission.status() if self.admission else None
        return {
            'pending': len(self._pending),
            'in_flight': len(self._in_flight),
            'batch_size': self._batch_size,
            'paused': self._paused,
            'running': self.running,
            'budget': budget.to_dict() if budget else None,
            'counters': {
                'successful': self.stats['items_completed'],
                'failed': self.stats['items_failed'],
                'rate_limited': budget.counters['rate_limited'] if budget else 0,
            },
        }

    def get_statistics(self) -> Dict[str, Any]:
        """Get comprehensive scheduler statistics."""
        finished = self.stats['items_completed'] + self.stats['items_failed']
        avg_processing_time = self.stats['total_processing_time'] / finished if finished else 0.0
        last_cycle = self.stats['last_cycle_started_at']

        return {
            **self.status(),
            'items_queued': self.stats['items_queued'],
            'duplicates_rejected': self.stats['duplicates_rejected'],
            'items_completed': self.stats['items_completed'],
            'items_failed': self.stats['items_failed'],
            'success_rate': self.stats['items_completed'] / max(1, finished),
            'cycles_run': self.stats['cycles_run'],
            'avg_processing_time': avg_processing_time,
            'max_concurrency': self.max_concurrency,
            'memory_usage_mb': self.stats['memory_usage_mb'],
            'last_cycle_started_at': last_cycle.isoformat() if last_cycle else None,
            'recent_results': [result.to_dict() for result in self.recent_results],
        }
