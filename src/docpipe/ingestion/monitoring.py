"""
Queue Monitoring - Periodic scheduler and budget snapshots.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

import psutil

from ..core.admission import AdmissionController
from .processing_queue import BatchScheduler

logger = logging.getLogger(__name__)


@dataclass
class QueueSnapshot:
    """Point-in-time view of the scheduler and its admission budget."""
    pending: int
    in_flight: int
    batch_size: int
    paused: bool
    budget_available: int
    budget_usage_percentage: float
    succeeded: int
    failed: int
    rate_limited: int
    memory_usage_mb: float
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'queue': {
                'pending': self.pending,
                'in_flight': self.in_flight,
                'batch_size': self.batch_size,
                'paused': self.paused,
            },
            'budget': {
                'available': self.budget_available,
                'usage_percentage': self.budget_usage_percentage,
            },
            'counters': {
                'succeeded': self.succeeded,
                'failed': self.failed,
                'rate_limited': self.rate_limited,
            },
            'memory_usage_mb': self.memory_usage_mb,
        }


class QueueMonitor:
    """
    Emits a ``QueueSnapshot`` every ``interval`` seconds.

    Each snapshot is logged at INFO and kept in a bounded history. Taking a
    snapshot also triggers the admission controller's lazy window reset, so
    the monitor doubles as the budget's periodic sweep.
    """

    def __init__(
        self,
        scheduler: BatchScheduler,
        admission: AdmissionController,
        interval: float = 60.0,
        history_size: int = 100,
    ):
        self.scheduler = scheduler
        self.admission = admission
        self.interval = interval
        self.history: Deque[QueueSnapshot] = deque(maxlen=history_size)

        self.monitoring_task: Optional["asyncio.Task[None]"] = None
        self._shutdown_event = asyncio.Event()

    def snapshot(self) -> QueueSnapshot:
        budget = self.admission.status()
        stats = self.scheduler.stats
        snapshot = QueueSnapshot(
            pending=self.scheduler.pending_depth,
            in_flight=self.scheduler.in_flight,
            batch_size=self.scheduler.batch_size,
            paused=self.scheduler.paused,
            budget_available=budget.available,
            budget_usage_percentage=budget.usage_percentage,
            succeeded=stats['items_completed'],
            failed=stats['items_failed'],
            rate_limited=budget.counters['rate_limited'],
            memory_usage_mb=psutil.Process().memory_info().rss / 1024 / 1024,
        )
        self.history.append(snapshot)
        return snapshot

    async def start(self) -> None:
        if self.monitoring_task and not self.monitoring_task.done():
            logger.warning("Queue monitoring already running")
            return

        self._shutdown_event.clear()
        self.monitoring_task = asyncio.create_task(self._monitoring_loop())
        logger.info(f"Queue monitoring started (interval: {self.interval}s)")

    async def stop(self) -> None:
        self._shutdown_event.set()

        if self.monitoring_task:
            try:
                await asyncio.wait_for(self.monitoring_task, timeout=10.0)
            except asyncio.TimeoutError:
                logger.warning("Monitoring task shutdown timeout, cancelling")
                self.monitoring_task.cancel()
                try:
                    await self.monitoring_task
                except asyncio.CancelledError:
                    pass
            self.monitoring_task = None

        logger.info("Queue monitoring stopped")

    async def _monitoring_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                snapshot = self.snapshot()
                logger.info(
                    f"Queue: {snapshot.pending} pending, {snapshot.in_flight} in flight, "
                    f"batch size {snapshot.batch_size}{' (paused)' if snapshot.paused else ''}; "
                    f"budget: {snapshot.budget_available} available "
                    f"({snapshot.budget_usage_percentage:.1f}% used); "
                    f"{snapshot.succeeded} succeeded, {snapshot.failed} failed, "
                    f"{snapshot.rate_limited} rate limited"
                )
            except Exception as e:
                logger.error(f"Error collecting queue snapshot: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def get_history(self) -> List[Dict[str, Any]]:
        return [snapshot.to_dict() for snapshot in self.history]
