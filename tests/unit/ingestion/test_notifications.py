"""
Unit tests for event dispatch and queue monitoring.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from docpipe.core.admission import AdmissionController
from docpipe.ingestion.collaborators import InMemoryNotificationChannel
from docpipe.ingestion.models import Stage, StageEvent, WorkItem, WorkStatus
from docpipe.ingestion.monitoring import QueueMonitor
from docpipe.ingestion.notifications import EventDispatcher
from docpipe.ingestion.processing_queue import BatchScheduler


def make_event(stage=Stage.INITIALIZING, owner_id="patient-7"):
    return StageEvent(item_id="doc-1", owner_id=owner_id, status=WorkStatus.PROCESSING, stage=stage)


class TestEventDispatcher:
    @pytest.mark.asyncio
    async def test_publishes_to_owner_topic(self):
        channel = InMemoryNotificationChannel()
        dispatcher = EventDispatcher(channel)

        assert await dispatcher.dispatch(make_event()) is True

        assert channel.events_for("patient-7") == [
            {"item_id": "doc-1", "owner_id": "patient-7", "status": "processing", "stage": "initializing"}
        ]
        assert channel.events_for("patient-8") == []
        assert dispatcher.stats == {"published": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self):
        channel = AsyncMock()
        channel.publish.side_effect = ConnectionError("socket closed")
        dispatcher = EventDispatcher(channel)

        assert await dispatcher.dispatch(make_event()) is False
        assert dispatcher.stats == {"published": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_drain_dispatches_every_event(self):
        channel = InMemoryNotificationChannel()
        dispatcher = EventDispatcher(channel)

        async def events():
            yield make_event(Stage.INITIALIZING)
            yield make_event(Stage.ANALYZING)

        await dispatcher.drain(events())

        assert [event["stage"] for event in channel.events_for("patient-7")] == ["initializing", "analyzing"]

    @pytest.mark.asyncio
    async def test_drain_propagates_source_errors(self):
        channel = InMemoryNotificationChannel()
        dispatcher = EventDispatcher(channel)

        async def events():
            yield make_event(Stage.INITIALIZING)
            raise RuntimeError("stage failed")

        with pytest.raises(RuntimeError):
            await dispatcher.drain(events())

        assert len(channel.events_for("patient-7")) == 1

    @pytest.mark.asyncio
    async def test_subscribers_receive_events(self):
        channel = InMemoryNotificationChannel()
        queue = channel.subscribe("patient-7")

        await EventDispatcher(channel).dispatch(make_event())

        event = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert event["item_id"] == "doc-1"


class TestQueueMonitor:
    @pytest.fixture
    def admission(self):
        return AdmissionController(limit=1000)

    @pytest.fixture
    def scheduler(self, admission):
        async def process(item):
            return None

        return BatchScheduler(process, batch_size=2, admission=admission)

    @pytest.mark.asyncio
    async def test_snapshot(self, scheduler, admission):
        await admission.reserve(100)
        scheduler.pause()
        scheduler.add(WorkItem(id="doc-1", owner_id="patient-7", content_ref="ref"))
        monitor = QueueMonitor(scheduler, admission, interval=60)

        snapshot = monitor.snapshot()

        assert snapshot.pending == 1
        assert snapshot.in_flight == 0
        assert snapshot.batch_size == 2
        assert snapshot.paused is True
        assert snapshot.budget_available == 900
        assert snapshot.budget_usage_percentage == 10.0
        assert snapshot.memory_usage_mb > 0
        assert monitor.get_history()[0]["queue"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_periodic_emission(self, scheduler, admission):
        monitor = QueueMonitor(scheduler, admission, interval=0.02, history_size=3)

        await monitor.start()
        await asyncio.sleep(0.15)
        await monitor.stop()

        assert len(monitor.history) == 3
        assert monitor.monitoring_task is None
