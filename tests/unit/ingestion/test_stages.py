"""
Unit tests for the stage pipeline.
"""

from typing import Any, Dict, List, Optional

import pytest

from docpipe.core.config_models import PipelineConfig
from docpipe.core.exceptions import AnalysisError, IndexingError, MissingIdentityFieldError
from docpipe.ingestion.collaborators import InMemoryOwnerDirectory, InMemoryRepository, NoopIndexer
from docpipe.ingestion.models import AlertType, Stage, StageEvent, WorkItem, WorkStatus
from docpipe.ingestion.stages import StagePipeline


class StaticAnalyzer:
    def __init__(self, fields: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.fields = fields or {}
        self.error = error
        self.calls: List[str] = []

    async def analyze(self, content_ref: str, item: WorkItem) -> Dict[str, Any]:
        self.calls.append(content_ref)
        if self.error:
            raise self.error
        return dict(self.fields)


class FailingIndexer:
    async def index(self, content_ref: str, owner_id: str) -> None:
        raise IndexingError("search index unavailable")


class FailingRepository:
    def __init__(self):
        self.attempts = 0

    async def save(self, item: WorkItem) -> bool:
        self.attempts += 1
        raise RuntimeError("database down")


class RecordingRenderer:
    def __init__(self):
        self.pages: List[int] = []

    async def render_page(self, content_ref: str, page_number: int) -> str:
        self.pages.append(page_number)
        return f"{content_ref}#page={page_number}"


async def no_sleep(delay: float) -> None:
    return None


async def collect(pipeline: StagePipeline, item: WorkItem) -> List[StageEvent]:
    events = []
    async for event in pipeline.run(item):
        events.append(event)
    return events


def make_item(**overrides) -> WorkItem:
    item = WorkItem(id="doc-1", owner_id="patient-7", content_ref="uploads/doc-1.txt", original_name="doc-1.txt")
    for key, value in overrides.items():
        setattr(item, key, value)
    return item


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def config():
    return PipelineConfig(readiness_delay_seconds=0, render_delay_seconds=0)


class TestStagePipeline:
    """Test stage ordering, degradation and error handling."""

    @pytest.mark.asyncio
    async def test_emits_events_in_stage_order(self, repository, config):
        pipeline = StagePipeline(StaticAnalyzer({"title": "Lab Results"}), NoopIndexer(), repository, config=config)

        events = await collect(pipeline, make_item())

        assert [(event.status, event.stage) for event in events] == [
            (WorkStatus.PROCESSING, Stage.INITIALIZING),
            (WorkStatus.PROCESSING, Stage.ANALYZING),
            (WorkStatus.PROCESSING, Stage.EXTRACTING),
            (WorkStatus.PROCESSING, Stage.CATEGORIZING),
            (WorkStatus.COMPLETE, Stage.COMPLETE),
        ]
        assert all(event.topic == "patient-7" for event in events)

    @pytest.mark.asyncio
    async def test_complete_event_carries_finalized_item(self, repository, config):
        pipeline = StagePipeline(StaticAnalyzer({"title": "Lab Results"}), NoopIndexer(), repository, config=config)
        item = make_item()

        events = await collect(pipeline, item)
        final = events[-1].payload["item"]

        assert final["status"] == "complete"
        assert final["title"] == "Lab Results"
        assert final["category"] == "UNKNOWN"
        assert final["mime_type"] == "text/plain"
        assert final["format"] == {"mime_type": "text/plain", "extension": "txt"}
        assert final["processed_at"]
        assert repository.get("doc-1")["status"] == "complete"

    @pytest.mark.asyncio
    async def test_readiness_delay_before_analysis(self, repository):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        pipeline = StagePipeline(
            StaticAnalyzer(), NoopIndexer(), repository, config=PipelineConfig(), sleep=record_sleep
        )
        await collect(pipeline, make_item())

        assert delays == [0.1]

    @pytest.mark.asyncio
    async def test_analysis_failure_degrades_to_defaults(self, repository, config):
        analyzer = StaticAnalyzer(error=AnalysisError("model unavailable"))
        pipeline = StagePipeline(analyzer, NoopIndexer(), repository, config=config)
        item = make_item()

        events = await collect(pipeline, item)

        assert events[-1].status == WorkStatus.COMPLETE
        assert item.status == WorkStatus.COMPLETE
        assert item.category == "UNKNOWN"
        assert item.has_alert(AlertType.ERROR)
        assert "model unavailable" in item.alerts[0].description

    @pytest.mark.asyncio
    async def test_blank_name_from_analysis_does_not_fail_item(self, repository, config):
        pipeline = StagePipeline(
            StaticAnalyzer({"original_name": None, "title": "CBC"}), NoopIndexer(), repository, config=config
        )
        item = make_item()

        events = await collect(pipeline, item)

        assert events[-1].status == WorkStatus.COMPLETE
        assert item.original_name == "doc-1.txt"
        assert repository.get("doc-1")["status"] == "complete"

    @pytest.mark.asyncio
    async def test_analysis_fields_are_merged(self, repository, config):
        analyzer = StaticAnalyzer({"category": "LAB_RESULT", "confidence": 0.93, "provider": "clinic"})
        pipeline = StagePipeline(analyzer, NoopIndexer(), repository, config=config)
        item = make_item()

        await collect(pipeline, item)

        assert item.category == "LAB_RESULT"
        assert item.confidence == 0.93
        assert item.metadata["provider"] == "clinic"
        assert analyzer.calls == ["uploads/doc-1.txt"]

    @pytest.mark.asyncio
    async def test_indexing_failure_adds_delayed_alert(self, repository, config):
        pipeline = StagePipeline(StaticAnalyzer(), FailingIndexer(), repository, config=config)
        item = make_item()

        events = await collect(pipeline, item)

        assert events[-1].status == WorkStatus.COMPLETE
        assert item.has_alert(AlertType.DELAYED)

    @pytest.mark.asyncio
    async def test_indexing_alert_can_be_disabled(self, repository):
        config = PipelineConfig(readiness_delay_seconds=0, record_indexing_alerts=False)
        pipeline = StagePipeline(StaticAnalyzer(), FailingIndexer(), repository, config=config)
        item = make_item()

        await collect(pipeline, item)

        assert item.alerts == []
        assert item.status == WorkStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_fail_item(self, config):
        repository = FailingRepository()
        pipeline = StagePipeline(StaticAnalyzer(), NoopIndexer(), repository, config=config)
        item = make_item()

        events = await collect(pipeline, item)

        assert repository.attempts == 1
        assert events[-1].status == WorkStatus.COMPLETE
        assert item.status == WorkStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_missing_identity_field_aborts_to_error(self, repository, config):
        pipeline = StagePipeline(StaticAnalyzer(), NoopIndexer(), repository, config=config)
        item = make_item(original_name=None)
        events = []

        with pytest.raises(MissingIdentityFieldError):
            async for event in pipeline.run(item):
                events.append(event)

        assert [event.stage for event in events] == [
            Stage.INITIALIZING,
            Stage.ANALYZING,
            Stage.EXTRACTING,
            Stage.CATEGORIZING,
            Stage.ERROR,
        ]
        error_event = events[-1]
        assert error_event.status == WorkStatus.ERROR
        assert error_event.error == "Missing required field: original_name"
        assert error_event.payload["failed_stage"] == "categorizing"

        assert item.status == WorkStatus.ERROR
        assert item.category == "ERROR"
        assert item.failed_stage == "categorizing"
        assert item.title == "Document-doc-1"
        assert item.has_alert(AlertType.ERROR)

        record = repository.get("doc-1")
        assert record["status"] == "error"

    @pytest.mark.asyncio
    async def test_error_record_preserves_populated_fields(self, repository, config):
        pipeline = StagePipeline(
            StaticAnalyzer({"title": "Discharge Summary", "page_count": 4}), NoopIndexer(), repository, config=config
        )
        item = make_item(original_name="")

        with pytest.raises(MissingIdentityFieldError):
            await collect(pipeline, item)

        record = repository.get("doc-1")
        assert record["title"] == "Discharge Summary"
        assert record["page_count"] == 4

    @pytest.mark.asyncio
    async def test_renders_pages_before_analysis(self, repository, config):
        renderer = RecordingRenderer()
        pipeline = StagePipeline(StaticAnalyzer(), NoopIndexer(), repository, renderer=renderer, config=config)
        item = make_item(page_count=7)

        await collect(pipeline, item)

        assert renderer.pages == [1, 2, 3, 4, 5, 6, 7]
        assert item.content["page_images"][0] == "uploads/doc-1.txt#page=1"

    @pytest.mark.asyncio
    async def test_owner_mismatch_adds_alert(self, repository, config):
        analyzer = StaticAnalyzer(
            {
                "content": {
                    "analysis_result": {"pages": []},
                    "extracted_schemas": [{"patient": {"name": "Jane Roe", "dateOfBirth": "02/03/1980"}}],
                }
            }
        )
        owners = InMemoryOwnerDirectory({"patient-7": {"name": "John Smith", "date_of_birth": "01/01/1970"}})
        pipeline = StagePipeline(
            analyzer, NoopIndexer(), repository, owner_directory=owners, config=config
        )
        item = make_item()

        events = await collect(pipeline, item)

        assert events[-1].status == WorkStatus.COMPLETE
        assert item.is_incorrect_owner
        assert item.detected_owner_info == {"name": "Jane Roe", "date_of_birth": "02/03/1980"}
        assert item.has_alert(AlertType.INCORRECT_OWNER)

    @pytest.mark.asyncio
    async def test_matching_owner_has_no_alert(self, repository, config):
        analyzer = StaticAnalyzer(
            {"content": {"analysis_result": {"pages": [{"lines": [{"content": "Patient Name: John Smith"}]}]}}}
        )
        owners = InMemoryOwnerDirectory({"patient-7": {"name": "John Smith"}})
        pipeline = StagePipeline(analyzer, NoopIndexer(), repository, owner_directory=owners, config=config)
        item = make_item()

        await collect(pipeline, item)

        assert not item.is_incorrect_owner
        assert item.alerts == []
