"""
Unit tests for the analysis collaborators.
"""

import json

import httpx
import pytest

from docpipe.core.admission import AdmissionController, estimate_cost
from docpipe.core.config_models import AnalysisClientConfig
from docpipe.core.exceptions import AnalysisError, CapacityExceededError
from docpipe.ingestion.models import WorkItem
from docpipe.integration.analysis_client import HttpAnalysisClient
from docpipe.integration.local_analyzer import TextFileAnalyzer

DOCUMENT_TEXT = "Patient Name: Jane Roe\nDOB: 02/03/1980\nHemoglobin 13.5 g/dL"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def load_document(content_ref):
    return DOCUMENT_TEXT


@pytest.fixture
def item():
    return WorkItem(id="doc-1", owner_id="patient-7", content_ref="uploads/doc-1.txt")


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def admission(sleep):
    return AdmissionController(limit=10_000, sleep=sleep)


def make_client(admission, handler, **config):
    settings = {"endpoint": "https://analysis.test/analyze", "api_key": "secret-key", **config}
    return HttpAnalysisClient(
        AnalysisClientConfig(**settings),
        admission,
        load_content=load_document,
        transport=httpx.MockTransport(handler),
    )


class TestHttpAnalysisClient:
    """Test the HTTP analysis client against a mock transport."""

    @pytest.mark.asyncio
    async def test_posts_document_and_returns_fields(self, admission, item):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"title": "CBC Panel", "category": "LAB_RESULT"})

        async with make_client(admission, handler) as client:
            fields = await client.analyze(item.content_ref, item)

        assert fields == {"title": "CBC Panel", "category": "LAB_RESULT"}
        assert len(requests) == 1
        assert json.loads(requests[0].content) == {"document_id": "doc-1", "content": DOCUMENT_TEXT}
        assert requests[0].headers["authorization"] == "Bearer secret-key"

    @pytest.mark.asyncio
    async def test_reserves_estimated_cost(self, admission, item):
        client = make_client(admission, lambda request: httpx.Response(200, json={}))

        await client.analyze(item.content_ref, item)
        await client.close()

        assert admission.status().consumed == estimate_cost(DOCUMENT_TEXT)

    @pytest.mark.asyncio
    async def test_rate_limited_response_is_retried(self, admission, sleep, item):
        responses = iter(
            [
                httpx.Response(429, headers={"retry-after": "4"}),
                httpx.Response(200, json={"title": "CBC Panel"}),
            ]
        )
        client = make_client(admission, lambda request: next(responses))

        fields = await client.analyze(item.content_ref, item)
        await client.close()

        assert fields == {"title": "CBC Panel"}
        assert sleep.delays == [4.0]
        assert client.metrics["rate_limited_responses"] == 1
        assert client.metrics["successful_requests"] == 1

    @pytest.mark.asyncio
    async def test_persistent_rate_limiting_raises(self, admission, sleep, item):
        client = make_client(admission, lambda request: httpx.Response(429))
        client.max_retries = 2

        with pytest.raises(CapacityExceededError):
            await client.analyze(item.content_ref, item)
        await client.close()

        assert sleep.delays == [1.0, 2.0]
        assert client.metrics["total_requests"] == 3

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried(self, admission, sleep, item):
        client = make_client(admission, lambda request: httpx.Response(500, text="internal error"))

        with pytest.raises(AnalysisError):
            await client.analyze(item.content_ref, item)
        await client.close()

        assert sleep.delays == []
        assert client.metrics["failed_requests"] == 1

    @pytest.mark.asyncio
    async def test_invalid_json_raises_analysis_error(self, admission, item):
        client = make_client(admission, lambda request: httpx.Response(200, text="not json"))

        with pytest.raises(AnalysisError):
            await client.analyze(item.content_ref, item)
        await client.close()

    @pytest.mark.asyncio
    async def test_connection_error_raises_analysis_error(self, admission, item):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(admission, handler)

        with pytest.raises(AnalysisError):
            await client.analyze(item.content_ref, item)
        await client.close()

    def test_requires_endpoint(self, admission):
        with pytest.raises(AnalysisError):
            HttpAnalysisClient(AnalysisClientConfig(), admission)

    @pytest.mark.asyncio
    async def test_statistics(self, admission, item):
        client = make_client(admission, lambda request: httpx.Response(200, json={}))
        await client.analyze(item.content_ref, item)
        await client.close()

        stats = client.get_statistics()
        assert stats["total_requests"] == 1
        assert stats["avg_latency"] >= 0


class TestTextFileAnalyzer:
    @pytest.mark.asyncio
    async def test_analyzes_local_file(self, tmp_path, item):
        path = tmp_path / "labs.txt"
        path.write_text("Lab Report\nPatient Name: Jane Roe\fPage two\n")
        admission = AdmissionController(limit=10_000)

        fields = await TextFileAnalyzer(admission).analyze(str(path), item)

        assert fields["original_name"] == "labs.txt"
        assert fields["title"] == "Lab Report"
        assert fields["page_count"] == 2
        assert fields["mime_type"] == "text/plain"
        pages = fields["content"]["analysis_result"]["pages"]
        assert pages[0]["lines"][1]["content"] == "Patient Name: Jane Roe"
        assert pages[1]["lines"] == [{"content": "Page two"}]
        assert admission.status().consumed > 0

    @pytest.mark.asyncio
    async def test_missing_file_raises_analysis_error(self, tmp_path, item):
        analyzer = TextFileAnalyzer(AdmissionController())

        with pytest.raises(AnalysisError):
            await analyzer.analyze(str(tmp_path / "missing.txt"), item)
