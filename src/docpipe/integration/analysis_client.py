"""
HTTP Analysis Client

Analysis collaborator backed by a remote analysis service. Every call is
admitted against the shared capacity budget before it is sent, and
upstream rate-limit rejections are retried with backoff.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..core.admission import AdmissionController
from ..core.config_models import AnalysisClientConfig
from ..core.exceptions import AnalysisError, CapacityExceededError
from ..ingestion.models import WorkItem

logger = logging.getLogger(__name__)

ContentLoader = Callable[[str], Awaitable[str]]


async def read_local_file(content_ref: str) -> str:
    """Default content loader: treat ``content_ref`` as a local text file path."""
    path = Path(content_ref)
    return await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class HttpAnalysisClient:
    """Admission-controlled client for a remote document analysis endpoint."""

    def __init__(
        self,
        config: AnalysisClientConfig,
        admission: AdmissionController,
        max_retries: int = 3,
        load_content: ContentLoader = read_local_file,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not config.endpoint:
            raise AnalysisError("Analysis endpoint is not configured")

        self.config = config
        self.admission = admission
        self.max_retries = max_retries
        self.load_content = load_content
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        self.metrics: Dict[str, Any] = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'rate_limited_responses': 0,
            'total_processing_time': 0.0,
        }
        self._request_times: List[float] = []

    async def initialize(self) -> None:
        if self._client is not None:
            return

        headers = {
            "Content-Type": "application/json",
            "User-Agent": "docpipe/1.0",
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(self.config.timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
            transport=self._transport,
        )
        logger.info(f"Analysis client initialized ({self.config.endpoint})")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("Analysis client closed")

    async def __aenter__(self) -> "HttpAnalysisClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def analyze(self, content_ref: str, item: WorkItem) -> Dict[str, Any]:
        """
        Analyze a document.

        Reserves the estimated cost of the document text, then posts it to
        the analysis endpoint. Rate-limited responses are retried with
        exponential backoff; anything else raises ``AnalysisError``.

        Returns:
            Structured fields to merge into the work item
        """
        if self._client is None:
            await self.initialize()

        content = await self.load_content(content_ref)
        estimated_cost = self.admission.estimate_cost(content)
        await self.admission.reserve(estimated_cost, label=f"analyze:{item.id}")

        payload = {"document_id": item.id, "content": content}
        return await self.admission.execute_with_retry(
            lambda: self._post(payload),
            label=f"analyze:{item.id}",
            max_retries=self.max_retries,
        )

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        start_time = time.time()
        self.metrics['total_requests'] += 1

        try:
            response = await self._client.post(self.config.endpoint, json=payload)

            if response.status_code == 429:
                self.metrics['rate_limited_responses'] += 1
                raise CapacityExceededError(
                    "Rate limit exceeded", retry_after=_parse_retry_after(response.headers.get("retry-after"))
                )

            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise AnalysisError("Analysis response is not a JSON object")

        except httpx.HTTPStatusError as e:
            self._record(time.time() - start_time, False)
            raise AnalysisError(f"HTTP error {e.response.status_code}: {e.response.text}") from e

        except httpx.RequestError as e:
            self._record(time.time() - start_time, False)
            raise AnalysisError(f"Request failed: {e}") from e

        except (CapacityExceededError, AnalysisError):
            self._record(time.time() - start_time, False)
            raise

        except ValueError as e:
            self._record(time.time() - start_time, False)
            raise AnalysisError(f"Invalid analysis response: {e}") from e

        request_time = time.time() - start_time
        self._record(request_time, True)
        logger.debug(f"Analyzed {payload['document_id']} in {request_time:.2f}s")
        return data

    def _record(self, latency: float, success: bool) -> None:
        if success:
            self.metrics['successful_requests'] += 1
        else:
            self.metrics['failed_requests'] += 1
        self.metrics['total_processing_time'] += latency

        self._request_times.append(latency)
        if len(self._request_times) > 1000:
            self._request_times = self._request_times[-1000:]

    def get_statistics(self) -> Dict[str, Any]:
        times = self._request_times
        return {
            **self.metrics,
            'avg_latency': sum(times) / len(times) if times else 0.0,
            'max_latency': max(times) if times else 0.0,
        }
