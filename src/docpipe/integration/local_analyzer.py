"""
Local text analyzer.

A lightweight Analysis Collaborator for plain-text files, used by the CLI.
It goes through the same admission control as a remote analyzer so budget
behavior can be observed locally.
"""

import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, List

from ..core.admission import AdmissionController
from ..core.exceptions import AnalysisError
from ..ingestion.models import WorkItem
from .analysis_client import ContentLoader, read_local_file

logger = logging.getLogger(__name__)

PAGE_BREAK = "\f"


class TextFileAnalyzer:
    """Derives title, size, pages and line text from a local text file."""

    def __init__(self, admission: AdmissionController, load_content: ContentLoader = read_local_file):
        self.admission = admission
        self.load_content = load_content

    async def analyze(self, content_ref: str, item: WorkItem) -> Dict[str, Any]:
        try:
            text = await self.load_content(content_ref)
        except OSError as e:
            raise AnalysisError(f"Cannot read {content_ref}: {e}") from e

        await self.admission.reserve(self.admission.estimate_cost(text), label=f"analyze:{item.id}")

        name = Path(content_ref).name
        pages = text.split(PAGE_BREAK)
        title = next((line.strip() for line in text.splitlines() if line.strip()), name)

        logger.debug(f"Analyzed {content_ref}: {len(pages)} page(s), {len(text)} chars")
        return {
            "original_name": item.original_name or name,
            "mime_type": mimetypes.guess_type(name)[0] or "text/plain",
            "title": title[:200],
            "size": len(text.encode("utf-8")),
            "page_count": len(pages),
            "content": {"analysis_result": {"pages": self._pages(pages)}},
        }

    @staticmethod
    def _pages(pages: List[str]) -> List[Dict[str, Any]]:
        return [
            {
                "page_number": number,
                "lines": [{"content": line} for line in page.splitlines() if line.strip()],
            }
            for number, page in enumerate(pages, start=1)
        ]
