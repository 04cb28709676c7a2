"""
Paced page rendering for multi-page documents.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List

from .collaborators import PageRenderer

logger = logging.getLogger(__name__)

MAX_PAGES_PER_BATCH = 5
PROCESSING_DELAY_SECONDS = 0.1


async def render_pages(
    renderer: PageRenderer,
    content_ref: str,
    page_count: int,
    batch_size: int = MAX_PAGES_PER_BATCH,
    delay: float = PROCESSING_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> List[str]:
    """
    Render pages ``1..page_count`` in sub-batches of ``batch_size``.

    Pages within a sub-batch render concurrently; a pacing delay separates
    consecutive sub-batches.
    Results are returned in page order.
    """
    images: List[str] = []
    if page_count < 1:
        return images

    for batch_start in range(1, page_count + 1, batch_size):
        batch_end = min(batch_start + batch_size - 1, page_count)
        batch = await asyncio.gather(
            *(renderer.render_page(content_ref, page) for page in range(batch_start, batch_end + 1))
        )
        images.extend(batch)
        logger.debug(f"Rendered pages {batch_start}-{batch_end} of {page_count} for {content_ref}")

        if batch_end < page_count:
            await sleep(delay)

    return images
