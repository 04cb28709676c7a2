"""
External collaborator contracts and in-memory implementations.

The pipeline only depends on the protocols below. The in-memory classes back
the CLI and the test suite; production deployments plug in their own
storage, search index and notification transport.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol

from .models import WorkItem

logger = logging.getLogger(__name__)


class Analyzer(Protocol):
    """Extracts structured fields from a document. May raise."""

    async def analyze(self, content_ref: str, item: WorkItem) -> Dict[str, Any]: ...


class Indexer(Protocol):
    """Adds a document to the owner's search index. Failure is never fatal."""

    async def index(self, content_ref: str, owner_id: str) -> None: ...


class Repository(Protocol):
    """Long-term storage for finalized and error records."""

    async def save(self, item: WorkItem) -> bool: ...


class NotificationChannel(Protocol):
    """Topic-scoped, at-most-once publish channel."""

    async def publish(self, topic: str, event: Dict[str, Any]) -> None: ...


class PageRenderer(Protocol):
    """Renders a single page of a document to an image reference."""

    async def render_page(self, content_ref: str, page_number: int) -> str: ...


class OwnerDirectory(Protocol):
    """Looks up the owning entity's identity details (name, date_of_birth)."""

    async def get_owner(self, owner_id: str) -> Optional[Dict[str, Any]]: ...


class InMemoryNotificationChannel:
    """Records published events per topic and fans them out to subscribers."""

    def __init__(self) -> None:
        self.events: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._subscribers: Dict[str, List["asyncio.Queue[Dict[str, Any]]"]] = defaultdict(list)

    async def publish(self, topic: str, event: Dict[str, Any]) -> None:
        self.events[topic].append(event)
        for queue in self._subscribers.get(topic, []):
            queue.put_nowait(event)

    def subscribe(self, topic: str) -> "asyncio.Queue[Dict[str, Any]]":
        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self._subscribers[topic].append(queue)
        return queue

    def events_for(self, topic: str, item_id: Optional[str] = None) -> List[Dict[str, Any]]:
        events = self.events.get(topic, [])
        if item_id is None:
            return list(events)
        return [event for event in events if event.get("item_id") == item_id]


class InMemoryRepository:
    """Keeps the latest record for each item id."""

    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}

    async def save(self, item: WorkItem) -> bool:
        self.records[item.id] = item.to_dict()
        logger.debug(f"Saved record {item.id} ({item.status.value})")
        return True

    def get(self, item_id: str) -> Optional[Dict[str, Any]]:
        return self.records.get(item_id)


class NoopIndexer:
    async def index(self, content_ref: str, owner_id: str) -> None:
        return None


class InMemoryOwnerDirectory:
    def __init__(self, owners: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.owners: Dict[str, Dict[str, Any]] = dict(owners or {})

    async def get_owner(self, owner_id: str) -> Optional[Dict[str, Any]]:
        return self.owners.get(owner_id)
