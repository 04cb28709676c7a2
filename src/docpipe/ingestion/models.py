"""
Work item data model.

A ``WorkItem`` is created when a document is enqueued, mutated only by the
stage pipeline executing it, and handed to the persistence collaborator in
its finalized form.
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkStatus(Enum):
    """Coarse lifecycle status of a work item."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class Stage(Enum):
    """Pipeline stages, in execution order."""

    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    CATEGORIZING = "categorizing"
    COMPLETE = "complete"
    ERROR = "error"


PROCESSING_STAGES = (Stage.INITIALIZING, Stage.ANALYZING, Stage.EXTRACTING, Stage.CATEGORIZING)


class DocumentCategory(Enum):
    UNKNOWN = "UNKNOWN"
    UNPROCESSED = "UNPROCESSED"
    ERROR = "ERROR"


class AlertType(Enum):
    ERROR = "ERROR"
    ALERT = "ALERT"
    DELAYED = "DELAYED"
    INCORRECT_OWNER = "INCORRECT_OWNER"


@dataclass
class Alert:
    """Non-fatal annotation describing a degraded condition on an item."""

    type: AlertType
    description: str
    source: str = "SERVER_API_CALL"
    timestamp: str = field(default_factory=utc_now_iso)
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "source": self.source,
            "timestamp": self.timestamp,
            "acknowledged": self.acknowledged,
        }


def empty_content() -> Dict[str, Any]:
    return {
        "analysis_result": None,
        "extracted_schemas": [],
        "enriched_schemas": [],
        "page_images": [],
    }


# Fields analysis results may never overwrite.
PROTECTED_FIELDS = frozenset({"id", "owner_id", "content_ref", "status", "stage", "alerts"})


@dataclass
class WorkItem:
    """A document tracked through the pipeline."""

    # Identity
    id: str
    owner_id: str
    content_ref: str
    original_name: Optional[str] = None
    mime_type: Optional[str] = None

    # Lifecycle
    status: WorkStatus = WorkStatus.QUEUED
    stage: Optional[Stage] = None

    # Result fields, populated progressively by stages
    category: Optional[str] = None
    title: Optional[str] = None
    size: Optional[int] = None
    page_count: Optional[int] = None
    format: Optional[Dict[str, str]] = None
    document_date: Optional[str] = None
    upload_date: Optional[str] = None
    processed_at: Optional[str] = None
    author: Optional[str] = None
    source_system: Optional[str] = None
    confidence: Optional[float] = None
    content: Optional[Dict[str, Any]] = None
    failed_stage: Optional[str] = None

    # Owner verification
    is_incorrect_owner: bool = False
    detected_owner_info: Optional[Dict[str, Optional[str]]] = None

    alerts: List[Alert] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_request(
        cls,
        id: str,
        owner_id: str,
        content_ref: str,
        initial_metadata: Optional[Dict[str, Any]] = None,
    ) -> "WorkItem":
        """Build an item from an enqueue request; known metadata keys become fields."""
        item = cls(id=id, owner_id=owner_id, content_ref=content_ref)
        if initial_metadata:
            item.merge_fields(initial_metadata)
        return item

    def merge_fields(self, values: Dict[str, Any]) -> None:
        """
        Merge analysis output into the item.

        Known attributes are assigned; identity and lifecycle fields are left
        untouched, and an existing ``original_name`` is kept; ``content`` is
        merged key by key; anything else lands in ``metadata``.
        """
        known = {f.name for f in fields(self)}
        for key, value in values.items():
            if key in PROTECTED_FIELDS:
                continue
            if key == "original_name" and self.original_name:
                continue
            if key == "content" and isinstance(value, dict):
                self.content = {**(self.content or empty_content()), **value}
            elif key == "metadata" and isinstance(value, dict):
                self.metadata.update(value)
            elif key in known:
                setattr(self, key, value)
            else:
                self.metadata[key] = value

    def add_alert(self, alert_type: AlertType, description: str) -> Alert:
        alert = Alert(type=alert_type, description=description)
        self.alerts.append(alert)
        return alert

    def has_alert(self, alert_type: AlertType) -> bool:
        return any(alert.type == alert_type for alert in self.alerts)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["stage"] = self.stage.value if self.stage else None
        data["alerts"] = [alert.to_dict() for alert in self.alerts]
        return data


@dataclass
class StageEvent:
    """
    A notification produced by the pipeline.

    Events are plain values; publishing them is the dispatcher's job.
    """

    item_id: str
    owner_id: str
    status: WorkStatus
    stage: Stage
    payload: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def topic(self) -> str:
        return self.owner_id

    def to_dict(self) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "item_id": self.item_id,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "stage": self.stage.value,
        }
        if self.payload is not None:
            event["payload"] = self.payload
        if self.error is not None:
            event["error"] = self.error
        return event


@dataclass
class ProcessingResult:
    """Outcome of running one item through the pipeline."""

    item_id: str
    owner_id: str
    success: bool
    processing_time: float
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "owner_id": self.owner_id,
            "success": self.success,
            "processing_time": self.processing_time,
            "failed_stage": self.failed_stage,
            "error_message": self.error_message,
        }
