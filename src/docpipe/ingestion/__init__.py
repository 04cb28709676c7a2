"""
Admission-Controlled Document Processing Pipeline

Accepts documents from many independent owners, runs each through a staged
enrichment pipeline in bounded-concurrency batches, and reports progress as
events published to the owner's topic.

Key Components:
- Batch scheduler with duplicate suppression and pause/resume
- Per-item stage state machine with graceful degradation
- Event dispatch to a pluggable notification channel
- Periodic queue and budget snapshots
"""

from .collaborators import (
    Analyzer,
    InMemoryNotificationChannel,
    InMemoryOwnerDirectory,
    InMemoryRepository,
    Indexer,
    NoopIndexer,
    NotificationChannel,
    OwnerDirectory,
    PageRenderer,
    Repository,
)
from .models import (
    Alert,
    AlertType,
    DocumentCategory,
    ProcessingResult,
    Stage,
    StageEvent,
    WorkItem,
    WorkStatus,
)
from .monitoring import QueueMonitor, QueueSnapshot
from .notifications import EventDispatcher
from .pipeline import DocumentPipeline
from .processing_queue import BatchScheduler
from .stages import StagePipeline

__all__ = [
    # Core Pipeline
    'DocumentPipeline',
    'StagePipeline',
    'BatchScheduler',
    'EventDispatcher',

    # Monitoring
    'QueueMonitor',
    'QueueSnapshot',

    # Data Model
    'WorkItem',
    'WorkStatus',
    'Stage',
    'StageEvent',
    'Alert',
    'AlertType',
    'DocumentCategory',
    'ProcessingResult',

    # Collaborators
    'Analyzer',
    'Indexer',
    'Repository',
    'NotificationChannel',
    'PageRenderer',
    'OwnerDirectory',
    'InMemoryNotificationChannel',
    'InMemoryRepository',
    'InMemoryOwnerDirectory',
    'NoopIndexer',
]
