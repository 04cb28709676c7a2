"""
docpipe - Admission-controlled batch document processing

Schedules documents from many owners through a staged enrichment pipeline
with bounded concurrency, while every capacity-consuming call is admitted
against a shared rolling-window budget.
"""

__version__ = "1.0.0"

from .core.admission import AdmissionController
from .core.config_manager import ConfigurationManager
from .core.config_models import DocpipeConfig
from .ingestion.pipeline import DocumentPipeline

__all__ = [
    "AdmissionController",
    "ConfigurationManager",
    "DocpipeConfig",
    "DocumentPipeline",
]
