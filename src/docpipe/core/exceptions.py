"""
Exception hierarchy for docpipe.
"""

from typing import Optional


class DocpipeError(Exception):
    """Base exception for all docpipe errors."""

    pass


class ConfigurationError(DocpipeError):
    """Raised when configuration cannot be loaded or validated."""

    pass


class CapacityExceededError(DocpipeError):
    """Raised by a capacity-consuming call that was rejected upstream (HTTP 429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after
        self.status_code = 429


class CapacityRequestTooLargeError(DocpipeError):
    """Raised when a reservation can never fit inside the budget limit."""

    pass


class AnalysisError(DocpipeError):
    """Analysis collaborator failure."""

    pass


class IndexingError(DocpipeError):
    """Enrichment/indexing collaborator failure."""

    pass


class PersistenceError(DocpipeError):
    """Persistence collaborator failure."""

    pass


class MissingIdentityFieldError(DocpipeError):
    """A work item lacks a field required to identify it."""

    def __init__(self, field_name: str):
        super().__init__(f"Missing required field: {field_name}")
        self.field_name = field_name
