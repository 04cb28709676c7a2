"""
Core building blocks: admission control, error handling and configuration.
"""

from .admission import AdmissionController, BudgetStatus, RateBudget, Waiter, estimate_cost
from .config_manager import ConfigurationManager
from .config_models import DocpipeConfig
from .error_classifier import ErrorCategory, ErrorClassifier, extract_retry_after
from .exceptions import (
    AnalysisError,
    CapacityExceededError,
    CapacityRequestTooLargeError,
    ConfigurationError,
    DocpipeError,
    IndexingError,
    MissingIdentityFieldError,
    PersistenceError,
)

__all__ = [
    # Admission control
    "AdmissionController",
    "BudgetStatus",
    "RateBudget",
    "Waiter",
    "estimate_cost",
    # Errors
    "ErrorCategory",
    "ErrorClassifier",
    "extract_retry_after",
    "DocpipeError",
    "CapacityExceededError",
    "CapacityRequestTooLargeError",
    "AnalysisError",
    "IndexingError",
    "PersistenceError",
    "MissingIdentityFieldError",
    "ConfigurationError",
    # Configuration
    "ConfigurationManager",
    "DocpipeConfig",
]
