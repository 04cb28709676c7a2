"""
Error classification for capacity-sensitive operations.

Decides whether a failure is a capacity/rate-limit signal that deserves a
backoff retry, and extracts any retry-after hint the upstream supplied.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .exceptions import (
    AnalysisError,
    CapacityExceededError,
    IndexingError,
    MissingIdentityFieldError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_PATTERN = re.compile(r"retry after (\d+(?:\.\d+)?)", re.IGNORECASE)


class ErrorCategory(Enum):
    """Error categories used for retry decisions and statistics."""

    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    COLLABORATOR_ERROR = "collaborator_error"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


@dataclass
class ErrorPattern:
    """Pattern for matching and classifying errors."""

    error_types: Tuple[type, ...]
    keywords: List[str]
    category: ErrorCategory
    retryable: bool

    def matches(self, error: BaseException) -> bool:
        """Check if error matches this pattern."""
        if self.error_types and isinstance(error, self.error_types):
            return True

        error_message = str(error).lower()
        return any(keyword in error_message for keyword in self.keywords)


class ErrorClassifier:
    """
    Classifies errors raised by external collaborators.

    Only ``RATE_LIMITED`` errors are retried by the admission controller's
    retry wrapper; every other category propagates immediately.
    """

    def __init__(self) -> None:
        self.error_patterns = self._create_error_patterns()
        self.error_statistics: Dict[str, int] = {category.value: 0 for category in ErrorCategory}

    def _create_error_patterns(self) -> List[ErrorPattern]:
        return [
            ErrorPattern(
                error_types=(CapacityExceededError,),
                keywords=["rate limit", "too many requests", "429"],
                category=ErrorCategory.RATE_LIMITED,
                retryable=True,
            ),
            ErrorPattern(
                error_types=(MissingIdentityFieldError, ValueError, TypeError),
                keywords=[],
                category=ErrorCategory.VALIDATION,
                retryable=False,
            ),
            ErrorPattern(
                error_types=(AnalysisError, IndexingError, PersistenceError),
                keywords=[],
                category=ErrorCategory.COLLABORATOR_ERROR,
                retryable=False,
            ),
            ErrorPattern(
                error_types=(httpx.TransportError, asyncio.TimeoutError, ConnectionError),
                keywords=["connection", "timed out", "unreachable"],
                category=ErrorCategory.NETWORK_ERROR,
                retryable=False,
            ),
        ]

    def classify(self, error: BaseException) -> ErrorCategory:
        """Return the category of ``error``."""
        if _status_code(error) == 429:
            category = ErrorCategory.RATE_LIMITED
        else:
            category = ErrorCategory.UNKNOWN
            for pattern in self.error_patterns:
                if pattern.matches(error):
                    category = pattern.category
                    break

        self.error_statistics[category.value] += 1
        return category

    def is_capacity_error(self, error: BaseException) -> bool:
        """True when ``error`` signals an exhausted upstream capacity budget."""
        return self.classify(error) == ErrorCategory.RATE_LIMITED

    def get_statistics(self) -> Dict[str, int]:
        return dict(self.error_statistics)


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code

    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def extract_retry_after(error: BaseException) -> Optional[float]:
    """
    Extract a server-supplied retry-after hint in seconds.

    Looks at, in order: a ``retry_after`` attribute, a ``retry-after``
    response header, and a "retry after N" phrase in the message.
    """
    retry_after: Any = getattr(error, "retry_after", None)
    if retry_after is not None:
        try:
            return float(retry_after)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring malformed retry_after attribute: {retry_after!r}")

    headers = None
    if isinstance(error, httpx.HTTPStatusError):
        headers = error.response.headers
    else:
        headers = getattr(error, "response_headers", None)

    if headers:
        header_value = headers.get("retry-after")
        if header_value is not None:
            try:
                return float(header_value)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring non-numeric retry-after header: {header_value!r}")

    match = RETRY_AFTER_PATTERN.search(str(error))
    if match:
        return float(match.group(1))

    return None
