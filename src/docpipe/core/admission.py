"""
Admission Controller - Rolling-window capacity budget for external calls.

Gates every capacity-consuming operation (LLM analysis calls and the like)
against a budget shared by all work in the process. Requests that would
exceed the budget are parked in a FIFO waiter queue and granted as soon as
capacity frees up, either because the rolling window elapsed or because the
budget was reset/enlarged explicitly.

Also provides ``execute_with_retry`` for calls that may still be rejected
upstream with a rate-limit signal.
"""

import asyncio
import logging
import math
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .config_models import AdmissionConfig
from .error_classifier import ErrorClassifier, extract_retry_after
from .exceptions import CapacityRequestTooLargeError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TOKEN_LIMIT = 400_000
DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_THROTTLE_THRESHOLD = 0.9
DEFAULT_RECHECK_INTERVAL = 0.1
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_CEILING = 128.0
LOG_MAX_ENTRIES = 50

_ALPHA = re.compile(r"[a-zA-Z]")
_DIGIT = re.compile(r"[0-9]")
_SYMBOL = re.compile(r"[^a-zA-Z0-9\s]")
_SPACE = re.compile(r"\s")


@dataclass
class Waiter:
    """A suspended admission request. Leaves the queue only once granted or abandoned."""

    amount: int
    future: "asyncio.Future[None]"
    label: str
    request_id: str
    enqueued_at: float


@dataclass
class RateBudget:
    """Capacity consumed against ``limit`` in the current rolling window."""

    limit: int
    window_seconds: float
    consumed: int = 0
    window_start: float = 0.0
    waiters: Deque[Waiter] = field(default_factory=deque)

    @property
    def available(self) -> int:
        return max(0, self.limit - self.consumed)


@dataclass
class ActiveRequest:
    amount: int
    label: str
    started_at: float


@dataclass
class RequestLogEntry:
    request_id: str
    label: str
    status: str  # 'success', 'failure' or 'rate-limited'
    amount: int
    duration: float
    timestamp: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "operation": self.label,
            "status": self.status,
            "tokens": self.amount,
            "duration": self.duration,
            "timestamp": self.timestamp,
            "error": self.error,
        }


@dataclass
class BudgetStatus:
    """Point-in-time view of the admission controller."""

    consumed: int
    limit: int
    usage_percentage: float
    queued_requests: int
    active_requests: int
    counters: Dict[str, int]
    time_to_reset: float

    @property
    def available(self) -> int:
        return max(0, self.limit - self.consumed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens_used": self.consumed,
            "token_limit": self.limit,
            "tokens_available": self.available,
            "usage_percentage": self.usage_percentage,
            "queued_requests": self.queued_requests,
            "active_requests": self.active_requests,
            "completed_requests": dict(self.counters),
            "time_to_reset": self.time_to_reset,
        }


def estimate_cost(text: Optional[str]) -> int:
    """
    Estimate capacity units for ``text`` when the exact cost is unknown.

    Letters cost ~1/4 unit, digits ~1/2.5, symbols ~1/2 and whitespace ~1/6.
    """
    if not text:
        return 0

    alpha_units = len(_ALPHA.findall(text)) / 4
    digit_units = len(_DIGIT.findall(text)) / 2.5
    symbol_units = len(_SYMBOL.findall(text)) / 2
    space_units = len(_SPACE.findall(text)) / 6

    return math.ceil(alpha_units + digit_units + symbol_units + space_units)


class AdmissionController:
    """
    Token-budget admission controller with FIFO queuing and retry support.

    The controller is an explicit instance owned by the composition root;
    callers receive it by handle. All mutation of ``budget`` happens in code
    paths with no suspension between check and debit, so under asyncio's
    cooperative scheduling no lock is needed. A threaded caller must wrap
    access in its own mutex.

    Queued waiters are granted strictly in arrival order: a large request at
    the head holds back the waiters behind it until it fits. A new request
    that fits the remaining budget while usage is at or under the throttle
    threshold is granted at once without joining the queue.
    """

    def __init__(
        self,
        limit: int = DEFAULT_TOKEN_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        throttle_threshold: float = DEFAULT_THROTTLE_THRESHOLD,
        recheck_interval: float = DEFAULT_RECHECK_INTERVAL,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_ceiling: float = DEFAULT_BACKOFF_CEILING,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        classifier: Optional[ErrorClassifier] = None,
    ):
        """
        Initialize the admission controller.

        Args:
            limit: Hard capacity limit per window
            window_seconds: Rolling window duration
            throttle_threshold: Fraction of ``limit`` above which new requests queue
            recheck_interval: Minimum wait between head-of-queue checks
            backoff_base: First retry delay for ``execute_with_retry``
            backoff_ceiling: Upper bound for a single retry delay
            clock: Monotonic time source
            sleep: Coroutine used for retry delays
            classifier: Error classifier deciding what counts as a capacity error
        """
        if limit < 1:
            raise ValueError("Capacity limit must be >= 1")
        if not 0 < throttle_threshold <= 1:
            raise ValueError("Throttle threshold must be in (0, 1]")

        self._clock = clock
        self._sleep = sleep
        self.classifier = classifier or ErrorClassifier()

        self.budget = RateBudget(limit=limit, window_seconds=window_seconds, window_start=clock())
        self.throttle_threshold = throttle_threshold
        self.recheck_interval = recheck_interval
        self.backoff_base = backoff_base
        self.backoff_ceiling = backoff_ceiling

        self._capacity_changed = asyncio.Event()
        self._drain_task: Optional["asyncio.Task[None]"] = None
        self._request_counter = 0
        self._active: Dict[str, ActiveRequest] = {}
        self.counters: Dict[str, int] = {"success": 0, "failure": 0, "rate_limited": 0, "total": 0}
        self.request_log: Deque[RequestLogEntry] = deque(maxlen=LOG_MAX_ENTRIES)

        logger.info(
            f"Admission controller initialized (limit: {limit}/{window_seconds:.0f}s, "
            f"threshold: {throttle_threshold:.0%})"
        )

    @classmethod
    def from_config(cls, config: AdmissionConfig, **kwargs: Any) -> "AdmissionController":
        return cls(
            limit=config.token_limit,
            window_seconds=config.window_seconds,
            throttle_threshold=config.throttle_threshold,
            recheck_interval=config.recheck_interval_seconds,
            backoff_base=config.backoff_base_seconds,
            backoff_ceiling=config.backoff_ceiling_seconds,
            **kwargs,
        )

    @property
    def soft_limit(self) -> float:
        return self.budget.limit * self.throttle_threshold

    async def reserve(self, amount: int, label: str = "unknown") -> None:
        """
        Debit ``amount`` capacity units, suspending until they are available.

        Args:
            amount: Capacity units the upcoming call will consume
            label: Operation name for logging

        Raises:
            CapacityRequestTooLargeError: If ``amount`` exceeds the hard limit
        """
        if amount <= 0:
            return

        if amount > self.budget.limit:
            raise CapacityRequestTooLargeError(
                f"{label} requested {amount} units, more than the {self.budget.limit} unit limit"
            )

        request_id = self._next_request_id("req")
        started_at = self._clock()
        self._active[request_id] = ActiveRequest(amount=amount, label=label, started_at=started_at)

        try:
            self._maybe_reset_window()

            if self.budget.consumed <= self.soft_limit and amount <= self.budget.available:
                self.budget.consumed += amount
            else:
                self.counters["rate_limited"] += 1
                logger.info(
                    f"[{request_id}] Rate limiting {label}: "
                    f"({self.budget.consumed}/{self.budget.limit}) "
                    f"queued behind {len(self.budget.waiters)} waiter(s), "
                    f"window resets in {self.time_to_reset():.1f}s"
                )
                await self._wait_for_capacity(amount, label, request_id)

            self.counters["total"] += 1
            self.counters["success"] += 1
            self._log_request(request_id, label, "success", amount, started_at)

        except asyncio.CancelledError:
            self.counters["total"] += 1
            self.counters["failure"] += 1
            self._log_request(request_id, label, "failure", amount, started_at, error="cancelled")
            raise

        finally:
            self._active.pop(request_id, None)

    async def _wait_for_capacity(self, amount: int, label: str, request_id: str) -> None:
        loop = asyncio.get_running_loop()
        waiter = Waiter(
            amount=amount,
            future=loop.create_future(),
            label=label,
            request_id=request_id,
            enqueued_at=self._clock(),
        )
        self.budget.waiters.append(waiter)
        self._log_request(request_id, label, "rate-limited", amount, waiter.enqueued_at)
        self._ensure_draining()

        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter in self.budget.waiters:
                self.budget.waiters.remove(waiter)
                self._capacity_changed.set()
            elif waiter.future.done() and not waiter.future.cancelled():
                # Granted in the same tick the caller was cancelled; give it back.
                self.budget.consumed = max(0, self.budget.consumed - amount)
                self._capacity_changed.set()
            raise

    def _ensure_draining(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain_waiters())

    async def _drain_waiters(self) -> None:
        """Grant queued waiters in FIFO order as capacity frees."""
        try:
            while self.budget.waiters:
                self._maybe_reset_window()

                head = self.budget.waiters[0]
                if head.future.done():
                    self.budget.waiters.popleft()
                    continue

                if head.amount <= self.budget.limit - self.budget.consumed:
                    self.budget.consumed += head.amount
                    self.budget.waiters.popleft()
                    head.future.set_result(None)
                    logger.info(
                        f"[{head.request_id}] Queue processed: {head.label} "
                        f"after {self._clock() - head.enqueued_at:.2f}s "
                        f"({self.budget.consumed}/{self.budget.limit} tokens)"
                    )
                    continue

                self._capacity_changed.clear()
                timeout = max(self.time_to_reset(), self.recheck_interval)
                try:
                    await asyncio.wait_for(self._capacity_changed.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._drain_task = None

    def _maybe_reset_window(self) -> bool:
        now = self._clock()
        if now - self.budget.window_start < self.budget.window_seconds:
            return False

        if self.budget.consumed:
            logger.debug(
                f"Budget window reset: {self.budget.consumed} tokens used, "
                f"{self.counters['success']} granted, {self.counters['rate_limited']} rate limited"
            )
        self.budget.consumed = 0
        self.budget.window_start = now
        self._capacity_changed.set()
        return True

    def time_to_reset(self) -> float:
        elapsed = self._clock() - self.budget.window_start
        return max(0.0, self.budget.window_seconds - elapsed)

    def reset(self) -> None:
        """Zero the consumed counter and restart the window."""
        self.budget.consumed = 0
        self.budget.window_start = self._clock()
        self._capacity_changed.set()
        logger.info("Admission budget reset")

    def set_limit(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("Capacity limit must be >= 1")
        self.budget.limit = limit
        self._capacity_changed.set()
        logger.info(f"Admission limit set to {limit}")

    async def close(self) -> None:
        """Stop the drain loop and fail any waiters still queued."""
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        while self.budget.waiters:
            waiter = self.budget.waiters.popleft()
            if not waiter.future.done():
                waiter.future.cancel()

    def status(self) -> BudgetStatus:
        """Snapshot of usage; also serves as the periodic window sweep."""
        self._maybe_reset_window()
        return BudgetStatus(
            consumed=self.budget.consumed,
            limit=self.budget.limit,
            usage_percentage=self.budget.consumed / self.budget.limit * 100,
            queued_requests=len(self.budget.waiters),
            active_requests=len(self._active),
            counters=dict(self.counters),
            time_to_reset=self.time_to_reset(),
        )

    def recent_requests(self) -> List[Dict[str, Any]]:
        """Logged requests, newest first."""
        return [entry.to_dict() for entry in self.request_log]

    estimate_cost = staticmethod(estimate_cost)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str = "unknown_operation",
        max_retries: int = 3,
    ) -> T:
        """
        Run ``operation``, retrying capacity errors with exponential backoff.

        The delay before retry ``n`` (0-based) is ``base * 2**n`` capped at the
        ceiling, raised to any retry-after hint carried by the error. Errors
        that are not capacity signals propagate on the first occurrence.

        Args:
            operation: Zero-argument coroutine function to run
            label: Operation name for logging
            max_retries: Retries allowed after the first attempt

        Returns:
            Whatever ``operation`` returns
        """
        request_id = self._next_request_id("retry")

        def before_sleep(retry_state: RetryCallState) -> None:
            self.counters["rate_limited"] += 1
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"[{request_id}] Rate limited ({label}), retrying in {delay:.1f}s "
                f"(attempt {retry_state.attempt_number}/{max_retries})"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=self._backoff_delay,
            retry=retry_if_exception(self.classifier.is_capacity_error),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await operation()
        except Exception as e:
            self.counters["failure"] += 1
            logger.warning(f"[{request_id}] {label} failed: {type(e).__name__}: {e}")
            raise

    def _backoff_delay(self, retry_state: RetryCallState) -> float:
        retry_index = retry_state.attempt_number - 1
        delay = min(self.backoff_base * (2 ** retry_index), self.backoff_ceiling)

        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = extract_retry_after(error) if error is not None else None
        if hint is not None:
            delay = max(delay, hint)
        return delay

    def _next_request_id(self, prefix: str) -> str:
        self._request_counter += 1
        return f"{prefix}_{self._request_counter}"

    def _log_request(
        self,
        request_id: str,
        label: str,
        status: str,
        amount: int,
        started_at: float,
        error: Optional[str] = None,
    ) -> None:
        now = self._clock()
        self.request_log.appendleft(
            RequestLogEntry(
                request_id=request_id,
                label=label,
                status=status,
                amount=amount,
                duration=now - started_at,
                timestamp=now,
                error=error,
            )
        )
