"""
inference_gate.py — concurrency / rate governor in front of the inference service.

Every upstream call (vision extraction, embeddings) goes through
InferenceGate.submit(). Two limits hold at every instant:

  • at most `max_concurrency` calls in flight
  • at most `rate_max_calls` calls started per sliding `rate_window_secs`

Callers that cannot start immediately wait in a FIFO queue. When the queue
already holds `max_queue` callers, submit() raises Overloaded instead of
queueing.

Retries live here and only here. Each submission runs a small state machine:

    IDLE → CALLING → DONE
                   ↘ RETRY_WAIT → CALLING → …  → FAILED

A slot is acquired before every attempt and released when that attempt
finishes (success, failure or cancellation), so retries never push the
in-flight count past the limit. Backoff sleeps happen without holding a slot.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from errors import (
    ConfigurationError,
    Overloaded,
    Timeout,
    TransientFailure,
    UpstreamError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RECENT_CALLS = 100


class CallState(str, Enum):
    IDLE       = "idle"
    CALLING    = "calling"
    RETRY_WAIT = "retry_wait"
    DONE       = "done"
    FAILED     = "failed"


@dataclass
class CallRecord:
    """Lifecycle of one submit() — kept so retry behaviour is observable."""
    label: str
    state: CallState = CallState.IDLE
    attempts: int = 0
    transitions: list[CallState] = field(default_factory=lambda: [CallState.IDLE])
    error: Optional[str] = None

    def move(self, state: CallState) -> None:
        logger.debug("[gate:%s] %s → %s", self.label, self.state.value, state.value)
        self.state = state
        self.transitions.append(state)


@dataclass
class GateStats:
    running: int
    queued: int
    submitted: int
    succeeded: int
    failed: int
    retried: int
    shed: int

    def as_dict(self) -> dict:
        return dict(self.__dict__)


class InferenceGate:

    def __init__(
        self,
        max_concurrency: int,
        rate_max_calls: int,
        rate_window_secs: float,
        max_queue: int,
        max_retries: int = 2,
        backoff_base_secs: float = 0.5,
        backoff_max_secs: float = 8.0,
        call_timeout_secs: float = 45.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrency < 1 or rate_max_calls < 1 or rate_window_secs <= 0:
            raise ConfigurationError(
                f"Gate limits must be positive (C={max_concurrency}, "
                f"R={rate_max_calls}, T={rate_window_secs})"
            )
        if max_queue < 0 or max_retries < 0:
            raise ConfigurationError("Gate queue bound and retry count cannot be negative")

        self._max_concurrency = max_concurrency
        self._rate_max_calls  = rate_max_calls
        self._rate_window     = rate_window_secs
        self._max_queue       = max_queue
        self._max_retries     = max_retries
        self._backoff_base    = backoff_base_secs
        self._backoff_max     = backoff_max_secs
        self._call_timeout    = call_timeout_secs
        self._clock           = clock

        # Slot accounting. Only touched from the event loop thread, and never
        # across an await, so every check-and-take below is atomic.
        self._running = 0
        self._window: deque[float] = deque()      # start times of recent calls
        self._waiters: deque[asyncio.Event] = deque()

        self._submitted = 0
        self._succeeded = 0
        self._failed    = 0
        self._retried   = 0
        self._shed      = 0
        self._recent: deque[CallRecord] = deque(maxlen=_RECENT_CALLS)

    # ── Public API ─────────────────────────────────────────────────────────────

    async def submit(self, call: Callable[[], Awaitable[T]], label: str = "inference") -> T:
        """
        Run `call` under the Gate's limits, retrying transient failures.

        `call` is a zero-arg coroutine factory, invoked once per attempt.

        Raises:
            Overloaded     — wait queue full at submission (nothing was called)
            RejectedInput  — upstream refused the input; not retried
            Timeout        — every attempt timed out
            UpstreamError  — retries exhausted on other transient failures
        """
        record = CallRecord(label=label)
        self._recent.append(record)
        self._submitted += 1

        attempt = 0
        while True:
            await self._acquire(admit=(attempt == 0), record=record)
            record.move(CallState.CALLING)
            record.attempts += 1
            try:
                result = await asyncio.wait_for(call(), timeout=self._call_timeout)
            except asyncio.TimeoutError:
                failure = TransientFailure(
                    f"no response within {self._call_timeout:g}s", timed_out=True,
                )
            except TransientFailure as exc:
                failure = exc
            except asyncio.CancelledError:
                record.error = "cancelled"
                record.move(CallState.FAILED)
                self._failed += 1
                raise
            except Exception as exc:
                record.error = str(exc)
                record.move(CallState.FAILED)
                self._failed += 1
                raise
            else:
                record.move(CallState.DONE)
                self._succeeded += 1
                return result
            finally:
                self._release()

            record.error = str(failure)
            if attempt >= self._max_retries:
                record.move(CallState.FAILED)
                self._failed += 1
                logger.error(
                    "[gate:%s] giving up after %d attempt(s): %s",
                    label, record.attempts, failure,
                )
                if failure.timed_out:
                    raise Timeout(f"{label}: {failure}") from failure
                raise UpstreamError(f"{label}: {failure}") from failure

            delay = self.backoff_delay(attempt)
            record.move(CallState.RETRY_WAIT)
            self._retried += 1
            logger.warning(
                "[gate:%s] attempt %d failed (%s), retrying in %.2fs",
                label, record.attempts, failure, delay,
            )
            await asyncio.sleep(delay)
            attempt += 1

    def backoff_delay(self, attempt: int) -> float:
        """base × 2^attempt, capped."""
        return min(self._backoff_base * (2 ** attempt), self._backoff_max)

    def stats(self) -> GateStats:
        return GateStats(
            running=self._running,
            queued=len(self._waiters),
            submitted=self._submitted,
            succeeded=self._succeeded,
            failed=self._failed,
            retried=self._retried,
            shed=self._shed,
        )

    def recent_calls(self) -> list[CallRecord]:
        return list(self._recent)

    # ── Slot accounting ────────────────────────────────────────────────────────

    def _prune_window(self, now: float) -> None:
        while self._window and now - self._window[0] >= self._rate_window:
            self._window.popleft()

    def _try_take(self) -> bool:
        now = self._clock()
        self._prune_window(now)
        if self._running >= self._max_concurrency:
            return False
        if len(self._window) >= self._rate_max_calls:
            return False
        self._running += 1
        self._window.append(now)
        return True

    def _window_wait(self) -> Optional[float]:
        """Seconds until the oldest window entry expires, or None if the window has room."""
        self._prune_window(self._clock())
        if len(self._window) < self._rate_max_calls:
            return None
        return max(0.0, self._window[0] + self._rate_window - self._clock())

    async def _acquire(self, admit: bool, record: CallRecord) -> None:
        if not self._waiters and self._try_take():
            return

        # Retries of an already-admitted call are never shed
        if admit and len(self._waiters) >= self._max_queue:
            self._shed += 1
            record.error = "overloaded"
            record.move(CallState.FAILED)
            logger.warning(
                "[gate:%s] shedding load: %d waiting, %d running",
                record.label, len(self._waiters), self._running,
            )
            raise Overloaded(
                f"Inference queue full ({len(self._waiters)} waiting); retry later"
            )

        waiter = asyncio.Event()
        self._waiters.append(waiter)
        try:
            while True:
                if self._waiters[0] is waiter and self._try_take():
                    return
                waiter.clear()
                # Only the head watches the window; it wakes the next waiter when it leaves
                timeout = self._window_wait() if self._waiters[0] is waiter else None
                try:
                    await asyncio.wait_for(waiter.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass   # a window slot may have expired
        finally:
            self._waiters.remove(waiter)
            self._wake_head()

    def _release(self) -> None:
        self._running -= 1
        self._wake_head()

    def _wake_head(self) -> None:
        if self._waiters:
            self._waiters[0].set()
