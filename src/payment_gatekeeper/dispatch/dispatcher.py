"""Asynchronous job dispatcher with bounded retries.

Jobs are small units of work (deliver one alert to one recipient, send one
downsell offer, reconcile one channel membership) executed by a pool of
asyncio workers consuming a single queue. Each job carries its own attempt
budget; a job whose attempts are exhausted is handed to every registered
dead-letter sink. A failing job never affects its siblings.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from prometheus_client import Counter, Histogram

if TYPE_CHECKING:
    from payment_gatekeeper.dispatch.dead_letter import DeadLetterSink

logger = logging.getLogger(__name__)


# ============================================================================
# Prometheus Metrics
# ============================================================================

JOBS_TOTAL = Counter(
    "gatekeeper_jobs_total",
    "Total number of dispatched jobs by final outcome",
    ["kind", "outcome"],
)

JOB_ATTEMPTS = Counter(
    "gatekeeper_job_attempts_total",
    "Total number of job execution attempts",
    ["kind"],
)

JOB_DURATION = Histogram(
    "gatekeeper_job_duration_seconds",
    "Time from first attempt to final outcome",
    ["kind"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 180.0],
)


class DispatchError(Exception):
    """Base exception for dispatcher errors."""

    pass


class UnknownJobKindError(DispatchError):
    """Raised when enqueuing a job no handler is registered for."""

    pass


class JobTimeoutError(DispatchError):
    """Raised when a job attempt exceeds its timeout."""

    pass


class SkipJob(Exception):
    """Raised by a handler to end a job without retrying.

    Used for permanent conditions such as a blocked recipient or an offer
    that is no longer usable.
    """

    pass


class JobOutcome(str, Enum):
    """Lifecycle state of a dispatch job."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and timing of a job.

    Attributes:
        max_attempts: Total attempts, including the first one.
        timeout_seconds: Per-attempt timeout, None for no timeout.
        backoff_seconds: Delay before the second attempt.
        backoff_multiplier: Growth factor of the delay between attempts.
    """

    max_attempts: int = 3
    timeout_seconds: float | None = None
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Return the delay to wait after a failed attempt (1-based)."""
        return self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))

    @classmethod
    def time_sensitive(cls, *, backoff_seconds: float = 1.0) -> RetryPolicy:
        """Policy for messages that lose their value when late."""
        return cls(max_attempts=3, timeout_seconds=60.0, backoff_seconds=backoff_seconds)


@dataclass
class DispatchJob:
    """A unit of work for the dispatcher.

    ``context`` is scratch state owned by the handler; it survives retries of
    the same job.
    """

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    recipient_id: int | None = None
    policy: RetryPolicy | None = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    outcome: JobOutcome = JobOutcome.PENDING
    last_error: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "payload": dict(self.payload),
            "recipient_id": self.recipient_id,
            "attempts": self.attempts,
            "outcome": self.outcome.value,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
        }


JobHandler = Callable[[DispatchJob], Awaitable[None]]


class JobDispatcher:
    """Worker pool executing dispatch jobs with bounded retries.

    Example:
        ```python
        dispatcher = JobDispatcher(dead_letter_sinks=[LoggingDeadLetterSink()])
        dispatcher.register("alert.deliver", broadcaster.deliver)
        await dispatcher.start(workers=4)
        dispatcher.enqueue(DispatchJob(kind="alert.deliver", payload={...}))
        await dispatcher.join()
        await dispatcher.stop()
        ```
    """

    def __init__(
        self,
        *,
        default_policy: RetryPolicy | None = None,
        dead_letter_sinks: Sequence[DeadLetterSink] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            default_policy: Policy for jobs whose kind registered none.
            dead_letter_sinks: Hooks invoked for every job that fails terminally.
            sleep: Coroutine used to wait between attempts.
        """
        self.default_policy = default_policy or RetryPolicy()
        self._sinks: list[DeadLetterSink] = list(dead_letter_sinks)
        self._sleep = sleep
        self._handlers: dict[str, JobHandler] = {}
        self._policies: dict[str, RetryPolicy] = {}
        self._queue: asyncio.Queue[DispatchJob] = asyncio.Queue()
        self._workers: list[asyncio.Task[None]] = []
        self._delayed: dict[asyncio.Task[None], DispatchJob] = {}
        self._running: dict[int, DispatchJob] = {}

    @property
    def is_running(self) -> bool:
        """Return True if workers are consuming the queue."""
        return bool(self._workers)

    @property
    def pending_count(self) -> int:
        """Return the number of queued and delayed jobs."""
        return self._queue.qsize() + len(self._delayed)

    def register(
        self, kind: str, handler: JobHandler, *, policy: RetryPolicy | None = None
    ) -> None:
        """Register the handler (and optionally the policy) for a job kind."""
        self._handlers[kind] = handler
        if policy is not None:
            self._policies[kind] = policy

    def add_dead_letter_sink(self, sink: DeadLetterSink) -> None:
        """Register a hook for terminally failed jobs."""
        self._sinks.append(sink)

    def policy_for(self, job: DispatchJob) -> RetryPolicy:
        """Return the effective policy of a job."""
        return job.policy or self._policies.get(job.kind) or self.default_policy

    def enqueue(self, job: DispatchJob, *, delay: float | None = None) -> DispatchJob:
        """Queue a job without blocking the caller.

        Args:
            job: Job to execute.
            delay: Seconds to hold the job before queuing it.

        Raises:
            UnknownJobKindError: If no handler is registered for the job kind.
        """
        if job.kind not in self._handlers:
            raise UnknownJobKindError(f"No handler registered for job kind {job.kind!r}")

        if delay is not None and delay > 0:
            task = asyncio.get_running_loop().create_task(self._enqueue_later(job, delay))
            self._delayed[task] = job
            task.add_done_callback(lambda t: self._delayed.pop(t, None))
            logger.debug("Job %s (%s) delayed by %.1fs", job.job_id, job.kind, delay)
        else:
            self._queue.put_nowait(job)
        return job

    async def _enqueue_later(self, job: DispatchJob, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(job)

    async def start(self, workers: int = 4) -> None:
        """Start the worker pool."""
        if self._workers:
            return
        loop = asyncio.get_running_loop()
        self._workers = [
            loop.create_task(self._worker(i), name=f"dispatch-worker-{i}")
            for i in range(workers)
        ]
        logger.info("Job dispatcher started with %d workers", workers)

    async def join(self) -> None:
        """Wait until every queued and delayed job has settled.

        Requires running workers when the queue is not empty.
        """
        while True:
            if self._delayed:
                await asyncio.gather(*list(self._delayed), return_exceptions=True)
                continue
            await self._queue.join()
            if not self._delayed:
                return

    async def stop(self) -> None:
        """Stop the workers and dead-letter every job that did not finish.

        Jobs interrupted mid-run, still queued or still waiting for their
        delay are failed with ``last_error = "dispatcher stopped"`` so the
        sinks keep a record of them.
        """
        interrupted = list(self._running.values())
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._running.clear()

        delayed = list(self._delayed.items())
        self._delayed.clear()
        for task, _ in delayed:
            task.cancel()
        await asyncio.gather(*(task for task, _ in delayed), return_exceptions=True)

        abandoned = [job for job in interrupted if job.outcome is JobOutcome.PENDING]
        while not self._queue.empty():
            abandoned.append(self._queue.get_nowait())
            self._queue.task_done()
        abandoned.extend(job for task, job in delayed if task.cancelled())

        for job in abandoned:
            job.last_error = "dispatcher stopped"
            await self._fail(job)
        if abandoned:
            logger.warning("Job dispatcher stopped with %d unfinished jobs", len(abandoned))
        logger.info("Job dispatcher stopped")

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self._running[index] = job
            try:
                await self.run_job(job)
            except Exception as e:
                logger.exception("Worker %d failed on job %s: %s", index, job.job_id, e)
            finally:
                self._running.pop(index, None)
                self._queue.task_done()

    async def _attempt(self, handler: JobHandler, job: DispatchJob, policy: RetryPolicy) -> None:
        if policy.timeout_seconds is None:
            await handler(job)
            return
        try:
            await asyncio.wait_for(handler(job), timeout=policy.timeout_seconds)
        except TimeoutError as e:
            raise JobTimeoutError(
                f"Attempt timed out after {policy.timeout_seconds:g}s"
            ) from e

    async def run_job(self, job: DispatchJob) -> JobOutcome:
        """Execute a job in the calling task, retrying per its policy.

        Returns:
            The final outcome, also stored on the job.
        """
        handler = self._handlers.get(job.kind)
        if handler is None:
            job.last_error = f"No handler registered for job kind {job.kind!r}"
            return await self._fail(job)

        policy = self.policy_for(job)
        started = time.monotonic()

        while job.attempts < policy.max_attempts:
            job.attempts += 1
            JOB_ATTEMPTS.labels(kind=job.kind).inc()
            try:
                await self._attempt(handler, job, policy)
            except SkipJob as e:
                job.outcome = JobOutcome.SKIPPED
                logger.info("Job %s (%s) skipped: %s", job.job_id, job.kind, e)
                break
            except Exception as e:
                job.last_error = f"{type(e).__name__}: {e}"
                if job.attempts >= policy.max_attempts:
                    break
                delay = max(policy.delay_for(job.attempts), getattr(e, "retry_after", 0) or 0)
                logger.warning(
                    "Job %s (%s) attempt %d/%d failed: %s; retrying in %.1fs",
                    job.job_id,
                    job.kind,
                    job.attempts,
                    policy.max_attempts,
                    job.last_error,
                    delay,
                )
                await self._sleep(delay)
            else:
                job.outcome = JobOutcome.SUCCEEDED
                break

        JOB_DURATION.labels(kind=job.kind).observe(time.monotonic() - started)
        if job.outcome is JobOutcome.PENDING:
            return await self._fail(job)
        JOBS_TOTAL.labels(kind=job.kind, outcome=job.outcome.value).inc()
        return job.outcome

    async def _fail(self, job: DispatchJob) -> JobOutcome:
        job.outcome = JobOutcome.FAILED
        JOBS_TOTAL.labels(kind=job.kind, outcome=job.outcome.value).inc()
        logger.error(
            "Job %s (%s) failed after %d attempts: %s",
            job.job_id,
            job.kind,
            job.attempts,
            job.last_error,
        )
        for sink in self._sinks:
            try:
                await sink.record(job)
            except Exception as e:
                logger.error(
                    "Dead-letter sink %s failed for job %s: %s",
                    type(sink).__name__,
                    job.job_id,
                    e,
                )
        return job.outcome
