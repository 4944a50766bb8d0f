"""Dispatch layer - retrying asynchronous job execution."""

from payment_gatekeeper.dispatch.dead_letter import (
    DeadLetterError,
    DeadLetterSink,
    LoggingDeadLetterSink,
    RedisDeadLetterSink,
)
from payment_gatekeeper.dispatch.dispatcher import (
    DispatchError,
    DispatchJob,
    JobDispatcher,
    JobHandler,
    JobOutcome,
    JobTimeoutError,
    RetryPolicy,
    SkipJob,
    UnknownJobKindError,
)

__all__ = [
    "DeadLetterError",
    "DeadLetterSink",
    "DispatchError",
    "DispatchJob",
    "JobDispatcher",
    "JobHandler",
    "JobOutcome",
    "JobTimeoutError",
    "LoggingDeadLetterSink",
    "RedisDeadLetterSink",
    "RetryPolicy",
    "SkipJob",
    "UnknownJobKindError",
]
