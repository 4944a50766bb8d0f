"""Dead-letter sinks for terminally failed dispatch jobs."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Protocol

from redis.exceptions import RedisError

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from payment_gatekeeper.dispatch.dispatcher import DispatchJob

logger = logging.getLogger(__name__)

DEFAULT_STREAM_NAME = "gatekeeper:dead-letter"
DEFAULT_MAX_LEN = 10_000


class DeadLetterError(Exception):
    """Raised when a failed job cannot be recorded."""

    pass


class DeadLetterSink(Protocol):
    """Protocol for hooks receiving terminally failed jobs."""

    async def record(self, job: DispatchJob) -> None:
        """Record a failed job."""
        ...


def _serialize_job(job: DispatchJob) -> dict[str, str]:
    """Serialize a job to string fields for a Redis Stream entry."""
    return {
        "job_id": job.job_id,
        "kind": job.kind,
        "recipient_id": "" if job.recipient_id is None else str(job.recipient_id),
        "payload": json.dumps(job.payload, default=str, sort_keys=True),
        "attempts": str(job.attempts),
        "last_error": job.last_error or "",
        "created_at": job.created_at.isoformat(),
    }


class LoggingDeadLetterSink:
    """Sink that writes failed jobs to the log."""

    async def record(self, job: DispatchJob) -> None:
        logger.error("Dead-lettered job: %s", json.dumps(job.to_dict(), default=str))


class RedisDeadLetterSink:
    """Sink appending failed jobs to a capped Redis Stream.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        sink = RedisDeadLetterSink(redis, stream_name="gatekeeper:dead-letter")
        dispatcher = JobDispatcher(dead_letter_sinks=[sink])
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        stream_name: str = DEFAULT_STREAM_NAME,
        max_len: int = DEFAULT_MAX_LEN,
    ) -> None:
        """Initialize the sink.

        Args:
            redis: Async Redis client.
            stream_name: Stream receiving the entries.
            max_len: Approximate cap on the stream length.
        """
        self.redis = redis
        self.stream_name = stream_name
        self.max_len = max_len

    async def record(self, job: DispatchJob) -> None:
        """Append a failed job to the stream.

        Raises:
            DeadLetterError: If Redis rejects the entry.
        """
        try:
            entry_id = await self.redis.xadd(
                self.stream_name,
                _serialize_job(job),  # type: ignore[arg-type]
                maxlen=self.max_len,
                approximate=True,
            )
        except RedisError as e:
            raise DeadLetterError(f"Failed to dead-letter job {job.job_id}: {e}") from e

        entry = entry_id.decode() if isinstance(entry_id, bytes) else entry_id
        logger.debug("Dead-lettered job %s as %s", job.job_id, entry)

    async def read_recent(self, count: int = 10) -> list[dict[str, str]]:
        """Return the most recent entries, newest first."""
        entries = await self.redis.xrevrange(self.stream_name, count=count)
        decoded = []
        for _entry_id, data in entries:
            decoded.append(
                {
                    (k.decode() if isinstance(k, bytes) else k): (
                        v.decode() if isinstance(v, bytes) else v
                    )
                    for k, v in data.items()
                }
            )
        return decoded
