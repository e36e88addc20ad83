"""
Dead-letter sink for jobs that exhausted their retry budget.

Entries live in a Redis stream next to the queue they came from and are never
retried automatically. Replay is an explicit operator action (see cli.main).
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from config import ERROR_DETAIL_MAX_LENGTH, REDIS_PREFIX
from pipeline.errors import DeadLetterAdmissionError, truncate_error
from pipeline.job_queue import JobQueue, dead_letter_key
from pipeline.models import DeadLetterEntry, QueuedJob

logger = logging.getLogger(__name__)


class DeadLetterSink:
    """Durable store of failed jobs for one queue."""

    def __init__(self, redis: Redis, queue_name: str, notifier=None, prefix: str = REDIS_PREFIX) -> None:
        """
        Args:
            redis: Connected Redis client (decode_responses=True)
            queue_name: Name of the queue whose failures land here
            notifier: Optional object with an async notify_dead_letter(entry) method
            prefix: Key prefix shared by all queues
        """
        self._redis = redis
        self.queue_name = queue_name
        self.notifier = notifier
        self.stream_name = dead_letter_key(queue_name, prefix)

    def __repr__(self) -> str:
        return f"DeadLetterSink(queue={self.queue_name!r})"

    async def admit(self, queued: QueuedJob, error: str, attempts: Optional[int] = None) -> DeadLetterEntry:
        """
        Record a failed job.

        The payload is stored exactly as it was delivered. Notification
        failures are logged and do not affect admission.

        Args:
            queued: The delivery that failed for the last time
            error: Description of the final error
            attempts: Number of attempts made (defaults to attempts_made + 1)

        Raises:
            DeadLetterAdmissionError: If the entry could not be written
        """
        entry = DeadLetterEntry(
            entry_id="",
            job_id=queued.job_id,
            queue_name=self.queue_name,
            payload=queued.payload,
            error=truncate_error(error, ERROR_DETAIL_MAX_LENGTH),
            attempts=attempts if attempts is not None else queued.attempts_made + 1,
            failed_at=datetime.now(timezone.utc),
            entity_id=queued.entity_id,
        )
        try:
            entry_id = await self._redis.xadd(self.stream_name, entry.to_stream_dict())
        except RedisError as e:
            raise DeadLetterAdmissionError(
                f"Failed to dead-letter job {queued.job_id}: {e}", entity_id=entry.entity_id
            ) from e

        entry = DeadLetterEntry.from_stream_dict(entry_id, entry.to_stream_dict())
        logger.error(
            f"[{queued.job_id}] Moved to dead-letter queue {self.stream_name} "
            f"after {entry.attempts} attempt(s): {entry.error}"
        )

        if self.notifier is not None:
            try:
                await self.notifier.notify_dead_letter(entry)
            except Exception as e:
                logger.warning(f"[{queued.job_id}] Dead-letter notification failed: {e}")
        return entry

    async def list_entries(self, count: int = 100) -> List[DeadLetterEntry]:
        """Oldest-first listing of dead-lettered jobs."""
        messages = await self._redis.xrange(self.stream_name, count=count)
        return [DeadLetterEntry.from_stream_dict(entry_id, data) for entry_id, data in messages]

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        messages = await self._redis.xrange(self.stream_name, min=entry_id, max=entry_id, count=1)
        if not messages:
            return None
        found_id, data = messages[0]
        return DeadLetterEntry.from_stream_dict(found_id, data)

    async def remove(self, entry_id: str) -> bool:
        return bool(await self._redis.xdel(self.stream_name, entry_id))

    async def replay(self, entry_id: str, queue: JobQueue) -> Optional[QueuedJob]:
        """
        Re-enqueue a dead-lettered job with a fresh attempt budget.

        The original payload is published unchanged under the original job id,
        then the entry is removed.

        Returns:
            The new queue entry, or None if the entry does not exist
        """
        entry = await self.get(entry_id)
        if entry is None:
            return None
        queued = await queue.enqueue(entry.payload, job_id=entry.job_id)
        await self.remove(entry_id)
        logger.info(f"Replayed dead-letter entry {entry_id} as job {queued.job_id} on {queue.name}")
        return queued

    async def count(self) -> int:
        return await self._redis.xlen(self.stream_name)

    async def purge(self) -> int:
        """Delete every entry; returns how many were removed."""
        total = await self._redis.xlen(self.stream_name)
        await self._redis.delete(self.stream_name)
        if total:
            logger.warning(f"Purged {total} dead-letter entr{'y' if total == 1 else 'ies'} from {self.stream_name}")
        return total
