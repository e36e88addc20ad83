"""
Durable job queue for transcoding jobs, backed by Redis Streams.

Each named queue uses three keys:
- ``<prefix>:queue:<name>``              stream of ready jobs (consumer group per queue)
- ``<prefix>:queue:<name>:delayed``      sorted set of jobs waiting out a retry backoff
- ``<prefix>:queue:<name>:dead-letter``  stream of jobs that exhausted their attempts
- ``<prefix>:queue:<name>:recoveries``   hash of message id -> times reclaimed from a dead consumer

Streams are never trimmed: acknowledged messages are deleted, so the ready
stream only holds waiting and in-flight jobs, and Redis is their only copy.

Delivery is at-least-once: a message stays pending in the consumer group until
the worker acknowledges it, and messages abandoned by a crashed worker are
reclaimed after REDIS_PENDING_TIMEOUT_MS. Each reclaim counts as a spent
attempt, so a job that keeps killing its worker still reaches the dead-letter
queue. A failed attempt is acknowledged only after its retry has been
scheduled (or it has been dead-lettered).
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from redis.asyncio import Redis
from redis.exceptions import ResponseError

from config import (
    ERROR_DETAIL_MAX_LENGTH,
    REDIS_CONSUMER_BLOCK_MS,
    REDIS_CONSUMER_GROUP,
    REDIS_PENDING_TIMEOUT_MS,
    REDIS_PREFIX,
)
from pipeline.errors import truncate_error
from pipeline.models import QueuedJob, TranscodeJob
from pipeline.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

# Max delayed jobs moved back to the stream per claim
PROMOTE_BATCH_SIZE = 50


def stream_key(name: str, prefix: str = REDIS_PREFIX) -> str:
    return f"{prefix}:queue:{name}"


def dead_letter_key(name: str, prefix: str = REDIS_PREFIX) -> str:
    return f"{stream_key(name, prefix)}:dead-letter"


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """Producer and consumer operations for one named queue."""

    def __init__(
        self,
        redis: Redis,
        name: str,
        consumer_name: str = "producer",
        retry_policy: Optional[RetryPolicy] = None,
        prefix: str = REDIS_PREFIX,
        group: str = REDIS_CONSUMER_GROUP,
        block_ms: int = REDIS_CONSUMER_BLOCK_MS,
        pending_timeout_ms: int = REDIS_PENDING_TIMEOUT_MS,
    ) -> None:
        """
        Args:
            redis: Connected Redis client (decode_responses=True)
            name: Queue name, e.g. "video-processing"
            consumer_name: Unique name of this consumer within the group
            retry_policy: Attempts and backoff applied to jobs of this queue
            prefix: Key prefix shared by all queues
            group: Consumer group name
            block_ms: How long claim() blocks waiting for a new message
            pending_timeout_ms: Idle time after which a pending message is reclaimed
        """
        self._redis = redis
        self.name = name
        self.consumer_name = consumer_name
        self.retry_policy = retry_policy or RetryPolicy()
        self.group = group
        self.block_ms = block_ms
        self.pending_timeout_ms = pending_timeout_ms
        self.stream_name = stream_key(name, prefix)
        self.delayed_key = f"{self.stream_name}:delayed"
        self.recoveries_key = f"{self.stream_name}:recoveries"
        self.dead_letter_stream = dead_letter_key(name, prefix)

    def __repr__(self) -> str:
        return f"JobQueue(name={self.name!r}, consumer={self.consumer_name!r})"

    async def initialize(self) -> None:
        """Create the consumer group (and stream) if they do not exist yet."""
        try:
            await self._redis.xgroup_create(self.stream_name, self.group, id="0", mkstream=True)
            logger.info(f"Created consumer group {self.group} for {self.stream_name}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            # Group already exists, that's fine

    async def enqueue(self, job: Union[TranscodeJob, str], job_id: Optional[str] = None) -> QueuedJob:
        """
        Publish a new job with a fresh attempt budget.

        Args:
            job: The job, or an already-serialized payload (kept verbatim)
            job_id: Optional explicit job id (defaults to a random UUID)

        Returns:
            The queued job envelope
        """
        payload = job.to_payload() if isinstance(job, TranscodeJob) else job
        queued = QueuedJob(
            job_id=job_id or uuid.uuid4().hex,
            queue_name=self.name,
            payload=payload,
            attempts_made=0,
            enqueued_at=datetime.now(timezone.utc),
        )
        await self._redis.xadd(self.stream_name, queued.to_stream_dict())
        logger.info(f"Enqueued job {queued.job_id} on {self.name}")
        return queued

    async def claim(self, block_ms: Optional[int] = None) -> Optional[QueuedJob]:
        """
        Claim the next job for this consumer.

        Moves due delayed jobs back onto the stream, then recovers messages
        abandoned by crashed consumers, then reads a new message (blocking up
        to block_ms).

        Returns:
            The claimed job, or None if nothing became available
        """
        await self.promote_due()

        recovered = await self._recover_abandoned()
        if recovered:
            return recovered

        messages = await self._redis.xreadgroup(
            self.group,
            self.consumer_name,
            {self.stream_name: ">"},
            count=1,
            block=self.block_ms if block_ms is None else block_ms,
        )
        if not messages:
            return None

        # messages format: [[stream_name, [(message_id, data), ...]]]
        _, msg_list = messages[0]
        if not msg_list:
            return None
        message_id, data = msg_list[0]
        return QueuedJob.from_stream_dict(data, message_id=message_id)

    async def ack(self, queued: QueuedJob) -> None:
        """Acknowledge and remove a delivered message."""
        if not queued._message_id:
            return
        await self._redis.xack(self.stream_name, self.group, queued._message_id)
        await self._redis.xdel(self.stream_name, queued._message_id)
        await self._redis.hdel(self.recoveries_key, queued._message_id)
        logger.debug(f"Acknowledged job {queued.job_id}")

    async def touch(self, queued: QueuedJob) -> None:
        """Reset the idle time of an in-flight message so it is not reclaimed as abandoned."""
        if not queued._message_id:
            return
        await self._redis.xclaim(
            self.stream_name,
            self.group,
            self.consumer_name,
            0,
            [queued._message_id],
            justid=True,
        )

    async def schedule_retry(self, queued: QueuedJob, delay_ms: int, error: Optional[str] = None) -> QueuedJob:
        """
        Redeliver a failed job after ``delay_ms``.

        The redelivery carries the same job id and verbatim payload with
        attempts_made incremented. The original message is acknowledged only
        once the retry is stored.
        """
        retry = QueuedJob(
            job_id=queued.job_id,
            queue_name=self.name,
            payload=queued.payload,
            attempts_made=queued.attempts_made + 1,
            enqueued_at=queued.enqueued_at,
            last_error=truncate_error(error, ERROR_DETAIL_MAX_LENGTH),
        )
        member = json.dumps(retry.to_stream_dict(), sort_keys=True)
        await self._redis.zadd(self.delayed_key, {member: _now_ms() + delay_ms})
        await self.ack(queued)
        logger.info(
            f"Job {queued.job_id} scheduled for redelivery in {delay_ms}ms (attempt {retry.attempts_made + 1})"
        )
        return retry

    async def promote_due(self) -> int:
        """Move delayed jobs whose backoff has elapsed back onto the ready stream."""
        due = await self._redis.zrangebyscore(self.delayed_key, "-inf", _now_ms(), start=0, num=PROMOTE_BATCH_SIZE)
        promoted = 0
        for member in due:
            # ZREM decides which consumer promotes a given member
            if not await self._redis.zrem(self.delayed_key, member):
                continue
            await self._redis.xadd(self.stream_name, json.loads(member))
            promoted += 1
        if promoted:
            logger.debug(f"Promoted {promoted} delayed job(s) on {self.name}")
        return promoted

    async def _recover_abandoned(self) -> Optional[QueuedJob]:
        """Claim a message left pending by a consumer that stopped responding."""
        try:
            pending = await self._redis.xpending_range(self.stream_name, self.group, min="-", max="+", count=10)
        except ResponseError as e:
            logger.debug(f"Error checking pending messages for {self.stream_name}: {e}")
            return None

        for msg in pending:
            idle_time = msg.get("time_since_delivered", 0)
            if idle_time < self.pending_timeout_ms:
                continue
            claimed = await self._redis.xclaim(
                self.stream_name,
                self.group,
                self.consumer_name,
                self.pending_timeout_ms,
                [msg["message_id"]],
            )
            if claimed:
                message_id, data = claimed[0]
                if not data:
                    # Message was deleted while pending
                    await self._redis.xack(self.stream_name, self.group, message_id)
                    await self._redis.hdel(self.recoveries_key, message_id)
                    continue
                recoveries = int(await self._redis.hincrby(self.recoveries_key, message_id, 1))
                queued = QueuedJob.from_stream_dict(data, message_id=message_id)
                # The abandoned delivery counts as a spent attempt
                queued.attempts_made += recoveries
                queued.last_error = (
                    f"Worker {msg.get('consumer')} stopped responding (idle {idle_time}ms, "
                    f"reclaimed {recoveries} time(s))"
                )
                logger.warning(
                    f"Recovered abandoned job {queued.job_id} from {self.stream_name} "
                    f"(idle {idle_time}ms, attempts made {queued.attempts_made})"
                )
                return queued
        return None

    async def stats(self) -> Dict[str, int]:
        """
        Get queue statistics.

        Returns:
            Dict with ready, pending, delayed and dead-letter counts
        """
        ready = await self._redis.xlen(self.stream_name)
        try:
            pending_info = await self._redis.xpending(self.stream_name, self.group)
            pending = pending_info.get("pending", 0) if pending_info else 0
        except ResponseError:
            pending = 0
        delayed = await self._redis.zcard(self.delayed_key)
        dead_lettered = await self._redis.xlen(self.dead_letter_stream)
        return {
            "ready": ready,
            "pending": pending,
            "delayed": delayed,
            "dead_letter": dead_lettered,
        }
