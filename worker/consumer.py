"""
Queue consumer: claims jobs, runs the processor, and records the outcome.

Each delivery ends in exactly one of:
- COMPLETED      processor returned, message acknowledged
- REDELIVERED    processor raised, retry scheduled with backoff
- DEAD_LETTERED  retries exhausted (or permanent error), entry written to the
                 dead-letter sink, entity marked FAILED, operators notified

If the dead-letter write itself fails the message is left pending so the
broker redelivers it instead of losing it.
"""

import asyncio
import logging
import time
from typing import List, Optional

from config import FAST_FAIL_PERMANENT_ERRORS, REDIS_PENDING_TIMEOUT_MS
from pipeline.dead_letter import DeadLetterSink
from pipeline.enums import JobOutcome
from pipeline.errors import (
    DeadLetterAdmissionError,
    InvalidJobPayloadError,
    StatusUpdateError,
    describe_error,
)
from pipeline.job_queue import JobQueue
from pipeline.metrics import (
    DEAD_LETTER_ADMISSION_FAILURES_TOTAL,
    JOB_DURATION_SECONDS,
    JOBS_ACTIVE,
    JOBS_TOTAL,
)
from pipeline.models import QueuedJob
from pipeline.retry_policy import RetryPolicy
from worker.alerts import NotificationSink
from worker.processor import MediaProcessor

logger = logging.getLogger(__name__)

# Pause after a broker error before claiming again
CLAIM_ERROR_BACKOFF_SECONDS = 5.0


class QueueConsumer:
    """Runs ``concurrency`` independent claim/handle slots against one queue."""

    def __init__(
        self,
        queue: JobQueue,
        processor: MediaProcessor,
        dead_letter: DeadLetterSink,
        notifier: Optional[NotificationSink] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 2,
        fast_fail_permanent_errors: bool = FAST_FAIL_PERMANENT_ERRORS,
        heartbeat_interval: float = REDIS_PENDING_TIMEOUT_MS / 4000,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.queue = queue
        self.processor = processor
        self.dead_letter = dead_letter
        self.notifier = notifier or NotificationSink()
        self.retry_policy = retry_policy or queue.retry_policy
        self.concurrency = concurrency
        self.fast_fail_permanent_errors = fast_fail_permanent_errors
        self.heartbeat_interval = heartbeat_interval
        self._shutdown = False
        self._in_flight = 0

    def __repr__(self) -> str:
        return f"QueueConsumer(queue={self.queue.name!r}, concurrency={self.concurrency})"

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def stop(self) -> None:
        """Ask every slot to exit after its current job."""
        if not self._shutdown:
            logger.info(f"Stopping consumer for {self.queue.name} ({self._in_flight} job(s) in flight)")
        self._shutdown = True

    async def run(self) -> None:
        """Start all slots and wait until they exit."""
        await self.queue.initialize()
        logger.info(f"Consumer for {self.queue.name} started with {self.concurrency} slot(s)")
        slots: List[asyncio.Task] = [
            asyncio.create_task(self._slot(index), name=f"{self.queue.name}-slot-{index}")
            for index in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*slots)
        finally:
            for task in slots:
                task.cancel()
            await asyncio.gather(*slots, return_exceptions=True)
            logger.info(f"Consumer for {self.queue.name} stopped")

    async def _slot(self, index: int) -> None:
        while not self._shutdown:
            try:
                queued = await self.queue.claim()
            except Exception as e:
                logger.error(f"[{self.queue.name}#{index}] Failed to claim job: {e}")
                await asyncio.sleep(CLAIM_ERROR_BACKOFF_SECONDS)
                continue

            if queued is None:
                continue

            try:
                await self.handle(queued)
            except Exception as e:
                # Broker write failed; the message stays pending and is redelivered
                logger.exception(f"[{queued.job_id}] Could not record job outcome: {e}")

    async def handle(self, queued: QueuedJob) -> JobOutcome:
        """Process one delivery and record its outcome with the broker."""
        queue_name = self.queue.name
        if self.retry_policy.is_exhausted(queued.attempts_made):
            # Reclaimed from dead workers until the budget ran out; do not run it again
            error_text = queued.last_error or "Job abandoned by its worker"
            logger.error(
                f"[{queued.job_id}] No attempts left after {queued.attempts_made} abandoned delivery(ies): {error_text}"
            )
            return await self._dead_letter(queued, error_text, queued.attempts_made)

        attempt = queued.attempts_made + 1
        logger.info(f"[{queued.job_id}] Received job on {queue_name} (attempt {attempt}/{self.retry_policy.attempts})")

        JOBS_TOTAL.labels(queue=queue_name, outcome="started").inc()
        JOBS_ACTIVE.labels(queue=queue_name).inc()
        self._in_flight += 1
        started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(queued))
        try:
            job = queued.job
            result = await self.processor.process(job, queued.job_id)
        except Exception as e:
            JOB_DURATION_SECONDS.labels(queue=queue_name, result="failure").observe(time.monotonic() - started)
            return await self._handle_failure(queued, e)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._in_flight -= 1
            JOBS_ACTIVE.labels(queue=queue_name).dec()

        await self.queue.ack(queued)
        JOB_DURATION_SECONDS.labels(queue=queue_name, result="success").observe(time.monotonic() - started)
        JOBS_TOTAL.labels(queue=queue_name, outcome=JobOutcome.COMPLETED.value).inc()
        logger.info(f"[{queued.job_id}] Job completed: {result.entity_id} -> {result.output_location}")
        return JobOutcome.COMPLETED

    async def _heartbeat(self, queued: QueuedJob) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.queue.touch(queued)
            except Exception as e:
                logger.warning(f"[{queued.job_id}] Failed to refresh job lease: {e}")

    def _is_permanent(self, error: Exception) -> bool:
        if isinstance(error, InvalidJobPayloadError):
            return True
        return self.fast_fail_permanent_errors and not getattr(error, "retryable", True)

    async def _handle_failure(self, queued: QueuedJob, error: Exception) -> JobOutcome:
        attempt = queued.attempts_made + 1
        error_text = describe_error(error)
        permanent = self._is_permanent(error)
        will_retry = not permanent and not self.retry_policy.is_exhausted(attempt)

        try:
            await self.notifier.notify_job_failed(
                self.queue.name, queued.job_id, queued.entity_id, attempt, error_text, will_retry
            )
        except Exception as e:
            logger.warning(f"[{queued.job_id}] Failure notification failed: {e}")

        if will_retry:
            delay_ms = self.retry_policy.delay_for(attempt)
            await self.queue.schedule_retry(queued, delay_ms, error_text)
            JOBS_TOTAL.labels(queue=self.queue.name, outcome=JobOutcome.REDELIVERED.value).inc()
            return JobOutcome.REDELIVERED

        if permanent:
            logger.error(f"[{queued.job_id}] Permanent error, skipping remaining attempts: {error_text}")
        else:
            logger.error(f"[{queued.job_id}] Job failed after {attempt} attempt(s): {error_text}")
        return await self._dead_letter(queued, error_text, attempt)

    async def _dead_letter(self, queued: QueuedJob, error_text: str, attempts: int) -> JobOutcome:
        try:
            await self.dead_letter.admit(queued, error_text, attempts=attempts)
        except DeadLetterAdmissionError as e:
            DEAD_LETTER_ADMISSION_FAILURES_TOTAL.labels(queue=self.queue.name).inc()
            logger.error(f"[{queued.job_id}] Could not dead-letter job, leaving it pending for redelivery: {e}")
            return JobOutcome.PROCESSING

        await self.queue.ack(queued)
        JOBS_TOTAL.labels(queue=self.queue.name, outcome=JobOutcome.DEAD_LETTERED.value).inc()

        entity_id = queued.entity_id
        if entity_id:
            try:
                if await self.processor.store.mark_failed(entity_id, error_text):
                    logger.info(f"[{queued.job_id}] {self.processor.kind.value} {entity_id} marked failed")
            except StatusUpdateError as e:
                logger.error(f"[{queued.job_id}] Failed to mark {entity_id} as failed: {e}")
        return JobOutcome.DEAD_LETTERED
