"""
Tests for the queue consumer: retries, dead-lettering and shutdown.

Uses the in-memory broker double, where a scheduled retry is immediately
claimable, so a whole retry history plays out in one test.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeTranscoder, InMemoryQueue, RecordingDeadLetter, write_raw_upload
from pipeline.enums import EntityKind, EntityStatus, JobOutcome
from pipeline.errors import StoragePermissionError, TranscodeProcessError
from pipeline.models import ProcessingResult, TranscodeJob
from pipeline.retry_policy import RetryPolicy
from worker.consumer import QueueConsumer
from worker.processor import ProcessorSettings, VideoProcessor


async def drain(consumer: QueueConsumer, queue: InMemoryQueue):
    """Handle deliveries until the queue is empty; returns the outcomes in order."""
    outcomes = []
    while queue.ready:
        queued = await queue.claim()
        outcomes.append(await consumer.handle(queued))
    return outcomes


def mock_processor(side_effect=None):
    processor = AsyncMock()
    processor.kind = EntityKind.VIDEO
    processor.process = AsyncMock(side_effect=side_effect)
    processor.store = AsyncMock()
    processor.store.mark_failed = AsyncMock(return_value=True)
    return processor


@pytest.fixture
async def seeded(uploads_dir, video_store):
    key = write_raw_upload(uploads_dir, "vid-1")
    await video_store.create("vid-1", "Intro", source_key=key)
    return TranscodeJob(entity_id="vid-1", source_key="raw/vid-1/original.mp4", title="Intro", local_file_path=key)


@pytest.fixture
def make_consumer(local_storage, video_store, work_dir, in_memory_queue, recording_dead_letter, recording_notifier):
    def _make(transcoder=None, **kwargs):
        processor = VideoProcessor(
            local_storage,
            transcoder or FakeTranscoder(),
            video_store,
            ProcessorSettings(work_dir=work_dir, storage_mode="local", hls_prefix_by_category=False),
        )
        return QueueConsumer(
            in_memory_queue, processor, recording_dead_letter, notifier=recording_notifier, **kwargs
        )

    return _make


class TestHandle:
    @pytest.mark.asyncio
    async def test_success_acks_message(self, make_consumer, in_memory_queue, seeded, video_store):
        consumer = make_consumer()
        await in_memory_queue.enqueue(seeded)

        outcomes = await drain(consumer, in_memory_queue)

        assert outcomes == [JobOutcome.COMPLETED]
        assert len(in_memory_queue.acked) == 1
        assert in_memory_queue.pending == []
        assert await video_store.find_status("vid-1") == EntityStatus.READY
        assert consumer.in_flight == 0

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, make_consumer, in_memory_queue, seeded, video_store):
        calls = []

        async def fail_once(entity_id):
            calls.append(entity_id)
            if len(calls) == 1:
                raise TranscodeProcessError("Failed to transcode 240p: exited with code 1", entity_id=entity_id)

        consumer = make_consumer(FakeTranscoder(on_run=fail_once))
        await in_memory_queue.enqueue(seeded)

        outcomes = await drain(consumer, in_memory_queue)

        assert outcomes == [JobOutcome.REDELIVERED, JobOutcome.COMPLETED]
        assert in_memory_queue.retry_delays == [2000]
        assert await video_store.find_status("vid-1") == EntityStatus.READY

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_dead_lettered(
        self, make_consumer, in_memory_queue, seeded, video_store, recording_dead_letter, recording_notifier
    ):
        """Three failed deliveries: two backoffs, then one dead-letter entry and a FAILED entity."""
        consumer = make_consumer(FakeTranscoder(fail_on="240p"))
        queued = await in_memory_queue.enqueue(seeded)

        outcomes = await drain(consumer, in_memory_queue)

        assert outcomes == [JobOutcome.REDELIVERED, JobOutcome.REDELIVERED, JobOutcome.DEAD_LETTERED]
        assert in_memory_queue.retry_delays == [2000, 4000]
        assert in_memory_queue.pending == []
        assert len(recording_dead_letter.entries) == 1
        entry = recording_dead_letter.entries[0]
        assert entry.payload == queued.payload
        assert entry.job_id == queued.job_id
        assert entry.attempts == 3
        assert entry.error.startswith("TranscodeProcessError: Failed to transcode 240p")
        assert [f["will_retry"] for f in recording_notifier.failures] == [True, True, False]
        assert [f["attempt"] for f in recording_notifier.failures] == [1, 2, 3]
        entity = await video_store.get("vid-1")
        assert entity.status == EntityStatus.FAILED
        assert entity.output_location is None

    @pytest.mark.asyncio
    async def test_invalid_payload_is_dead_lettered_immediately(
        self, make_consumer, in_memory_queue, recording_dead_letter
    ):
        consumer = make_consumer()
        await in_memory_queue.enqueue('{"title": "no id"}')

        outcomes = await drain(consumer, in_memory_queue)

        assert outcomes == [JobOutcome.DEAD_LETTERED]
        assert in_memory_queue.retry_delays == []
        assert recording_dead_letter.entries[0].payload == '{"title": "no id"}'
        assert recording_dead_letter.entries[0].attempts == 1
        assert recording_dead_letter.entries[0].error.startswith("InvalidJobPayloadError")

    @pytest.mark.asyncio
    async def test_admission_failure_leaves_message_pending(self, in_memory_queue, recording_notifier):
        processor = mock_processor(side_effect=TranscodeProcessError("boom", entity_id="vid-1"))
        consumer = QueueConsumer(
            in_memory_queue,
            processor,
            RecordingDeadLetter(fail=True),
            notifier=recording_notifier,
            retry_policy=RetryPolicy(attempts=1),
        )
        await in_memory_queue.enqueue(TranscodeJob(entity_id="vid-1", source_key="k", title="t"))

        outcome = await consumer.handle(await in_memory_queue.claim())

        assert outcome == JobOutcome.PROCESSING
        assert len(in_memory_queue.pending) == 1
        assert in_memory_queue.acked == []
        processor.store.mark_failed.assert_not_called()

    @pytest.mark.asyncio
    async def test_reclaimed_job_without_attempts_left_is_dead_lettered_unprocessed(
        self, in_memory_queue, recording_dead_letter, recording_notifier
    ):
        """A job that crashed its worker on every delivery is not run a fourth time."""
        processor = mock_processor()
        consumer = QueueConsumer(in_memory_queue, processor, recording_dead_letter, notifier=recording_notifier)
        queued = await in_memory_queue.enqueue(TranscodeJob(entity_id="vid-1", source_key="k", title="t"))
        claimed = await in_memory_queue.claim()
        claimed.attempts_made = 3
        claimed.last_error = "Worker worker-2 stopped responding (idle 3600000ms, reclaimed 3 time(s))"

        outcome = await consumer.handle(claimed)

        assert outcome == JobOutcome.DEAD_LETTERED
        processor.process.assert_not_called()
        assert in_memory_queue.pending == []
        assert in_memory_queue.acked == [claimed]
        entry = recording_dead_letter.entries[0]
        assert entry.payload == queued.payload
        assert entry.attempts == 3
        assert "stopped responding" in entry.error
        processor.store.mark_failed.assert_called_once_with("vid-1", claimed.last_error)

    @pytest.mark.asyncio
    async def test_reclaimed_job_with_attempts_left_is_processed(self, in_memory_queue, recording_dead_letter):
        processor = mock_processor(side_effect=TranscodeProcessError("boom", entity_id="vid-1"))
        consumer = QueueConsumer(in_memory_queue, processor, recording_dead_letter)
        await in_memory_queue.enqueue(TranscodeJob(entity_id="vid-1", source_key="k", title="t"))
        claimed = await in_memory_queue.claim()
        claimed.attempts_made = 2

        outcome = await consumer.handle(claimed)

        # Third and last attempt fails: dead-lettered with the real error
        assert outcome == JobOutcome.DEAD_LETTERED
        processor.process.assert_called_once()
        assert recording_dead_letter.entries[0].attempts == 3
        assert recording_dead_letter.entries[0].error.startswith("TranscodeProcessError")


class TestFastFail:
    @pytest.mark.asyncio
    async def test_permanent_error_retried_by_default(self, in_memory_queue, recording_dead_letter):
        processor = mock_processor(side_effect=StoragePermissionError("Access denied", key="raw/x"))
        consumer = QueueConsumer(in_memory_queue, processor, recording_dead_letter)
        await in_memory_queue.enqueue(TranscodeJob(entity_id="vid-1", source_key="raw/x", title="t"))

        outcome = await consumer.handle(await in_memory_queue.claim())

        assert outcome == JobOutcome.REDELIVERED

    @pytest.mark.asyncio
    async def test_permanent_error_dead_lettered_with_fast_fail(self, in_memory_queue, recording_dead_letter):
        processor = mock_processor(side_effect=StoragePermissionError("Access denied", key="raw/x"))
        consumer = QueueConsumer(
            in_memory_queue, processor, recording_dead_letter, fast_fail_permanent_errors=True
        )
        await in_memory_queue.enqueue(TranscodeJob(entity_id="vid-1", source_key="raw/x", title="t"))

        outcome = await consumer.handle(await in_memory_queue.claim())

        assert outcome == JobOutcome.DEAD_LETTERED
        assert recording_dead_letter.entries[0].attempts == 1
        processor.store.mark_failed.assert_called_once()

    @pytest.mark.asyncio
    async def test_transient_error_still_retried_with_fast_fail(self, in_memory_queue, recording_dead_letter):
        processor = mock_processor(side_effect=TranscodeProcessError("boom"))
        consumer = QueueConsumer(
            in_memory_queue, processor, recording_dead_letter, fast_fail_permanent_errors=True
        )
        await in_memory_queue.enqueue(TranscodeJob(entity_id="vid-1", source_key="raw/x", title="t"))

        assert await consumer.handle(await in_memory_queue.claim()) == JobOutcome.REDELIVERED


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_long_job_refreshes_lease(self, in_memory_queue, recording_dead_letter):
        async def slow(job, job_id):
            await asyncio.sleep(0.1)
            return ProcessingResult(entity_id=job.entity_id, output_location="hls/vid-1/master.m3u8")

        processor = mock_processor(side_effect=slow)
        consumer = QueueConsumer(in_memory_queue, processor, recording_dead_letter, heartbeat_interval=0.01)
        await in_memory_queue.enqueue(TranscodeJob(entity_id="vid-1", source_key="k", title="t"))

        assert await consumer.handle(await in_memory_queue.claim()) == JobOutcome.COMPLETED

        assert in_memory_queue.touched >= 1


class TestRun:
    def test_concurrency_must_be_positive(self, in_memory_queue, recording_dead_letter):
        with pytest.raises(ValueError):
            QueueConsumer(in_memory_queue, mock_processor(), recording_dead_letter, concurrency=0)

    def test_retry_policy_defaults_to_queue_policy(self, recording_dead_letter):
        queue = InMemoryQueue(retry_policy=RetryPolicy(attempts=5))
        consumer = QueueConsumer(queue, mock_processor(), recording_dead_letter)
        assert consumer.retry_policy.attempts == 5

    @pytest.mark.asyncio
    async def test_run_processes_jobs_until_stopped(self, make_consumer, in_memory_queue, seeded, video_store):
        consumer = make_consumer(concurrency=2)
        await in_memory_queue.enqueue(seeded)

        task = asyncio.create_task(consumer.run())
        for _ in range(200):
            if in_memory_queue.acked:
                break
            await asyncio.sleep(0.01)
        consumer.stop()
        await asyncio.wait_for(task, timeout=5)

        assert consumer.shutdown_requested
        assert len(in_memory_queue.acked) == 1
        assert await video_store.find_status("vid-1") == EntityStatus.READY

    @pytest.mark.asyncio
    async def test_claim_errors_do_not_stop_the_slot(self, recording_dead_letter, monkeypatch):
        monkeypatch.setattr("worker.consumer.CLAIM_ERROR_BACKOFF_SECONDS", 0.01)
        queue = InMemoryQueue()
        real_claim = queue.claim
        failures = []

        async def flaky_claim(block_ms=None):
            if not failures:
                failures.append(1)
                raise ConnectionError("redis down")
            return await real_claim(block_ms)

        async def succeed(job, job_id):
            return ProcessingResult(entity_id=job.entity_id, output_location="hls/vid-1/master.m3u8")

        queue.claim = flaky_claim
        processor = mock_processor(side_effect=succeed)
        consumer = QueueConsumer(queue, processor, recording_dead_letter, concurrency=1)
        await queue.enqueue(TranscodeJob(entity_id="vid-1", source_key="k", title="t"))

        task = asyncio.create_task(consumer.run())
        for _ in range(200):
            if queue.acked:
                break
            await asyncio.sleep(0.01)
        consumer.stop()
        await asyncio.wait_for(task, timeout=5)

        assert failures == [1]
        assert len(queue.acked) == 1
