"""
Pytest fixtures for the transcoder tests.

The entity store runs against a throwaway SQLite file through the same
``databases`` driver used in production. Redis is replaced by AsyncMock in
broker unit tests and by the in-memory queue below in consumer scenarios.
"""

import asyncio
import shutil
from pathlib import Path
from typing import AsyncGenerator, List, Optional, Tuple

import pytest
from databases import Database

from pipeline.database import create_tables
from pipeline.entity_store import EntityStore
from pipeline.enums import EntityKind
from pipeline.errors import DeadLetterAdmissionError, TranscodeProcessError
from pipeline.models import DeadLetterEntry, QueuedJob, Rendition, TranscodeJob, TranscodeResult
from pipeline.retry_policy import RetryPolicy
from worker.storage import LocalStorage

FFMPEG_AVAILABLE = shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'vsp_test.db'}"


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    create_tables(test_db_url)
    database = Database(test_db_url)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def video_store(test_database: Database) -> EntityStore:
    return EntityStore(test_database, EntityKind.VIDEO)


@pytest.fixture
def lesson_store(test_database: Database) -> EntityStore:
    return EntityStore(test_database, EntityKind.LESSON)


@pytest.fixture
def uploads_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    (path / "raw").mkdir(parents=True)
    return path


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "transcode"
    path.mkdir()
    return path


@pytest.fixture
def local_storage(uploads_dir: Path) -> LocalStorage:
    return LocalStorage(uploads_dir)


def write_raw_upload(uploads_dir: Path, entity_id: str, content: bytes = b"fake video bytes") -> str:
    """Place a raw upload the way the registration API does; returns its public key."""
    raw_dir = uploads_dir / "raw" / entity_id
    raw_dir.mkdir(parents=True, exist_ok=True)
    (raw_dir / "original.mp4").write_bytes(content)
    return f"/uploads/raw/{entity_id}/original.mp4"


class FakeTranscoder:
    """Writes a minimal HLS tree instead of running ffmpeg."""

    def __init__(self, labels=("240p", "360p"), fail_on: Optional[str] = None, on_run=None):
        self.labels = list(labels)
        self.fail_on = fail_on
        self.on_run = on_run
        self.calls: List[Tuple[Path, Path, str]] = []

    async def run(self, input_file: Path, output_dir: Path, entity_id: str, progress_callback=None):
        self.calls.append((Path(input_file), Path(output_dir), entity_id))
        assert Path(input_file).exists(), "input must be materialized before transcoding"
        if self.on_run is not None:
            await self.on_run(entity_id)
        output_dir.mkdir(parents=True, exist_ok=True)
        renditions = []
        for label in self.labels:
            if label == self.fail_on:
                raise TranscodeProcessError(f"Failed to transcode {label}", entity_id=entity_id, rendition=label)
            playlist = output_dir / f"{label}.m3u8"
            playlist.write_text("#EXTM3U\n#EXT-X-ENDLIST\n")
            (output_dir / f"{label}_000.ts").write_bytes(b"\x47" * 188)
            renditions.append(Rendition(label=label, bitrate="400k", playlist_path=playlist))
        master = output_dir / "master.m3u8"
        master.write_text("#EXTM3U\n" + "".join(f"{r.label}.m3u8\n" for r in renditions))
        return TranscodeResult(output_dir=output_dir, master_playlist_path=master, renditions=renditions)


class InMemoryQueue:
    """Broker double with the JobQueue interface; retries become immediately claimable."""

    def __init__(self, name: str = "video-processing", retry_policy: Optional[RetryPolicy] = None):
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self.ready: List[QueuedJob] = []
        self.pending: List[QueuedJob] = []
        self.acked: List[QueuedJob] = []
        self.retry_delays: List[int] = []
        self.touched = 0
        self._counter = 0

    async def initialize(self) -> None:
        pass

    def _deliver(self, queued: QueuedJob) -> None:
        self._counter += 1
        queued._message_id = f"{self._counter}-0"
        self.ready.append(queued)

    async def enqueue(self, job, job_id: Optional[str] = None) -> QueuedJob:
        payload = job.to_payload() if isinstance(job, TranscodeJob) else job
        queued = QueuedJob(job_id=job_id or f"job-{self._counter + 1}", queue_name=self.name, payload=payload)
        self._deliver(queued)
        return queued

    async def claim(self, block_ms: Optional[int] = None) -> Optional[QueuedJob]:
        if not self.ready:
            # Stand-in for the blocking read so idle consumer slots yield
            await asyncio.sleep(0.01)
            return None
        queued = self.ready.pop(0)
        self.pending.append(queued)
        return queued

    async def ack(self, queued: QueuedJob) -> None:
        self.pending.remove(queued)
        self.acked.append(queued)

    async def touch(self, queued: QueuedJob) -> None:
        self.touched += 1

    async def schedule_retry(self, queued: QueuedJob, delay_ms: int, error: Optional[str] = None) -> QueuedJob:
        self.retry_delays.append(delay_ms)
        retry = QueuedJob(
            job_id=queued.job_id,
            queue_name=self.name,
            payload=queued.payload,
            attempts_made=queued.attempts_made + 1,
            last_error=error,
        )
        await self.ack(queued)
        self._deliver(retry)
        return retry


class RecordingDeadLetter:
    """Dead-letter double that keeps admitted entries in a list."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.entries: List[DeadLetterEntry] = []

    async def admit(self, queued: QueuedJob, error: str, attempts: Optional[int] = None) -> DeadLetterEntry:
        if self.fail:
            raise DeadLetterAdmissionError(f"Failed to dead-letter job {queued.job_id}")
        entry = DeadLetterEntry(
            entry_id=f"{len(self.entries) + 1}-0",
            job_id=queued.job_id,
            queue_name=queued.queue_name,
            payload=queued.payload,
            error=error,
            attempts=attempts if attempts is not None else queued.attempts_made + 1,
            failed_at=None,
            entity_id=queued.entity_id,
        )
        self.entries.append(entry)
        return entry


class RecordingNotifier:
    def __init__(self):
        self.dead_letters: List[DeadLetterEntry] = []
        self.failures: List[dict] = []

    async def notify_dead_letter(self, entry: DeadLetterEntry) -> None:
        self.dead_letters.append(entry)

    async def notify_job_failed(self, queue_name, job_id, entity_id, attempt, error, will_retry) -> None:
        self.failures.append(
            {
                "queue": queue_name,
                "job_id": job_id,
                "entity_id": entity_id,
                "attempt": attempt,
                "error": error,
                "will_retry": will_retry,
            }
        )


@pytest.fixture
def in_memory_queue() -> InMemoryQueue:
    return InMemoryQueue()


@pytest.fixture
def recording_dead_letter() -> RecordingDeadLetter:
    return RecordingDeadLetter()


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()
