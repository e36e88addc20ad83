"""
Processing workers: turn one TranscodeJob into a playable HLS stream.

Steps, strictly in order:
1. mark the entity PROCESSING (advisory, failures are only logged)
2. materialize the raw source into the per-entity work directory
3. transcode every rendition plus the master playlist
4. upload the output and confirm the master playlist at the destination
5. reconcile the status to READY (never overriding an approval)
6. remove the work directory, whatever happened before

Errors propagate out of process(); the queue consumer decides between retry
and dead-lettering.
"""

import asyncio
import logging
import re
import shutil
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from config import (
    HLS_PREFIX_BY_CATEGORY,
    LESSON_QUEUE_NAME,
    STORAGE_MODE,
    SUPPORTED_VIDEO_EXTENSIONS,
    TEMP_DIR,
    VIDEO_QUEUE_NAME,
)
from pipeline.entity_store import EntityStore
from pipeline.enums import EntityKind, EntityStatus, PipelineStep
from pipeline.errors import (
    InvalidJobPayloadError,
    SourceNotFoundError,
    StatusUpdateError,
    StorageError,
    StorageNotFoundError,
)
from pipeline.metrics import STORAGE_OPERATIONS_TOTAL
from pipeline.models import ProcessingResult, TranscodeJob
from worker.storage import StorageAdapter
from worker.transcoder import Transcoder

logger = logging.getLogger(__name__)

# Identifiers that are safe to use as a single path component
_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_path_component(value: str, what: str = "entity id") -> str:
    """
    Reject identifiers that could escape their directory when used in a path.

    Raises:
        InvalidJobPayloadError: If the value contains separators or traversal
    """
    if not isinstance(value, str) or not _SAFE_ID_PATTERN.match(value) or ".." in value:
        raise InvalidJobPayloadError(f"Unsafe {what}: {value!r}")
    return value


@dataclass(frozen=True)
class ProcessorSettings:
    work_dir: Path = TEMP_DIR
    storage_mode: str = STORAGE_MODE
    hls_prefix_by_category: bool = HLS_PREFIX_BY_CATEGORY


class MediaProcessor:
    """Runs the transcoding pipeline for one entity kind."""

    kind: EntityKind = EntityKind.VIDEO
    queue_name: str = VIDEO_QUEUE_NAME

    def __init__(
        self,
        storage: StorageAdapter,
        transcoder: Transcoder,
        store: EntityStore,
        settings: Optional[ProcessorSettings] = None,
        kind: Optional[EntityKind] = None,
    ) -> None:
        if kind is not None:
            self.kind = EntityKind(kind)
        self.storage = storage
        self.transcoder = transcoder
        self.store = store
        self.settings = settings or ProcessorSettings()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value}, storage={self.storage!r})"

    @asynccontextmanager
    async def _entity_lock(self, entity_id: str):
        """Serialize jobs for the same entity within this process."""
        lock = self._locks.setdefault(entity_id, asyncio.Lock())
        self._lock_users[entity_id] = self._lock_users.get(entity_id, 0) + 1
        try:
            if lock.locked():
                logger.info(f"Waiting for in-flight job of {self.kind.value} {entity_id}")
            async with lock:
                yield
        finally:
            self._lock_users[entity_id] -= 1
            if self._lock_users[entity_id] == 0:
                del self._lock_users[entity_id]
                del self._locks[entity_id]

    def work_dir_for(self, entity_id: str) -> Path:
        return Path(self.settings.work_dir) / entity_id

    def source_key_for(self, job: TranscodeJob) -> str:
        if self.settings.storage_mode == "local":
            return job.local_file_path or job.source_key
        return job.source_key

    async def destination_prefix_for(self, entity_id: str) -> str:
        """``hls/<category_role>/<id>`` when prefixing by category is on and a role is set, else ``hls/<id>``."""
        if not self.settings.hls_prefix_by_category:
            return f"hls/{entity_id}"
        label = await self.store.get_partition_label(entity_id)
        if not label:
            return f"hls/{entity_id}"
        try:
            validate_path_component(label, "category role")
        except InvalidJobPayloadError:
            logger.warning(f"Ignoring unsafe category role {label!r} for {self.kind.value} {entity_id}")
            return f"hls/{entity_id}"
        return f"hls/{label}/{entity_id}"

    async def process(self, job: TranscodeJob, job_id: str) -> ProcessingResult:
        """
        Run all pipeline steps for one job.

        Raises:
            InvalidJobPayloadError: Entity id unusable as a path component
            SourceNotFoundError: Raw input missing or empty
            TranscodeProcessError: Encoder failure or timeout
            StorageError: Upload or verification failure
            StatusUpdateError: Final status write failed
        """
        entity_id = validate_path_component(job.entity_id)
        async with self._entity_lock(entity_id):
            return await self._process(job, job_id, entity_id)

    async def _process(self, job: TranscodeJob, job_id: str, entity_id: str) -> ProcessingResult:
        logger.info(f"[{job_id}] Starting {self.kind.value} processing for {entity_id}")
        logger.info(f"[{job_id}] Storage mode: {self.settings.storage_mode}")

        work_dir = self.work_dir_for(entity_id)
        try:
            await self._mark_processing(job_id, entity_id)

            if work_dir.exists():
                # Leftovers from a crashed attempt
                await asyncio.to_thread(shutil.rmtree, work_dir, ignore_errors=True)

            input_file = await self._materialize(job, job_id, work_dir)

            logger.info(f"[{job_id}] Step {PipelineStep.TRANSCODE.value}: starting ffmpeg")
            result = await self.transcoder.run(input_file, work_dir / "hls", entity_id)
            logger.info(f"[{job_id}] Transcoding completed ({len(result.renditions)} renditions)")

            location = await self._persist(job_id, entity_id, result.output_dir)

            logger.info(f"[{job_id}] Step {PipelineStep.RECONCILE.value}: output {location}")
            final = await self.store.apply_outcome(entity_id, EntityStatus.READY, location)
            logger.info(f"[{job_id}] {self.kind.value} {entity_id} status is now {final.value}")

            logger.info(f"[{job_id}] {self.kind.value} processing completed successfully for {entity_id}")
            return ProcessingResult(entity_id=entity_id, output_location=location)
        except Exception as e:
            logger.error(f"[{job_id}] {self.kind.value} processing failed for {entity_id}: {e}")
            raise
        finally:
            await self._cleanup(job_id, work_dir)

    async def _mark_processing(self, job_id: str, entity_id: str) -> None:
        try:
            status = await self.store.mark_processing(entity_id)
            logger.info(f"[{job_id}] Step {PipelineStep.MARK_PROCESSING.value}: status {status.value}")
        except StatusUpdateError as e:
            logger.warning(f"[{job_id}] Failed to update status to processing, continuing: {e}")

    async def _materialize(self, job: TranscodeJob, job_id: str, work_dir: Path) -> Path:
        key = self.source_key_for(job)
        suffix = Path(key).suffix.lower()
        input_file = work_dir / f"input{suffix if suffix in SUPPORTED_VIDEO_EXTENSIONS else '.mp4'}"

        logger.info(f"[{job_id}] Step {PipelineStep.MATERIALIZE.value}: {key} -> {input_file}")
        try:
            await self.storage.fetch(key, input_file)
        except StorageNotFoundError as e:
            STORAGE_OPERATIONS_TOTAL.labels(operation="fetch", result="failed").inc()
            raise SourceNotFoundError(f"Source video not found: {key}", entity_id=job.entity_id) from e
        except StorageError:
            STORAGE_OPERATIONS_TOTAL.labels(operation="fetch", result="failed").inc()
            raise
        STORAGE_OPERATIONS_TOTAL.labels(operation="fetch", result="success").inc()

        size = await asyncio.to_thread(lambda: input_file.stat().st_size if input_file.exists() else 0)
        if size == 0:
            raise SourceNotFoundError(f"Source video is empty: {key}", entity_id=job.entity_id)
        logger.info(f"[{job_id}] Source materialized ({size} bytes)")
        return input_file

    async def _persist(self, job_id: str, entity_id: str, output_dir: Path) -> str:
        prefix = await self.destination_prefix_for(entity_id)
        logger.info(f"[{job_id}] Step {PipelineStep.PERSIST.value}: uploading HLS output to {prefix}")
        try:
            location = await self.storage.put(output_dir, prefix)
            if not await self.storage.exists(location):
                raise StorageNotFoundError(f"Master playlist not found after upload: {location}", key=location)
        except StorageError as e:
            e.entity_id = e.entity_id or entity_id
            STORAGE_OPERATIONS_TOTAL.labels(operation="put", result="failed").inc()
            raise
        STORAGE_OPERATIONS_TOTAL.labels(operation="put", result="success").inc()
        logger.info(f"[{job_id}] Master playlist verified at {location}")
        return location

    async def _cleanup(self, job_id: str, work_dir: Path) -> None:
        try:
            await asyncio.to_thread(shutil.rmtree, work_dir)
            logger.info(f"[{job_id}] Step {PipelineStep.CLEANUP.value}: removed {work_dir}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"[{job_id}] Error during cleanup of {work_dir}: {e}")


class VideoProcessor(MediaProcessor):
    kind = EntityKind.VIDEO
    queue_name = VIDEO_QUEUE_NAME


class LessonProcessor(MediaProcessor):
    kind = EntityKind.LESSON
    queue_name = LESSON_QUEUE_NAME
