"""
Typed records passed between pipeline components.

Queue payloads are decoded into explicit dataclasses with required and optional
fields; the raw payload string travels alongside so the dead-letter sink can
preserve it verbatim.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pipeline.enums import EntityKind, EntityStatus
from pipeline.errors import InvalidJobPayloadError

# Keys accepted for each field; the first one is what to_payload() writes.
# videoId/lessonId/s3Key/filePath are the names used by the registration API.
_PAYLOAD_ALIASES = {
    "entity_id": ("entityId", "videoId", "lessonId"),
    "source_key": ("sourceKey", "s3Key"),
    "local_file_path": ("localFilePath", "filePath"),
    "title": ("title",),
    "description": ("description",),
}


def _pick(data: Dict[str, Any], attr: str) -> Any:
    for key in _PAYLOAD_ALIASES[attr]:
        if data.get(key) is not None:
            return data[key]
    return None


@dataclass(frozen=True)
class TranscodeJob:
    """One unit of work: transcode the source of one entity to HLS."""

    entity_id: str
    source_key: str
    title: str
    local_file_path: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "entityId": self.entity_id,
            "sourceKey": self.source_key,
            "title": self.title,
        }
        if self.local_file_path is not None:
            data["localFilePath"] = self.local_file_path
        if self.description is not None:
            data["description"] = self.description
        return data

    def to_payload(self) -> str:
        """Serialize to the canonical JSON message body."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscodeJob":
        if not isinstance(data, dict):
            raise InvalidJobPayloadError(f"Job payload must be an object, got {type(data).__name__}")

        entity_id = _pick(data, "entity_id")
        source_key = _pick(data, "source_key")
        title = _pick(data, "title")

        missing = [
            name
            for name, value in (("entityId", entity_id), ("sourceKey", source_key), ("title", title))
            if value is None or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            raise InvalidJobPayloadError(f"Job payload missing required field(s): {', '.join(missing)}")

        local_file_path = _pick(data, "local_file_path")
        description = _pick(data, "description")
        return cls(
            entity_id=str(entity_id),
            source_key=str(source_key),
            title=str(title),
            local_file_path=str(local_file_path) if local_file_path else None,
            description=str(description) if description is not None else None,
        )

    @classmethod
    def from_payload(cls, payload: str) -> "TranscodeJob":
        """Decode a JSON message body."""
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise InvalidJobPayloadError(f"Job payload is not valid JSON: {e}") from e
        return cls.from_dict(data)


@dataclass
class QueuedJob:
    """A job as delivered by the broker, with its delivery bookkeeping."""

    job_id: str
    queue_name: str
    payload: str
    attempts_made: int = 0
    enqueued_at: Optional[datetime] = None
    last_error: Optional[str] = None
    # Internal: broker message ID for acknowledgment
    _message_id: Optional[str] = field(default=None, repr=False)

    @property
    def job(self) -> TranscodeJob:
        return TranscodeJob.from_payload(self.payload)

    @property
    def entity_id(self) -> Optional[str]:
        """Best-effort entity id for logging, even when the payload is invalid."""
        try:
            return self.job.entity_id
        except InvalidJobPayloadError:
            return None

    def to_stream_dict(self) -> Dict[str, str]:
        """Convert to Redis stream message format (all string values)."""
        return {
            "job_id": self.job_id,
            "queue": self.queue_name,
            "payload": self.payload,
            "attempts_made": str(self.attempts_made),
            "enqueued_at": (self.enqueued_at or datetime.now(timezone.utc)).isoformat(),
            "last_error": self.last_error or "",
        }

    @classmethod
    def from_stream_dict(cls, data: Dict[str, str], message_id: Optional[str] = None) -> "QueuedJob":
        """Create from a Redis stream message."""
        enqueued_at = None
        if data.get("enqueued_at"):
            try:
                enqueued_at = datetime.fromisoformat(data["enqueued_at"])
            except (ValueError, TypeError):
                # Invalid timestamp is not fatal, the job is still processable
                enqueued_at = None

        try:
            attempts_made = int(data.get("attempts_made") or 0)
        except ValueError:
            attempts_made = 0

        queued = cls(
            job_id=data.get("job_id") or (message_id or ""),
            queue_name=data.get("queue", ""),
            payload=data.get("payload", ""),
            attempts_made=attempts_made,
            enqueued_at=enqueued_at,
            last_error=data.get("last_error") or None,
        )
        queued._message_id = message_id
        return queued


@dataclass(frozen=True)
class MediaEntity:
    """The fields of a video or lesson row the pipeline reads and writes."""

    id: str
    kind: EntityKind
    status: EntityStatus
    source_location: Optional[str] = None
    output_location: Optional[str] = None
    category_role: Optional[str] = None
    title: str = ""


@dataclass(frozen=True)
class RenditionProfile:
    """Encoding parameters for one HLS rendition."""

    height: int
    bitrate: str
    max_rate: str
    buffer_size: str

    @property
    def label(self) -> str:
        return f"{self.height}p"


@dataclass(frozen=True)
class Rendition:
    """One produced rendition, valid only for the duration of a pipeline run."""

    label: str
    bitrate: str
    playlist_path: Path


@dataclass(frozen=True)
class TranscodeResult:
    output_dir: Path
    master_playlist_path: Path
    renditions: List[Rendition]


@dataclass(frozen=True)
class ProcessingResult:
    """Success record returned by a processor for logging and metrics."""

    entity_id: str
    output_location: str


@dataclass(frozen=True)
class DeadLetterEntry:
    """A job that exhausted its retries, kept for inspection and replay."""

    entry_id: str
    job_id: str
    queue_name: str
    payload: str
    error: Optional[str]
    attempts: int
    failed_at: Optional[datetime]
    entity_id: Optional[str] = None

    def to_stream_dict(self) -> Dict[str, str]:
        return {
            "job_id": self.job_id,
            "queue": self.queue_name,
            "entity_id": self.entity_id or "",
            "payload": self.payload,
            "error": self.error or "",
            "attempts": str(self.attempts),
            "failed_at": (self.failed_at or datetime.now(timezone.utc)).isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, entry_id: str, data: Dict[str, str]) -> "DeadLetterEntry":
        failed_at = None
        if data.get("failed_at"):
            try:
                failed_at = datetime.fromisoformat(data["failed_at"])
            except (ValueError, TypeError):
                failed_at = None
        try:
            attempts = int(data.get("attempts") or 0)
        except ValueError:
            attempts = 0
        return cls(
            entry_id=entry_id,
            job_id=data.get("job_id", ""),
            queue_name=data.get("queue", ""),
            payload=data.get("payload", ""),
            error=data.get("error") or None,
            attempts=attempts,
            failed_at=failed_at,
            entity_id=data.get("entity_id") or None,
        )
