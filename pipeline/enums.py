"""
Centralized enums for status values used throughout the pipeline.
Using str-based enums for database compatibility.
"""

from enum import Enum


class EntityStatus(str, Enum):
    """Status values for a media entity (video or lesson)."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY = "ready"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"  # Retries exhausted, job is in the dead-letter queue


# Statuses under which an output location may be attached to an entity
PLAYABLE_STATUSES = frozenset([EntityStatus.READY, EntityStatus.APPROVED])


class EntityKind(str, Enum):
    """Kinds of media entity processed by the pipeline."""

    VIDEO = "video"
    LESSON = "lesson"


class JobOutcome(str, Enum):
    """Result of a single delivery of a job to a worker."""

    ENQUEUED = "enqueued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REDELIVERED = "redelivered"
    DEAD_LETTERED = "dead_lettered"


class PipelineStep(str, Enum):
    """Processing step names for a transcode job."""

    MARK_PROCESSING = "mark_processing"
    MATERIALIZE = "materialize"
    TRANSCODE = "transcode"
    PERSIST = "persist"
    RECONCILE = "reconcile"
    CLEANUP = "cleanup"


class BackoffType(str, Enum):
    """Delay strategy between redeliveries."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"
