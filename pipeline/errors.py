"""
Error taxonomy for the transcoding pipeline.

Every failure raised out of a job handler is a PipelineError subclass (or is
wrapped into one at the step boundary). The queue layer treats any exception
as a failed attempt; the ``retryable`` flag only matters when fast-failing
permanent errors is enabled.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""

    retryable: bool = True

    def __init__(self, message: str, entity_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class InvalidJobPayloadError(PipelineError):
    """Queue message could not be decoded into a TranscodeJob."""

    retryable = False


class SourceNotFoundError(PipelineError):
    """Raw input missing at the expected location."""


class TranscodeProcessError(PipelineError):
    """External encoder exited non-zero, timed out, or is not installed."""

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        rendition: Optional[str] = None,
    ) -> None:
        super().__init__(message, entity_id)
        self.rendition = rendition


class StorageError(PipelineError):
    """Base class for storage adapter failures."""

    def __init__(self, message: str, key: Optional[str] = None, entity_id: Optional[str] = None) -> None:
        super().__init__(message, entity_id)
        self.key = key


class StorageNotFoundError(StorageError):
    """Object or file does not exist."""


class StorageTransientError(StorageError):
    """Network or disk hiccup; the operation may succeed if repeated."""


class StoragePermissionError(StorageError):
    """Access denied; repeating the operation will not help."""

    retryable = False


class StatusUpdateError(PipelineError):
    """Writing to the entity store failed."""


class DeadLetterAdmissionError(PipelineError):
    """A job could not be written to the dead-letter sink."""


def truncate_error(message: Optional[str], max_length: int) -> Optional[str]:
    """
    Truncate an error message for storage in logs, alerts and queue entries.

    Args:
        message: Error text (None passes through)
        max_length: Maximum length of the returned string, including the ellipsis

    Returns:
        The message, shortened with a trailing "..." when it exceeds max_length
    """
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    if max_length <= 3:
        return message[:max_length]
    return message[: max_length - 3] + "..."


def describe_error(exc: BaseException) -> str:
    """Render an exception as ``ClassName: message`` for logs and dead-letter entries."""
    text = str(exc)
    name = type(exc).__name__
    return f"{name}: {text}" if text else name
