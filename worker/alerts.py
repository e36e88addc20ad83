"""
Operator notifications for transcoding failures.

Sinks are injected into the dead-letter path and the queue consumer:
- LogNotificationSink: "[ADMIN NOTIFICATION]" log lines (always on)
- WebhookNotificationSink: JSON POST to a webhook, rate limited per alert type
- CompositeNotificationSink: fan-out that isolates failures of each sink
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Sequence

import httpx

from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL, ERROR_DETAIL_MAX_LENGTH
from pipeline.errors import truncate_error
from pipeline.models import DeadLetterEntry

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    JOB_DEAD_LETTERED = "job_dead_lettered"
    JOB_FAILED = "job_failed"


@dataclass
class AlertMetrics:
    """Tracks alert counters and rate limiting state."""

    jobs_dead_lettered: int = 0
    jobs_failed: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    # Failures per entity, for spotting repeat offenders
    entity_failure_counts: Dict[str, int] = field(default_factory=dict)

    def increment_dead_lettered(self) -> int:
        self.jobs_dead_lettered += 1
        return self.jobs_dead_lettered

    def increment_failed(self, entity_id: Optional[str] = None) -> int:
        """Increment jobs failed counter and track per-entity failures."""
        self.jobs_failed += 1
        if entity_id is not None:
            self.entity_failure_counts[entity_id] = self.entity_failure_counts.get(entity_id, 0) + 1
        return self.jobs_failed

    def get_entity_failure_count(self, entity_id: str) -> int:
        return self.entity_failure_counts.get(entity_id, 0)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        """Check if enough time has passed since the last alert of this type."""
        last_time = self.last_alert_time.get(alert_type)
        if last_time is None:
            return True
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def record_alert_rate_limited(self):
        self.alerts_rate_limited += 1

    def record_alert_failed(self):
        self.alerts_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary for reporting."""
        return {
            "jobs_dead_lettered": self.jobs_dead_lettered,
            "jobs_failed": self.jobs_failed,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "entities_with_failures": len(self.entity_failure_counts),
        }


class NotificationSink:
    """Interface of notification sinks; the base implementation does nothing."""

    async def notify_dead_letter(self, entry: DeadLetterEntry) -> None:
        pass

    async def notify_job_failed(
        self,
        queue_name: str,
        job_id: str,
        entity_id: Optional[str],
        attempt: int,
        error: str,
        will_retry: bool,
    ) -> None:
        pass


class LogNotificationSink(NotificationSink):
    """Writes operator notifications to the log."""

    async def notify_dead_letter(self, entry: DeadLetterEntry) -> None:
        logger.error(
            f"[ADMIN NOTIFICATION] Job {entry.job_id} on {entry.queue_name} moved to dead-letter queue "
            f"after {entry.attempts} attempt(s). Entity: {entry.entity_id or 'unknown'}. Error: {entry.error}"
        )
        logger.error(f"[ADMIN NOTIFICATION] Payload: {entry.payload}")

    async def notify_job_failed(
        self,
        queue_name: str,
        job_id: str,
        entity_id: Optional[str],
        attempt: int,
        error: str,
        will_retry: bool,
    ) -> None:
        outcome = "will retry" if will_retry else "no retries left"
        logger.warning(
            f"Job {job_id} on {queue_name} failed (attempt {attempt}, {outcome}). "
            f"Entity: {entity_id or 'unknown'}. Error: {truncate_error(error, ERROR_DETAIL_MAX_LENGTH)}"
        )


class WebhookNotificationSink(NotificationSink):
    """Posts JSON alerts to a webhook URL."""

    def __init__(
        self,
        webhook_url: str = ALERT_WEBHOOK_URL,
        timeout: float = ALERT_WEBHOOK_TIMEOUT,
        rate_limit_seconds: int = ALERT_RATE_LIMIT_SECONDS,
        metrics: Optional[AlertMetrics] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.rate_limit_seconds = rate_limit_seconds
        self.metrics = metrics or AlertMetrics()

    async def send(self, alert_type: AlertType, details: Dict[str, Any], force: bool = False) -> bool:
        """
        Send an alert to the webhook.

        Args:
            alert_type: Type of alert being sent
            details: Additional details about the alert
            force: If True, bypass rate limiting

        Returns:
            True if the alert was delivered, False otherwise
        """
        if not self.webhook_url:
            return False

        if not force and not self.metrics.can_send_alert(alert_type.value, self.rate_limit_seconds):
            self.metrics.record_alert_rate_limited()
            logger.debug(f"Alert {alert_type.value} rate limited")
            return False

        payload = {
            "event": alert_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details,
            "metrics": self.metrics.to_dict(),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.webhook_url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()

            self.metrics.record_alert_sent(alert_type.value)
            logger.info(f"Alert sent: {alert_type.value}")
            return True

        except httpx.TimeoutException:
            self.metrics.record_alert_failed()
            logger.warning(f"Alert webhook timed out after {self.timeout}s")
            return False
        except httpx.HTTPStatusError as e:
            self.metrics.record_alert_failed()
            logger.warning(f"Alert webhook returned error: {e.response.status_code}")
            return False
        except httpx.HTTPError as e:
            self.metrics.record_alert_failed()
            logger.warning(f"Failed to send alert webhook: {e}")
            return False

    async def notify_dead_letter(self, entry: DeadLetterEntry) -> None:
        self.metrics.increment_dead_lettered()
        # Dead-letter alerts are critical and bypass the rate limit
        await self.send(
            AlertType.JOB_DEAD_LETTERED,
            {
                "job_id": entry.job_id,
                "queue": entry.queue_name,
                "entity_id": entry.entity_id,
                "attempts": entry.attempts,
                "error": truncate_error(entry.error, ERROR_DETAIL_MAX_LENGTH),
                "failed_at": entry.failed_at.isoformat() if entry.failed_at else None,
                "dead_letter_entry_id": entry.entry_id,
            },
            force=True,
        )

    async def notify_job_failed(
        self,
        queue_name: str,
        job_id: str,
        entity_id: Optional[str],
        attempt: int,
        error: str,
        will_retry: bool,
    ) -> None:
        self.metrics.increment_failed(entity_id)
        failure_count = self.metrics.get_entity_failure_count(entity_id) if entity_id else 1

        # Only alert after 2+ failures for the same entity
        if failure_count >= 2:
            await self.send(
                AlertType.JOB_FAILED,
                {
                    "job_id": job_id,
                    "queue": queue_name,
                    "entity_id": entity_id,
                    "attempt_number": attempt,
                    "error": truncate_error(error, ERROR_DETAIL_MAX_LENGTH),
                    "will_retry": will_retry,
                    "entity_failure_count": failure_count,
                },
            )


class CompositeNotificationSink(NotificationSink):
    """Fans every notification out to several sinks."""

    def __init__(self, sinks: Sequence[NotificationSink]) -> None:
        self.sinks: List[NotificationSink] = list(sinks)

    async def _fan_out(self, calls: List[Awaitable[None]]) -> None:
        results = await asyncio.gather(*calls, return_exceptions=True)
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.warning(f"Notification sink {type(sink).__name__} failed: {result}")

    async def notify_dead_letter(self, entry: DeadLetterEntry) -> None:
        await self._fan_out([sink.notify_dead_letter(entry) for sink in self.sinks])

    async def notify_job_failed(
        self,
        queue_name: str,
        job_id: str,
        entity_id: Optional[str],
        attempt: int,
        error: str,
        will_retry: bool,
    ) -> None:
        await self._fan_out(
            [
                sink.notify_job_failed(queue_name, job_id, entity_id, attempt, error, will_retry)
                for sink in self.sinks
            ]
        )


def create_notifier(webhook_url: str = ALERT_WEBHOOK_URL) -> NotificationSink:
    """Log sink, plus a webhook sink when a webhook URL is configured."""
    sinks: List[NotificationSink] = [LogNotificationSink()]
    if webhook_url:
        sinks.append(WebhookNotificationSink(webhook_url))
    return CompositeNotificationSink(sinks)
