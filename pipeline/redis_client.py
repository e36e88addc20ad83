"""
Redis connection management for the job broker.

One RedisClient is built per worker process (or CLI invocation) and its
``client`` handed to every JobQueue and DeadLetterSink. The readiness probe
calls health_check(), which pings at most once per HEALTH_CHECK_INTERVAL.
"""

import logging
import time
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = 30  # seconds between real pings


def redact_url(url: str) -> str:
    """Drop credentials from a redis:// URL for logging."""
    return url.split("@")[-1]


class RedisClient:
    """Owns the broker connection pool and remembers whether Redis answered."""

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        socket_timeout: float = 10.0,
        socket_connect_timeout: float = 5.0,
    ) -> None:
        self._url = url
        # decode_responses: stream fields and payloads are handled as str
        self._pool = ConnectionPool.from_url(
            url,
            max_connections=pool_size,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            retry_on_error=[RedisConnectionError],
            decode_responses=True,
        )
        self._client: Optional[Redis] = Redis(connection_pool=self._pool)
        self._healthy = False
        self._checked_at: Optional[float] = None

    def __repr__(self) -> str:
        return f"RedisClient(url={redact_url(self._url)!r}, healthy={self._healthy})"

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise RuntimeError("Redis client is closed")
        return self._client

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    def _record(self, healthy: bool) -> bool:
        self._healthy = healthy
        self._checked_at = time.monotonic()
        return healthy

    async def connect(self) -> None:
        """Ping once at startup; connection errors propagate to the caller."""
        try:
            await self.client.ping()
        except (RedisError, OSError):
            self._record(False)
            raise
        self._record(True)
        logger.info(f"Redis connection established: {redact_url(self._url)}")

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        if self._checked_at is not None and time.monotonic() - self._checked_at < HEALTH_CHECK_INTERVAL:
            return self._healthy

        was_healthy = self._healthy
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            return self._record(False)
        if not was_healthy:
            logger.info("Redis connection recovered")
        return self._record(True)

    async def close(self) -> None:
        """Release the client and every pooled connection. Safe to call twice."""
        client, self._client = self._client, None
        self._healthy = False
        if client is not None:
            try:
                await client.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Error closing Redis client: {e}")
        try:
            await self._pool.disconnect()
        except (RedisError, OSError) as e:
            logger.debug(f"Error disconnecting Redis pool: {e}")
