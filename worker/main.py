"""
Transcoding worker process.

Starts one consumer per queue (videos and lessons), each with its own pool of
slots, plus the health/metrics server. SIGTERM/SIGINT stop the slots after
their current job.

Usage:
    python -m worker.main
"""

import asyncio
import logging
import signal
import socket
import uuid
from importlib.metadata import PackageNotFoundError, version
from typing import List

from config import (
    DATABASE_URL,
    JOB_ATTEMPTS,
    JOB_BACKOFF_MS,
    JOB_BACKOFF_TYPE,
    LESSON_CONCURRENCY,
    LESSON_QUEUE_NAME,
    LOG_LEVEL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
    TRANSCODING_CONCURRENCY,
    VIDEO_QUEUE_NAME,
    WORKER_HEALTH_PORT,
)
from pipeline.database import create_database
from pipeline.dead_letter import DeadLetterSink
from pipeline.entity_store import EntityStore
from pipeline.enums import EntityKind
from pipeline.job_queue import JobQueue
from pipeline.metrics import init_app_info
from pipeline.redis_client import RedisClient
from pipeline.retry_policy import RetryPolicy
from worker.alerts import create_notifier
from worker.consumer import QueueConsumer
from worker.health_server import HealthServer
from worker.processor import LessonProcessor, VideoProcessor
from worker.storage import create_storage
from worker.transcoder import Transcoder

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _app_version() -> str:
    try:
        return version("vsp-transcoder")
    except PackageNotFoundError:
        return "dev"


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(attempts=JOB_ATTEMPTS, backoff_type=JOB_BACKOFF_TYPE, base_delay_ms=JOB_BACKOFF_MS)


async def run_worker() -> None:
    worker_id = f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
    init_app_info(_app_version())

    redis = RedisClient(
        REDIS_URL,
        pool_size=REDIS_POOL_SIZE,
        socket_timeout=REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
    )
    database = create_database(DATABASE_URL)

    await redis.connect()
    await database.connect()

    storage = create_storage()
    transcoder = Transcoder()
    notifier = create_notifier()
    retry_policy = default_retry_policy()

    consumers: List[QueueConsumer] = []
    for processor_cls, kind, queue_name, concurrency in (
        (VideoProcessor, EntityKind.VIDEO, VIDEO_QUEUE_NAME, TRANSCODING_CONCURRENCY),
        (LessonProcessor, EntityKind.LESSON, LESSON_QUEUE_NAME, LESSON_CONCURRENCY),
    ):
        queue = JobQueue(redis.client, queue_name, consumer_name=worker_id, retry_policy=retry_policy)
        processor = processor_cls(storage, transcoder, EntityStore(database, kind))
        dead_letter = DeadLetterSink(redis.client, queue_name, notifier=notifier)
        consumers.append(
            QueueConsumer(queue, processor, dead_letter, notifier=notifier, concurrency=concurrency)
        )

    async def database_ok() -> bool:
        return database.is_connected

    health = HealthServer(WORKER_HEALTH_PORT, checks={"redis": redis.health_check, "database": database_ok})

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info(f"{sig.name} received, finishing current jobs and shutting down gracefully...")
        health.set_accepting_jobs(False)
        for consumer in consumers:
            consumer.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, request_shutdown, sig)

    logger.info(f"Transcoding worker started (ID: {worker_id}, storage: {storage!r})")
    for consumer in consumers:
        logger.info(f"  {consumer!r}")

    await health.start()
    try:
        await asyncio.gather(*(consumer.run() for consumer in consumers))
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        await health.stop()
        await database.disconnect()
        await redis.close()
        logger.info("Worker stopped gracefully.")


def main() -> None:
    configure_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
