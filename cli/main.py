#!/usr/bin/env python3
"""
VSP CLI - operator commands for the transcoding queues.

    vsp enqueue video <entity_id> <source_key> --title "Intro"
    vsp stats
    vsp dlq list video
    vsp dlq show video <entry_id>
    vsp dlq replay video <entry_id>
    vsp dlq purge video --yes
"""

import argparse
import asyncio
import sys

from redis.exceptions import RedisError
from rich.console import Console
from rich.table import Table

from config import (
    ERROR_SUMMARY_MAX_LENGTH,
    LESSON_QUEUE_NAME,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
    VIDEO_QUEUE_NAME,
)
from pipeline.dead_letter import DeadLetterSink
from pipeline.errors import truncate_error
from pipeline.job_queue import JobQueue
from pipeline.models import TranscodeJob
from pipeline.redis_client import RedisClient

console = Console()

QUEUES_BY_KIND = {
    "video": VIDEO_QUEUE_NAME,
    "lesson": LESSON_QUEUE_NAME,
}


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


async def _with_redis(func, *args):
    client = RedisClient(
        REDIS_URL,
        pool_size=REDIS_POOL_SIZE,
        socket_timeout=REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
    )
    try:
        await client.connect()
        return await func(client.client, *args)
    finally:
        await client.close()


def _run(func, *args):
    try:
        return asyncio.run(_with_redis(func, *args))
    except RedisError as e:
        console.print(f"[red]Error:[/red] Redis unavailable at {REDIS_URL.split('@')[-1]}: {e}")
        sys.exit(1)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


async def _enqueue(redis, args):
    job = TranscodeJob(
        entity_id=args.entity_id,
        source_key=args.source_key,
        title=args.title or args.entity_id,
        local_file_path=args.local_file_path,
        description=args.description,
    )
    queue = JobQueue(redis, QUEUES_BY_KIND[args.kind])
    await queue.initialize()
    return await queue.enqueue(job, job_id=args.job_id)


def cmd_enqueue(args):
    """Publish a transcode job."""
    queued = _run(_enqueue, args)
    console.print(f"Enqueued job [bold]{queued.job_id}[/bold] on {queued.queue_name}")


async def _stats(redis):
    results = {}
    for kind, name in QUEUES_BY_KIND.items():
        results[kind] = (name, await JobQueue(redis, name).stats())
    return results


def cmd_stats(args):
    """Show queue depth per queue."""
    results = _run(_stats)

    table = Table(title="Transcoding queues")
    table.add_column("Kind")
    table.add_column("Queue")
    for column in ("Ready", "Pending", "Delayed", "Dead-letter"):
        table.add_column(column, justify="right")
    for kind, (name, stats) in results.items():
        table.add_row(
            kind,
            name,
            str(stats["ready"]),
            str(stats["pending"]),
            str(stats["delayed"]),
            str(stats["dead_letter"]),
        )
    console.print(table)


async def _dlq(redis, args):
    queue_name = QUEUES_BY_KIND[args.kind]
    sink = DeadLetterSink(redis, queue_name)

    if args.dlq_command == "list":
        return await sink.list_entries(args.count)
    if args.dlq_command == "show":
        entry = await sink.get(args.entry_id)
        if entry is None:
            raise CLIError(f"No dead-letter entry {args.entry_id} on {queue_name}")
        return entry
    if args.dlq_command == "replay":
        queue = JobQueue(redis, queue_name)
        await queue.initialize()
        queued = await sink.replay(args.entry_id, queue)
        if queued is None:
            raise CLIError(f"No dead-letter entry {args.entry_id} on {queue_name}")
        return queued
    if args.dlq_command == "purge":
        return await sink.purge()
    raise CLIError(f"Unknown dlq command: {args.dlq_command}")


def cmd_dlq(args):
    """Inspect and act on dead-lettered jobs."""
    if args.dlq_command == "purge" and not args.yes:
        console.print("Refusing to purge without --yes")
        sys.exit(1)

    result = _run(_dlq, args)

    if args.dlq_command == "list":
        if not result:
            console.print(f"No dead-lettered {args.kind} jobs.")
            return
        table = Table(title=f"Dead-lettered {args.kind} jobs")
        table.add_column("Entry ID")
        table.add_column("Job ID")
        table.add_column("Entity")
        table.add_column("Attempts", justify="right")
        table.add_column("Failed at")
        table.add_column("Error")
        for entry in result:
            table.add_row(
                entry.entry_id,
                entry.job_id,
                entry.entity_id or "-",
                str(entry.attempts),
                entry.failed_at.isoformat(timespec="seconds") if entry.failed_at else "-",
                truncate_error(entry.error, ERROR_SUMMARY_MAX_LENGTH) or "-",
            )
        console.print(table)

    elif args.dlq_command == "show":
        console.print(f"[bold]Entry:[/bold]     {result.entry_id}")
        console.print(f"[bold]Job:[/bold]       {result.job_id}")
        console.print(f"[bold]Queue:[/bold]     {result.queue_name}")
        console.print(f"[bold]Entity:[/bold]    {result.entity_id or '-'}")
        console.print(f"[bold]Attempts:[/bold]  {result.attempts}")
        console.print(f"[bold]Failed at:[/bold] {result.failed_at.isoformat() if result.failed_at else '-'}")
        console.print(f"[bold]Error:[/bold]     {result.error or '-'}")
        console.print("[bold]Payload:[/bold]")
        console.print(result.payload, markup=False, highlight=False)

    elif args.dlq_command == "replay":
        console.print(f"Replayed {args.entry_id} as job [bold]{result.job_id}[/bold] on {result.queue_name}")

    elif args.dlq_command == "purge":
        console.print(f"Purged {result} dead-letter entr{'y' if result == 1 else 'ies'}.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vsp", description="VSP CLI - Manage the transcoding queues")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Publish a transcode job")
    enqueue_parser.add_argument("kind", choices=sorted(QUEUES_BY_KIND), help="Entity kind")
    enqueue_parser.add_argument("entity_id", help="Video or lesson ID")
    enqueue_parser.add_argument("source_key", help="Storage key of the raw upload")
    enqueue_parser.add_argument("-t", "--title", help="Title (default: entity ID)")
    enqueue_parser.add_argument("-d", "--description", help="Description")
    enqueue_parser.add_argument("-f", "--local-file-path", help="Local file path (local storage mode)")
    enqueue_parser.add_argument("--job-id", help="Explicit job ID (default: random)")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show queue statistics")
    stats_parser.set_defaults(func=cmd_stats)

    # Dead-letter commands
    dlq_parser = subparsers.add_parser("dlq", help="Manage dead-lettered jobs")
    dlq_subparsers = dlq_parser.add_subparsers(dest="dlq_command", required=True)

    dlq_list = dlq_subparsers.add_parser("list", help="List dead-lettered jobs")
    dlq_list.add_argument("kind", choices=sorted(QUEUES_BY_KIND))
    dlq_list.add_argument("-n", "--count", type=positive_int, default=100, help="Maximum entries (default: 100)")

    dlq_show = dlq_subparsers.add_parser("show", help="Show one entry including its payload")
    dlq_show.add_argument("kind", choices=sorted(QUEUES_BY_KIND))
    dlq_show.add_argument("entry_id")

    dlq_replay = dlq_subparsers.add_parser("replay", help="Re-enqueue an entry with a fresh attempt budget")
    dlq_replay.add_argument("kind", choices=sorted(QUEUES_BY_KIND))
    dlq_replay.add_argument("entry_id")

    dlq_purge = dlq_subparsers.add_parser("purge", help="Delete every entry")
    dlq_purge.add_argument("kind", choices=sorted(QUEUES_BY_KIND))
    dlq_purge.add_argument("-y", "--yes", action="store_true", help="Confirm deletion")

    dlq_parser.set_defaults(func=cmd_dlq)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
