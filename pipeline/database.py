"""
Table definitions for the entity rows the pipeline reads and writes.

The registration API owns these tables (and their migrations); only the columns
the pipeline touches are declared here.
"""

from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from pipeline.enums import EntityKind, EntityStatus

metadata = sa.MetaData()

_STATUS_VALUES = ", ".join(f"'{status.value}'" for status in EntityStatus)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _media_table(name: str) -> sa.Table:
    """Videos and lessons share the same pipeline-facing shape."""
    return sa.Table(
        name,
        metadata,
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False, default=""),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            sa.CheckConstraint(f"status IN ({_STATUS_VALUES})", name=f"ck_{name}_status"),
            nullable=False,
            default=EntityStatus.UPLOADED.value,
        ),
        sa.Column("source_key", sa.String(1024), nullable=True),
        sa.Column("output_location", sa.String(1024), nullable=True),  # master.m3u8 location
        sa.Column("category_role", sa.String(100), nullable=True),  # output path partition label
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
        sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow),
        sa.Index(f"ix_{name}_status", "status"),
    )


videos = _media_table("videos")
lessons = _media_table("lessons")

TABLES = {
    EntityKind.VIDEO: videos,
    EntityKind.LESSON: lessons,
}


def create_database(url: str) -> Database:
    """Create (but do not connect) a database handle for the given URL."""
    return Database(url)


def create_tables(url: str) -> None:
    """Create the entity tables synchronously (development and tests)."""
    engine = sa.create_engine(url)
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()
