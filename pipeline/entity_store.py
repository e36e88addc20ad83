"""
Entity store: the pipeline's view of the videos/lessons tables.

Only a handful of operations are needed: read the current status, read the
partition label used for output paths, and write status + output location.
Pipeline-driven writes go through apply_outcome(), which re-reads the status
under a row lock immediately before writing so a moderator's concurrent
approval is never overwritten.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from databases import Database

from config import ERROR_DETAIL_MAX_LENGTH
from pipeline.database import TABLES
from pipeline.db_retry import execute_with_retry
from pipeline.enums import PLAYABLE_STATUSES, EntityKind, EntityStatus
from pipeline.errors import PipelineError, StatusUpdateError, truncate_error
from pipeline.models import MediaEntity
from pipeline.reconciler import output_location_for, reconcile_status

logger = logging.getLogger(__name__)

# Statuses a dead-lettered job may move to FAILED; anything else is either a
# moderation decision or a successful output and is left untouched.
_FAILABLE_STATUSES = (EntityStatus.UPLOADED.value, EntityStatus.PROCESSING.value)


def _parse_status(value: Optional[str]) -> Optional[EntityStatus]:
    if value is None:
        return None
    try:
        return EntityStatus(value.lower())
    except ValueError:
        logger.warning(f"Unknown entity status in database: {value!r}")
        return None


class EntityStore:
    """Status reads and writes for one entity kind."""

    def __init__(self, database: Database, kind: EntityKind) -> None:
        self._database = database
        self.kind = EntityKind(kind)
        self._table = TABLES[self.kind]

    def __repr__(self) -> str:
        return f"EntityStore(kind={self.kind.value})"

    async def find_status(self, entity_id: str) -> Optional[EntityStatus]:
        """Current persisted status, or None if the entity does not exist."""
        query = sa.select(self._table.c.status).where(self._table.c.id == entity_id)
        row = await execute_with_retry(self._database.fetch_one, query)
        return _parse_status(row["status"]) if row else None

    async def get(self, entity_id: str) -> Optional[MediaEntity]:
        row = await execute_with_retry(
            self._database.fetch_one, self._table.select().where(self._table.c.id == entity_id)
        )
        if row is None:
            return None
        return MediaEntity(
            id=row["id"],
            kind=self.kind,
            status=_parse_status(row["status"]) or EntityStatus.UPLOADED,
            source_location=row["source_key"],
            output_location=row["output_location"],
            category_role=row["category_role"],
            title=row["title"] or "",
        )

    async def get_partition_label(self, entity_id: str) -> Optional[str]:
        """Category role used to prefix the output path, if any."""
        query = sa.select(self._table.c.category_role).where(self._table.c.id == entity_id)
        row = await execute_with_retry(self._database.fetch_one, query)
        if row is None:
            return None
        label = row["category_role"]
        return label or None

    async def create(
        self,
        entity_id: str,
        title: str,
        source_key: Optional[str] = None,
        status: EntityStatus = EntityStatus.UPLOADED,
        category_role: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        """Insert an entity row (normally the registration API does this)."""
        now = datetime.now(timezone.utc)
        await self._database.execute(
            self._table.insert().values(
                id=entity_id,
                title=title,
                description=description,
                status=EntityStatus(status).value,
                source_key=source_key,
                category_role=category_role,
                created_at=now,
                updated_at=now,
            )
        )

    async def update(
        self,
        entity_id: str,
        status: EntityStatus,
        output_location: Optional[str] = None,
    ) -> None:
        """
        Write status and output location without reconciliation.

        The output location is stored only for playable statuses.

        Raises:
            StatusUpdateError: If the row does not exist or the write fails
        """
        status = EntityStatus(status)
        values = {
            "status": status.value,
            "output_location": output_location_for(status, output_location),
            "updated_at": datetime.now(timezone.utc),
        }

        async def _update() -> None:
            async with self._database.transaction():
                row = await self._database.fetch_one(
                    sa.select(self._table.c.id).where(self._table.c.id == entity_id)
                )
                if row is None:
                    raise StatusUpdateError(f"{self.kind.value} {entity_id} not found", entity_id=entity_id)
                await self._database.execute(
                    self._table.update().where(self._table.c.id == entity_id).values(**values)
                )

        await self._run_write(_update, entity_id)

    async def apply_outcome(
        self,
        entity_id: str,
        outcome: EntityStatus,
        output_location: Optional[str] = None,
    ) -> EntityStatus:
        """
        Persist a pipeline outcome, preserving a moderator's approval.

        The current status is read under a row lock in the same transaction as
        the write. When the reconciled status is playable and no new output
        location is given, the existing one is kept.

        Returns:
            The status actually written

        Raises:
            StatusUpdateError: If the row does not exist or the write fails
        """
        outcome = EntityStatus(outcome)

        async def _apply() -> EntityStatus:
            async with self._database.transaction():
                row = await self._database.fetch_one(
                    sa.select(self._table.c.status, self._table.c.output_location)
                    .where(self._table.c.id == entity_id)
                    .with_for_update()
                )
                if row is None:
                    raise StatusUpdateError(f"{self.kind.value} {entity_id} not found", entity_id=entity_id)

                current = _parse_status(row["status"])
                final = reconcile_status(current, outcome)
                if final in PLAYABLE_STATUSES and output_location is None:
                    new_location = row["output_location"]
                else:
                    new_location = output_location_for(final, output_location)

                await self._database.execute(
                    self._table.update()
                    .where(self._table.c.id == entity_id)
                    .values(
                        status=final.value,
                        output_location=new_location,
                        updated_at=datetime.now(timezone.utc),
                    )
                )

            if final != outcome:
                logger.info(
                    f"{self.kind.value} {entity_id}: kept status {final.value} "
                    f"(pipeline outcome {outcome.value}, current {current.value if current else 'unknown'})"
                )
            return final

        return await self._run_write(_apply, entity_id)

    async def mark_processing(self, entity_id: str) -> EntityStatus:
        """
        Flag the start of a transcode.

        An entity that is already READY or APPROVED keeps its status and output
        location: the previous stream stays playable until a new one is
        reconciled, and a re-run that ends in the dead-letter queue leaves it
        untouched.

        Returns:
            The status after the call

        Raises:
            StatusUpdateError: If the row does not exist or the write fails
        """

        async def _mark() -> EntityStatus:
            async with self._database.transaction():
                row = await self._database.fetch_one(
                    sa.select(self._table.c.status).where(self._table.c.id == entity_id).with_for_update()
                )
                if row is None:
                    raise StatusUpdateError(f"{self.kind.value} {entity_id} not found", entity_id=entity_id)
                current = _parse_status(row["status"])
                if current in PLAYABLE_STATUSES:
                    return current
                await self._database.execute(
                    self._table.update()
                    .where(self._table.c.id == entity_id)
                    .values(
                        status=EntityStatus.PROCESSING.value,
                        output_location=None,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                return EntityStatus.PROCESSING

        return await self._run_write(_mark, entity_id)

    async def mark_failed(self, entity_id: str, error: Optional[str] = None) -> bool:
        """
        Move an entity whose job was dead-lettered to FAILED.

        Only UPLOADED/PROCESSING entities are changed; approvals, rejections and
        previously produced outputs are left alone.

        Returns:
            True if the row was updated
        """

        async def _mark() -> bool:
            async with self._database.transaction():
                row = await self._database.fetch_one(
                    sa.select(self._table.c.status).where(self._table.c.id == entity_id).with_for_update()
                )
                if row is None or row["status"] not in _FAILABLE_STATUSES:
                    return False
                await self._database.execute(
                    self._table.update()
                    .where(self._table.c.id == entity_id)
                    .values(
                        status=EntityStatus.FAILED.value,
                        output_location=None,
                        error_message=truncate_error(error, ERROR_DETAIL_MAX_LENGTH),
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                return True

        return await self._run_write(_mark, entity_id)

    async def _run_write(self, func, entity_id: str):
        try:
            return await execute_with_retry(func)
        except PipelineError:
            raise
        except Exception as e:
            raise StatusUpdateError(
                f"Failed to update {self.kind.value} {entity_id}: {e}", entity_id=entity_id
            ) from e
