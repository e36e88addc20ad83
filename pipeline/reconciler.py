"""
Status reconciliation for pipeline-driven entity updates.

The pipeline and human moderators both write an entity's status. Moderation
wins: once a moderator has approved an entity, no pipeline outcome may move it
away from APPROVED. The decision itself is a pure function; callers must feed
it the status read inside the same transaction as the write (see
EntityStore.apply_outcome), never a copy cached earlier in the job.
"""

from typing import Optional

from pipeline.enums import PLAYABLE_STATUSES, EntityStatus


def reconcile_status(current: Optional[EntityStatus], outcome: EntityStatus) -> EntityStatus:
    """
    Decide the status to persist.

    Args:
        current: Status currently stored for the entity (None if unknown)
        outcome: Status the pipeline wants to write

    Returns:
        APPROVED if the entity is already approved, otherwise ``outcome``
    """
    if current == EntityStatus.APPROVED:
        return EntityStatus.APPROVED
    return outcome


def output_location_for(status: EntityStatus, output_location: Optional[str]) -> Optional[str]:
    """Drop the output location unless the status allows a playable output."""
    if status in PLAYABLE_STATUSES:
        return output_location
    return None
