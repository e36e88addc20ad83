"""Tests for status reconciliation."""

import itertools

import pytest

from pipeline.enums import EntityStatus
from pipeline.reconciler import output_location_for, reconcile_status

ALL_STATUSES = list(EntityStatus)


@pytest.mark.parametrize("current,outcome", list(itertools.product(ALL_STATUSES + [None], ALL_STATUSES)))
def test_approval_is_never_downgraded(current, outcome):
    """For every (current, outcome) pair, APPROVED stays APPROVED; anything else takes the outcome."""
    result = reconcile_status(current, outcome)

    if current == EntityStatus.APPROVED:
        assert result == EntityStatus.APPROVED
    else:
        assert result == outcome


def test_approved_plus_ready_stays_approved():
    assert reconcile_status(EntityStatus.APPROVED, EntityStatus.READY) == EntityStatus.APPROVED


def test_processing_plus_ready_becomes_ready():
    assert reconcile_status(EntityStatus.PROCESSING, EntityStatus.READY) == EntityStatus.READY


def test_rejected_is_overwritten_by_pipeline_outcome():
    assert reconcile_status(EntityStatus.REJECTED, EntityStatus.READY) == EntityStatus.READY


@pytest.mark.parametrize("status", ALL_STATUSES)
def test_output_location_only_for_playable_statuses(status):
    location = "/uploads/hls/e/master.m3u8"
    expected = location if status in (EntityStatus.READY, EntityStatus.APPROVED) else None
    assert output_location_for(status, location) == expected
