"""
jobboard/tests/test_resolver.py

Tier consistency: defaults, drift correction, period rollover, partial writes.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from jobboard.core.errors import StoreError
from jobboard.features.entitlements.resolver import next_period, resolve_usage_limit
from jobboard.features.plans.catalog import UNLIMITED_POSTS
from jobboard.features.subscriptions import store
from jobboard.models.subscription import Tier


def test_missing_row_is_created_for_subscription_tier(now):
    outcome = resolve_usage_limit("user_alice", Tier.BASIC, now=now)

    assert outcome.created is True
    assert outcome.partial is False
    assert outcome.usage.tier == Tier.BASIC
    assert outcome.usage.monthly_limit == 5
    assert outcome.usage.monthly_used == 0
    assert store.read_usage_limit("user_alice") is not None


def test_tier_change_mid_period_preserves_usage(now):
    store.insert_default_usage_limit("user_alice", Tier.BASIC, now=now)
    store.write_usage_limit("user_alice", monthly_used=4)

    outcome = resolve_usage_limit("user_alice", Tier.STANDARD, now=now + timedelta(days=3))

    assert outcome.corrected is True
    assert outcome.usage.tier == Tier.STANDARD
    assert outcome.usage.monthly_limit == 15
    assert outcome.usage.monthly_used == 4

    stored = store.read_usage_limit("user_alice")
    assert stored.tier == Tier.STANDARD
    assert stored.monthly_limit == 15
    assert stored.monthly_used == 4


def test_limit_drift_with_same_tier_is_corrected(now):
    store.insert_default_usage_limit("user_alice", Tier.PREMIUM, now=now)
    store.write_usage_limit("user_alice", monthly_limit=10)

    outcome = resolve_usage_limit("user_alice", Tier.PREMIUM, now=now)

    assert outcome.corrected is True
    assert outcome.usage.monthly_limit == UNLIMITED_POSTS


def test_consistent_row_is_left_alone(now):
    store.insert_default_usage_limit("user_alice", Tier.BASIC, now=now)

    with patch("jobboard.features.entitlements.resolver.store.write_usage_limit") as write:
        outcome = resolve_usage_limit("user_alice", Tier.BASIC, now=now)

    write.assert_not_called()
    assert outcome.corrected is False
    assert outcome.reset is False


def test_expired_period_resets_usage_and_advances_window(now):
    store.insert_default_usage_limit("user_alice", Tier.STANDARD, now=now)
    store.write_usage_limit("user_alice", monthly_used=15)

    later = now + timedelta(days=75)  # 2026-05-29
    outcome = resolve_usage_limit("user_alice", Tier.STANDARD, now=later)

    assert outcome.reset is True
    assert outcome.usage.monthly_used == 0
    assert outcome.usage.period_start == datetime(2026, 5, 15, 12, 0, tzinfo=timezone.utc)
    assert outcome.usage.period_end == datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)
    assert outcome.usage.period_start <= later < outcome.usage.period_end

    stored = store.read_usage_limit("user_alice")
    assert stored.monthly_used == 0
    assert stored.period_end == outcome.usage.period_end


def test_not_expired_at_period_end_boundary(now):
    usage = store.insert_default_usage_limit("user_alice", Tier.BASIC, now=now)
    store.write_usage_limit("user_alice", monthly_used=2)

    outcome = resolve_usage_limit("user_alice", Tier.BASIC, now=usage.period_end)

    assert outcome.reset is False
    assert outcome.usage.monthly_used == 2


def test_next_period_keeps_month_end_anchor():
    start = datetime(2026, 1, 31, tzinfo=timezone.utc)
    end = datetime(2026, 2, 28, tzinfo=timezone.utc)

    new_start, new_end = next_period(start, end, datetime(2026, 3, 5, tzinfo=timezone.utc))

    assert new_start == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert new_end == datetime(2026, 3, 31, tzinfo=timezone.utc)


def test_resolution_is_idempotent(now):
    store.insert_default_usage_limit("user_alice", Tier.FREE, now=now)

    first = resolve_usage_limit("user_alice", Tier.STANDARD, now=now)
    second = resolve_usage_limit("user_alice", Tier.STANDARD, now=now)

    assert second.corrected is False
    assert (first.usage.tier, first.usage.monthly_limit, first.usage.monthly_used) == (
        second.usage.tier,
        second.usage.monthly_limit,
        second.usage.monthly_used,
    )


def test_correction_write_failure_marks_partial_and_keeps_best_known(now):
    store.insert_default_usage_limit("user_alice", Tier.BASIC, now=now)
    store.write_usage_limit("user_alice", monthly_used=3)

    with patch(
        "jobboard.features.entitlements.resolver.store.write_usage_limit",
        side_effect=StoreError("write failed"),
    ):
        outcome = resolve_usage_limit("user_alice", Tier.STANDARD, now=now)

    assert outcome.partial is True
    assert outcome.corrected is False
    assert outcome.usage.tier == Tier.STANDARD
    assert outcome.usage.monthly_limit == 15
    assert outcome.usage.monthly_used == 3
    assert store.read_usage_limit("user_alice").tier == Tier.BASIC


def test_insert_failure_marks_partial_with_default_values(now):
    with patch(
        "jobboard.features.entitlements.resolver.store.insert_default_usage_limit",
        side_effect=StoreError("insert failed"),
    ):
        outcome = resolve_usage_limit("user_alice", Tier.PREMIUM, now=now)

    assert outcome.partial is True
    assert outcome.usage.monthly_limit == UNLIMITED_POSTS
    assert outcome.usage.monthly_used == 0


def test_read_failure_propagates():
    with patch(
        "jobboard.features.entitlements.resolver.store.read_usage_limit",
        side_effect=StoreError("read failed"),
    ):
        with pytest.raises(StoreError):
            resolve_usage_limit("user_alice", Tier.BASIC)
