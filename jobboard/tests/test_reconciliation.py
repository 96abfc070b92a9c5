"""
jobboard/tests/test_reconciliation.py

Full reconciliation pass and the read path.
"""

import pytest
from datetime import timedelta
from unittest.mock import Mock, patch

from jobboard.core.auth import Identity
from jobboard.core.errors import StoreError
from jobboard.features.billing.provider import BillingCheckResult, BillingProviderError
from jobboard.features.entitlements.service import load_entitlements, reconcile_entitlements
from jobboard.features.plans.catalog import limit_for_tier
from jobboard.features.subscriptions import store
from jobboard.models.subscription import Tier


ALICE = Identity(id="user_alice", email="alice@example.com")


@pytest.fixture
def provider():
    mock = Mock()
    with patch("jobboard.features.billing.service.get_provider", return_value=mock):
        yield mock


def _stripe_says(provider, tier, now, subscribed=True):
    provider.check_subscription.return_value = BillingCheckResult(
        subscribed=subscribed,
        tier=tier,
        status="active" if subscribed else "none",
        current_period_end=now + timedelta(days=25) if subscribed else None,
        external_ref="sub_1" if subscribed else None,
        customer_ref="cus_1",
    )


def test_new_identity_gets_default_rows_on_read(now):
    bundle = load_entitlements("user_new", "new@example.com", now=now)

    assert bundle.tier == Tier.FREE
    assert bundle.is_active is False
    assert bundle.monthly_post_limit == 1
    subscription = store.read_subscription("user_new")
    usage = store.read_usage_limit("user_new")
    assert subscription.tier == Tier.FREE
    assert subscription.active is False
    assert usage.tier == Tier.FREE
    assert usage.monthly_used == 0


def test_successful_pass_aligns_usage_with_subscription(provider, now):
    store.insert_default_usage_limit(ALICE.id, Tier.BASIC, now=now)
    store.write_usage_limit(ALICE.id, monthly_used=3)
    _stripe_says(provider, "premium", now)

    result = reconcile_entitlements(ALICE, now=now)

    assert result.billing_ok is True
    assert result.partial is False
    subscription = store.read_subscription(ALICE.id)
    usage = store.read_usage_limit(ALICE.id)
    assert usage.tier == subscription.tier == Tier.PREMIUM
    assert usage.monthly_limit == limit_for_tier(Tier.PREMIUM)
    assert usage.monthly_used == 3
    assert result.bundle.has_advanced_stats is True
    assert result.bundle.has_unlimited_posts is True


def test_two_passes_without_change_give_identical_bundles(provider, now):
    _stripe_says(provider, "standard", now)

    first = reconcile_entitlements(ALICE, now=now)
    second = reconcile_entitlements(ALICE, now=now, force_billing=True)

    assert first.bundle == second.bundle


def test_billing_failure_keeps_stored_tier(provider, now):
    _stripe_says(provider, "standard", now)
    reconcile_entitlements(ALICE, now=now)

    provider.check_subscription.side_effect = BillingProviderError("stripe timeout")
    result = reconcile_entitlements(ALICE, now=now, force_billing=True)

    assert result.billing_ok is False
    assert result.retryable is True
    assert result.error.code == "billing_check_failed"
    assert result.bundle.tier == Tier.STANDARD
    assert result.bundle.is_active is True
    assert result.bundle.has_job_view_stats is True


def test_cancellation_downgrades_but_keeps_usage(provider, now):
    _stripe_says(provider, "standard", now)
    reconcile_entitlements(ALICE, now=now)
    store.write_usage_limit(ALICE.id, monthly_used=9)

    _stripe_says(provider, "free", now, subscribed=False)
    result = reconcile_entitlements(ALICE, now=now, force_billing=True)

    assert result.bundle.is_active is False
    assert result.bundle.tier == Tier.FREE
    usage = store.read_usage_limit(ALICE.id)
    assert usage.tier == Tier.FREE
    assert usage.monthly_limit == 1
    assert usage.monthly_used == 9


def test_read_path_self_heals_expired_subscription(now):
    store.write_subscription(
        ALICE.id,
        now=now,
        tier=Tier.PREMIUM,
        active=True,
        expires_at=now - timedelta(minutes=1),
    )

    bundle = load_entitlements(ALICE.id, now=now)

    assert bundle.is_active is False
    assert bundle.status == "expired"
    assert bundle.can_boost_posts is False
    # Not eagerly written back
    assert store.read_subscription(ALICE.id).active is True


def test_partial_write_still_returns_bundle(provider, now):
    store.insert_default_usage_limit(ALICE.id, Tier.FREE, now=now)
    _stripe_says(provider, "basic", now)

    with patch(
        "jobboard.features.entitlements.resolver.store.write_usage_limit",
        side_effect=StoreError("write failed"),
    ):
        result = reconcile_entitlements(ALICE, now=now)

    assert result.partial is True
    assert result.billing_ok is True
    assert result.bundle.monthly_post_limit == 5


def test_store_outage_is_an_error_not_free_tier(provider, now):
    _stripe_says(provider, "basic", now)
    with patch(
        "jobboard.features.entitlements.service.store.read_subscription",
        side_effect=StoreError("db down"),
    ):
        with pytest.raises(StoreError):
            reconcile_entitlements(ALICE, now=now)
