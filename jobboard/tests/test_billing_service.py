"""
Test billing reconciliation service.

Tests with mocked Stripe provider (no real API calls).
"""
import pytest
from unittest.mock import Mock, patch
from datetime import timedelta

from jobboard.core.auth import Identity
from jobboard.core.errors import BillingCheckError, NotFoundError, PermissionError, ValidationError
from jobboard.features.billing.provider import BillingCheckResult, BillingProviderError
from jobboard.features.billing.service import (
    BillingCheckCache,
    billing_enabled,
    get_provider,
    reconcile_billing,
    start_checkout,
    start_portal,
)
from jobboard.features.subscriptions import store
from jobboard.core.config import settings
from jobboard.models.subscription import Tier


ALICE = Identity(id="user_alice", email="alice@example.com")


@pytest.fixture
def provider():
    """Mock billing provider."""
    mock = Mock()
    mock.check_subscription.return_value = BillingCheckResult(subscribed=False, tier="free", status="none")
    return mock


@pytest.fixture
def mock_stripe_provider(monkeypatch):
    """Billing enabled with StripeProvider replaced by a mock."""
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    with patch("jobboard.features.billing.service.StripeProvider") as mock:
        instance = Mock()
        mock.return_value = instance
        yield instance


class TestBillingDisabled:
    def test_billing_disabled_when_no_stripe_key(self):
        assert billing_enabled() is False

    def test_get_provider_returns_none_when_disabled(self):
        assert get_provider() is None

    def test_start_checkout_returns_none_when_disabled(self):
        assert start_checkout(ALICE, "basic", "http://example.com") is None

    def test_start_portal_returns_none_when_disabled(self):
        assert start_portal(ALICE, "http://example.com") is None

    def test_reconcile_raises_when_disabled(self):
        with pytest.raises(BillingCheckError) as exc_info:
            reconcile_billing(ALICE)
        assert exc_info.value.code == "billing_disabled"
        assert store.read_subscription(ALICE.id) is None


class TestReconcileBilling:
    def test_active_subscription_written_back(self, provider, now):
        period_end = now + timedelta(days=20)
        provider.check_subscription.return_value = BillingCheckResult(
            subscribed=True,
            tier="standard",
            status="active",
            current_period_end=period_end,
            external_ref="sub_1",
            customer_ref="cus_1",
        )

        reconcile_billing(ALICE, provider=provider, now=now)

        record = store.read_subscription(ALICE.id)
        assert record.tier == Tier.STANDARD
        assert record.active is True
        assert record.expires_at == period_end
        assert record.external_ref == "sub_1"
        assert record.customer_ref == "cus_1"
        assert record.email == "alice@example.com"

    def test_authority_wins_over_stale_cache(self, provider, now):
        store.write_subscription(ALICE.id, tier=Tier.PREMIUM, active=True, customer_ref="cus_1", now=now)
        provider.check_subscription.return_value = BillingCheckResult(
            subscribed=False, tier="free", status="none", customer_ref="cus_1"
        )

        reconcile_billing(ALICE, provider=provider, now=now)

        record = store.read_subscription(ALICE.id)
        assert record.tier == Tier.FREE
        assert record.active is False
        assert record.expires_at is None

    def test_stored_customer_ref_is_passed_and_kept(self, provider, now):
        store.write_subscription(ALICE.id, customer_ref="cus_stored", now=now)

        reconcile_billing(ALICE, provider=provider, now=now)

        provider.check_subscription.assert_called_once_with(
            ALICE.id, email="alice@example.com", customer_ref="cus_stored"
        )
        assert store.read_subscription(ALICE.id).customer_ref == "cus_stored"

    def test_failure_mutates_nothing(self, provider, now):
        store.write_subscription(ALICE.id, tier=Tier.BASIC, active=True, now=now)
        provider.check_subscription.side_effect = BillingProviderError("stripe down")

        with pytest.raises(BillingCheckError) as exc_info:
            reconcile_billing(ALICE, provider=provider, now=now + timedelta(hours=1))

        assert exc_info.value.retryable is True
        record = store.read_subscription(ALICE.id)
        assert record.tier == Tier.BASIC
        assert record.active is True
        assert record.updated_at == now

    def test_repeat_checks_are_cached(self, provider, now):
        reconcile_billing(ALICE, provider=provider, now=now)
        reconcile_billing(ALICE, provider=provider, now=now)

        assert provider.check_subscription.call_count == 1

    def test_force_fresh_bypasses_cache(self, provider, now):
        reconcile_billing(ALICE, provider=provider, now=now)
        reconcile_billing(ALICE, provider=provider, now=now, force_fresh=True)

        assert provider.check_subscription.call_count == 2

    def test_reconcile_is_idempotent(self, provider, now):
        provider.check_subscription.return_value = BillingCheckResult(
            subscribed=True, tier="basic", status="active", customer_ref="cus_1"
        )
        reconcile_billing(ALICE, provider=provider, now=now, force_fresh=True)
        first = store.read_subscription(ALICE.id)
        reconcile_billing(ALICE, provider=provider, now=now, force_fresh=True)
        second = store.read_subscription(ALICE.id)

        assert first == second

    def test_unknown_tier_maps_to_free(self, provider, now):
        provider.check_subscription.return_value = BillingCheckResult(subscribed=True, tier="gold", status="active")

        reconcile_billing(ALICE, provider=provider, now=now)

        assert store.read_subscription(ALICE.id).tier == Tier.FREE


class TestBillingCheckCache:
    def test_entries_expire_after_ttl(self):
        clock = Mock(return_value=100.0)
        cache = BillingCheckCache(ttl_seconds=20, clock=clock)
        result = BillingCheckResult(subscribed=False, tier="free")
        cache.put("user_alice", result)

        clock.return_value = 119.0
        assert cache.get("user_alice") is result

        clock.return_value = 120.0
        assert cache.get("user_alice") is None

    def test_invalidate_single_user(self):
        cache = BillingCheckCache(ttl_seconds=20)
        cache.put("a", BillingCheckResult(subscribed=False, tier="free"))
        cache.put("b", BillingCheckResult(subscribed=False, tier="free"))

        cache.invalidate("a")

        assert cache.get("a") is None
        assert cache.get("b") is not None


class TestCheckout:
    def test_checkout_success_url_carries_payment_markers(self, mock_stripe_provider):
        mock_stripe_provider.ensure_customer.return_value = "cus_new"
        mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/abc"

        url = start_checkout(ALICE, "standard", "https://jobs.example.com/", token="1700000000000")

        assert url == "https://checkout.stripe.com/abc"
        kwargs = mock_stripe_provider.create_checkout_session.call_args.kwargs
        assert kwargs["customer_id"] == "cus_new"
        assert kwargs["tier"] == "standard"
        assert kwargs["success_url"] == (
            "https://jobs.example.com/dashboard?payment_success=true&plan=standard&ts=1700000000000"
        )
        assert kwargs["cancel_url"] == "https://jobs.example.com/pricing?payment_canceled=true"

    def test_checkout_stores_new_customer_ref(self, mock_stripe_provider):
        mock_stripe_provider.ensure_customer.return_value = "cus_new"
        mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/abc"

        start_checkout(ALICE, "single", "https://jobs.example.com")

        assert store.read_subscription(ALICE.id).customer_ref == "cus_new"

    def test_checkout_rejects_unknown_plan(self, mock_stripe_provider):
        with pytest.raises(ValidationError):
            start_checkout(ALICE, "gold", "https://jobs.example.com")

    def test_checkout_rejects_free_plan(self, mock_stripe_provider):
        with pytest.raises(ValidationError):
            start_checkout(ALICE, "free", "https://jobs.example.com")

    def test_checkout_provider_error_propagates(self, mock_stripe_provider):
        mock_stripe_provider.ensure_customer.return_value = "cus_1"
        mock_stripe_provider.create_checkout_session.side_effect = BillingProviderError("declined")

        with pytest.raises(BillingProviderError):
            start_checkout(ALICE, "basic", "https://jobs.example.com")


class TestPortal:
    def test_portal_requires_customer(self, mock_stripe_provider):
        with pytest.raises(NotFoundError):
            start_portal(ALICE, "https://jobs.example.com")

    def test_portal_requires_active_paid_subscription(self, mock_stripe_provider, now):
        store.write_subscription(ALICE.id, customer_ref="cus_1", tier=Tier.FREE, active=False)

        with pytest.raises(PermissionError):
            start_portal(ALICE, "https://jobs.example.com")

    def test_portal_rejects_expired_subscription(self, mock_stripe_provider, now):
        store.write_subscription(
            ALICE.id,
            customer_ref="cus_1",
            tier=Tier.BASIC,
            active=True,
            expires_at=now - timedelta(days=1),
        )

        with pytest.raises(PermissionError):
            start_portal(ALICE, "https://jobs.example.com", now=now)

    def test_portal_return_url_carries_update_marker(self, mock_stripe_provider, now):
        store.write_subscription(
            ALICE.id,
            customer_ref="cus_1",
            tier=Tier.PREMIUM,
            active=True,
            expires_at=now + timedelta(days=10),
        )
        mock_stripe_provider.create_portal_session.return_value = "https://billing.stripe.com/p"

        url = start_portal(ALICE, "https://jobs.example.com", token="42", now=now)

        assert url == "https://billing.stripe.com/p"
        mock_stripe_provider.create_portal_session.assert_called_once_with(
            customer_id="cus_1",
            return_url="https://jobs.example.com/dashboard?subscription_updated=true&ts=42",
        )
