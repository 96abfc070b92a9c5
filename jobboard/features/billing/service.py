"""
Billing reconciliation service.

Coordinates:
- Subscription checks against the billing authority (with a short TTL cache)
- Write-back of the authority's answer into the subscription record
- Checkout and customer portal sessions

All Stripe-specific code is in stripe_provider.py.
"""
import time
import threading
from typing import Callable, Dict, Optional, Tuple
from datetime import datetime
import logging

from jobboard.core.auth import Identity
from jobboard.core.config import settings
from jobboard.core.errors import BillingCheckError, NotFoundError, PermissionError, ValidationError
from jobboard.core.logging import log_event
from jobboard.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingCheckResult,
)
from jobboard.features.billing.stripe_provider import StripeProvider
from jobboard.features.plans.catalog import checkout_config, parse_tier
from jobboard.features.subscriptions import store
from jobboard.models.subscription import Tier

logger = logging.getLogger(__name__)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


class BillingCheckCache:
    """
    Per-user cache of billing check results.

    Answers younger than `ttl_seconds` are reused unless the caller forces a
    fresh check.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = settings.BILLING_CHECK_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, BillingCheckResult]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[BillingCheckResult]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            stored_at, result = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._entries[user_id]
                return None
            return result

    def put(self, user_id: str, result: BillingCheckResult) -> None:
        with self._lock:
            self._entries[user_id] = (self._clock(), result)

    def invalidate(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
            else:
                self._entries.pop(user_id, None)


check_cache = BillingCheckCache()


def _return_token() -> str:
    return str(int(time.time() * 1000))


def _base_url(origin: Optional[str]) -> str:
    return (origin or settings.APP_BASE_URL).rstrip("/")


def reconcile_billing(
    identity: Identity,
    *,
    force_fresh: bool = False,
    now: Optional[datetime] = None,
    provider: Optional[BillingProvider] = None,
) -> BillingCheckResult:
    """
    Ask the billing authority for the user's plan and write it back.

    The authority wins for tier, active and expires_at; the write happens on
    every successful check. On failure nothing is written.

    Raises:
        BillingCheckError: Billing disabled, or the check failed
        StoreError: The subscription record could not be read or written
    """
    provider = provider or get_provider()
    if provider is None:
        raise BillingCheckError("Billing is not configured", code="billing_disabled", status_code=503)

    existing = store.read_subscription(identity.id)
    email = identity.email or (existing.email if existing else None)
    stored_customer = existing.customer_ref if existing else None

    result = None if force_fresh else check_cache.get(identity.id)
    if result is None:
        try:
            result = provider.check_subscription(identity.id, email=email, customer_ref=stored_customer)
        except BillingProviderError as e:
            logger.warning(
                "[billing] CHECK_FAILED",
                extra={"user_id": identity.id, "error": str(e), "force_fresh": force_fresh},
            )
            raise BillingCheckError(str(e)) from e
        check_cache.put(identity.id, result)
    else:
        logger.debug("[billing] check served from cache", extra={"user_id": identity.id})

    tier = parse_tier(result.tier)
    if tier.value != (result.tier or "").lower():
        logger.warning(
            "[billing] UNKNOWN_TIER",
            extra={"user_id": identity.id, "reported_tier": result.tier},
        )

    store.write_subscription(
        identity.id,
        now=now,
        email=email,
        tier=tier,
        active=result.subscribed,
        expires_at=result.current_period_end,
        external_ref=result.external_ref,
        customer_ref=result.customer_ref or stored_customer,
    )

    logger.info(
        "[billing] RECONCILED",
        extra={
            "user_id": identity.id,
            "tier": tier.value,
            "active": result.subscribed,
            "expires_at": result.current_period_end.isoformat() if result.current_period_end else None,
        },
    )
    return result


def start_checkout(
    identity: Identity,
    tier: str,
    origin: Optional[str] = None,
    *,
    token: Optional[str] = None,
    provider: Optional[BillingProvider] = None,
) -> Optional[str]:
    """
    Start a checkout session for a plan.

    The success URL carries the payment-return markers
    (payment_success, plan, ts) that trigger a forced refresh on return.

    Returns:
        Checkout URL, or None if billing disabled

    Raises:
        ValidationError: Unknown or non-purchasable plan
        BillingProviderError: If checkout creation fails
    """
    plan = parse_tier(tier, default=None)
    if plan is None or checkout_config(plan) is None:
        raise ValidationError(f"Unknown plan: {tier}")

    provider = provider or get_provider()
    if not provider:
        return None

    existing = store.read_subscription(identity.id)
    stored_customer = existing.customer_ref if existing else None
    customer_id = provider.ensure_customer(identity.id, identity.email, stored_customer)
    if customer_id != stored_customer:
        store.write_subscription(identity.id, email=identity.email, customer_ref=customer_id)

    base = _base_url(origin)
    success_url = f"{base}/dashboard?payment_success=true&plan={plan.value}&ts={token or _return_token()}"
    cancel_url = f"{base}/pricing?payment_canceled=true"

    url = provider.create_checkout_session(
        customer_id=customer_id,
        tier=plan.value,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={"tier": plan.value, "user_id": identity.id},
    )
    log_event("info", "billing.checkout_started", user_id=identity.id, event_type="billing.checkout_started", extra={"tier": plan.value, "customer_id": customer_id})
    return url


def start_portal(
    identity: Identity,
    origin: Optional[str] = None,
    *,
    token: Optional[str] = None,
    now: Optional[datetime] = None,
    provider: Optional[BillingProvider] = None,
) -> Optional[str]:
    """
    Start billing portal session for customer self-service.

    Returns:
        Portal URL, or None if billing disabled

    Raises:
        NotFoundError: No billing customer on record
        PermissionError: No active paid subscription
        BillingProviderError: If portal creation fails
    """
    provider = provider or get_provider()
    if not provider:
        return None

    existing = store.read_subscription(identity.id)
    if existing is None or not existing.customer_ref:
        raise NotFoundError("No billing customer found. Please purchase a plan first.")

    now = now or store.utc_now()
    if existing.tier == Tier.FREE or not existing.is_live(now):
        raise PermissionError(
            "You need an active subscription to access the customer portal. Please purchase a plan first."
        )

    return_url = f"{_base_url(origin)}/dashboard?subscription_updated=true&ts={token or _return_token()}"
    url = provider.create_portal_session(customer_id=existing.customer_ref, return_url=return_url)
    log_event("info", "billing.portal_started", user_id=identity.id, event_type="billing.portal_started", extra={"customer_id": existing.customer_ref})
    return url
