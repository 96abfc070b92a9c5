"""
jobboard/features/entitlements/service.py

Entitlement reconciliation service.

Handles:
- The read path: lazy default rows, expiry self-heal, lazy usage reset
- Full reconciliation: billing check -> tier consistency -> projection
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple
import logging

from jobboard.core.auth import Identity
from jobboard.core.errors import AppError, BillingCheckError
from jobboard.features.billing.service import reconcile_billing
from jobboard.features.entitlements.projector import project_records
from jobboard.features.entitlements.resolver import ResolveOutcome, resolve_usage_limit
from jobboard.features.subscriptions import store
from jobboard.models.subscription import FeatureEntitlementBundle, SubscriptionRecord


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one reconciliation pass."""
    bundle: FeatureEntitlementBundle
    billing_ok: bool
    partial: bool = False
    error: Optional[AppError] = None

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


def ensure_subscription(user_id: str, email: Optional[str] = None, *, now: Optional[datetime] = None) -> SubscriptionRecord:
    """Read the subscription record, creating the free default when absent."""
    record = store.read_subscription(user_id)
    if record is None:
        record = store.insert_default_subscription(user_id, email, now=now)
    return record


def _resolve(user_id: str, email: Optional[str], now: datetime) -> Tuple[SubscriptionRecord, ResolveOutcome]:
    subscription = ensure_subscription(user_id, email, now=now)
    outcome = resolve_usage_limit(user_id, subscription.tier, now=now)
    return subscription, outcome


def load_entitlements(user_id: str, email: Optional[str] = None, *, now: Optional[datetime] = None) -> FeatureEntitlementBundle:
    """
    Current bundle from stored state, without asking the billing authority.

    Raises:
        StoreError: The subscription or usage row could not be read
    """
    now = store.as_utc(now) or store.utc_now()
    subscription, outcome = _resolve(user_id, email, now)
    bundle = project_records(subscription, outcome.usage, now=now)
    if subscription.active and not bundle.is_active:
        logger.info(
            "[entitlements] stale subscription treated as inactive",
            extra={"user_id": user_id, "expires_at": subscription.expires_at.isoformat() if subscription.expires_at else None},
        )
    return bundle


def reconcile_entitlements(
    identity: Identity,
    *,
    force_billing: bool = False,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    """
    Full reconciliation pass.

    1. Billing check and write-back (skipped on failure, stored state kept)
    2. Usage row brought in line with the subscription tier
    3. Bundle projected from the reconciled rows

    A failed billing check is reported on the result, never turned into a
    free-tier answer.

    Raises:
        StoreError: Stored state could not be read
    """
    now = store.as_utc(now) or store.utc_now()
    billing_ok = True
    error: Optional[AppError] = None

    try:
        reconcile_billing(identity, force_fresh=force_billing, now=now)
    except BillingCheckError as e:
        billing_ok = False
        error = e
        logger.warning(
            "[entitlements] billing check failed, using stored subscription",
            extra={"user_id": identity.id, "error_code": e.code},
        )

    subscription, outcome = _resolve(identity.id, identity.email, now)
    bundle = project_records(subscription, outcome.usage, now=now)

    logger.info(
        "[entitlements] RECONCILED",
        extra={
            "user_id": identity.id,
            "tier": bundle.tier.value,
            "status": bundle.status,
            "billing_ok": billing_ok,
            "partial": outcome.partial,
            "usage_created": outcome.created,
            "usage_corrected": outcome.corrected,
            "usage_reset": outcome.reset,
        },
    )
    return ReconciliationResult(bundle=bundle, billing_ok=billing_ok, partial=outcome.partial, error=error)
