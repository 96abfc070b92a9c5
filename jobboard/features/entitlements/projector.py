"""
jobboard/features/entitlements/projector.py

Feature entitlement projector.

Pure mapping from (tier, active, expiry, usage) to the feature bundle. No
I/O; the same inputs always give the same bundle.
"""

from datetime import datetime
from typing import Optional, Union

from jobboard.features.plans.catalog import UNLIMITED_POSTS, limit_for_tier, parse_tier, tier_features
from jobboard.models.subscription import FeatureEntitlementBundle, SubscriptionRecord, Tier, UsageLimitRecord


STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_EXPIRED = "expired"


def subscription_status(active: bool, expires_at: Optional[datetime], now: datetime) -> str:
    if expires_at is not None and expires_at < now:
        return STATUS_EXPIRED
    return STATUS_ACTIVE if active else STATUS_INACTIVE


def project(
    tier: Union[str, Tier],
    active: bool,
    expires_at: Optional[datetime],
    monthly_limit: int,
    monthly_used: int,
    *,
    now: datetime,
) -> FeatureEntitlementBundle:
    """
    Build the feature bundle.

    A subscription that is inactive or past `expires_at` gets the free
    projection for every gating field; `tier` still reports the stored tier.
    `monthly_limit` is the stored row value for a live subscription and the
    free limit otherwise.
    """
    tier = parse_tier(tier)
    status = subscription_status(active, expires_at, now)
    is_active = status == STATUS_ACTIVE

    effective = tier if is_active else Tier.FREE
    features = tier_features(effective)
    limit = monthly_limit if is_active else limit_for_tier(Tier.FREE)
    used = max(monthly_used, 0)
    unlimited = is_active and limit >= UNLIMITED_POSTS

    return FeatureEntitlementBundle(
        is_active=is_active,
        tier=tier,
        status=status,
        monthly_post_limit=limit,
        monthly_posts_used=used,
        remaining_posts=max(limit - used, 0),
        has_unlimited_posts=unlimited,
        expires_at=expires_at,
        **features,
    )


def project_records(
    subscription: SubscriptionRecord,
    usage: UsageLimitRecord,
    *,
    now: datetime,
) -> FeatureEntitlementBundle:
    return project(
        subscription.tier,
        subscription.active,
        subscription.expires_at,
        usage.monthly_limit,
        usage.monthly_used,
        now=now,
    )
