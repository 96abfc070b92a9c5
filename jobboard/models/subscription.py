"""
jobboard/models/subscription.py

Subscription, usage-limit and feature-bundle models.

SubscriptionRecord and UsageLimitRecord mirror one row of the
`subscriptions` and `usage_limits` tables. FeatureEntitlementBundle is
derived on every reconciliation and never persisted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Tier(str, Enum):
    """Subscription plan level."""
    FREE = "free"
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"
    SINGLE = "single"


class SubscriptionRecord(BaseModel):
    """
    Cached billing-authority view of a user's subscription.

    `active` is the stored flag; readers must go through `is_live()` since a
    past `expires_at` overrides a stale-true flag.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    tier: Tier = Tier.FREE
    active: bool = False
    expires_at: Optional[datetime] = None
    external_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    updated_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        if not self.active:
            return False
        if self.expires_at is not None and self.expires_at < now:
            return False
        return True


class UsageLimitRecord(BaseModel):
    """Monthly posting counter for one user."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier = Tier.FREE
    monthly_limit: int = 1
    monthly_used: int = 0
    period_start: datetime
    period_end: datetime
    updated_at: Optional[datetime] = None

    def period_expired(self, now: datetime) -> bool:
        return now > self.period_end


class FeatureEntitlementBundle(BaseModel):
    """
    Read-only feature flags derived from the reconciled tier.

    `tier` is the nominal stored tier (for display); every gating field has
    already been collapsed to the free projection when the subscription is
    not live.
    """
    model_config = ConfigDict(frozen=True)

    is_active: bool
    tier: Tier
    status: str
    monthly_post_limit: int
    monthly_posts_used: int
    remaining_posts: int
    has_unlimited_posts: bool
    has_job_view_stats: bool
    has_advanced_stats: bool
    can_boost_posts: bool
    has_priority_support: bool
    expires_at: Optional[datetime] = None

    @property
    def can_access_statistics(self) -> bool:
        return self.has_job_view_stats or self.has_advanced_stats
