"""
jobboard/features/plans/catalog.py

Tier catalog: posting limits, feature flags and checkout prices per tier.

Every tier-dependent rule in the service reads from TIER_CATALOG; call sites
never compare tiers ad hoc.
"""

from typing import Any, Dict, Optional, Union

from jobboard.models.subscription import Tier


# Stored as the monthly limit for premium; large enough to never be reached
UNLIMITED_POSTS = 999

TIER_CATALOG: Dict[Tier, Dict[str, Any]] = {
    Tier.FREE: {
        "name": "Free",
        "monthly_post_limit": 1,
        "postable": False,
        "features": {
            "has_job_view_stats": False,
            "has_advanced_stats": False,
            "can_boost_posts": False,
            "has_priority_support": False,
        },
        "checkout": None,
    },
    Tier.SINGLE: {
        "name": "Single Job Posting",
        "monthly_post_limit": 1,
        "postable": True,
        "features": {
            "has_job_view_stats": False,
            "has_advanced_stats": False,
            "can_boost_posts": False,
            "has_priority_support": False,
        },
        "checkout": {
            "mode": "payment",
            "unit_amount": 10000,  # 100 SEK in öre
            "description": "One-time job posting",
        },
    },
    Tier.BASIC: {
        "name": "Basic Plan",
        "monthly_post_limit": 5,
        "postable": True,
        "features": {
            "has_job_view_stats": False,
            "has_advanced_stats": False,
            "can_boost_posts": False,
            "has_priority_support": False,
        },
        "checkout": {
            "mode": "subscription",
            "unit_amount": 35000,
            "description": "Up to 5 job postings per month",
        },
    },
    Tier.STANDARD: {
        "name": "Standard Plan",
        "monthly_post_limit": 15,
        "postable": True,
        "features": {
            "has_job_view_stats": True,
            "has_advanced_stats": False,
            "can_boost_posts": False,
            "has_priority_support": False,
        },
        "checkout": {
            "mode": "subscription",
            "unit_amount": 75000,
            "description": "Up to 15 job postings per month",
        },
    },
    Tier.PREMIUM: {
        "name": "Premium Plan",
        "monthly_post_limit": UNLIMITED_POSTS,
        "postable": True,
        "features": {
            "has_job_view_stats": True,
            "has_advanced_stats": True,
            "can_boost_posts": True,
            "has_priority_support": True,
        },
        "checkout": {
            "mode": "subscription",
            "unit_amount": 120000,
            "description": "Unlimited job postings per month",
        },
    },
}

POSTABLE_TIERS = frozenset(tier for tier, config in TIER_CATALOG.items() if config["postable"])

UPGRADE_PATH = {
    Tier.FREE: (Tier.BASIC, "Upgrade to Basic for 5 posts per month"),
    Tier.BASIC: (Tier.STANDARD, "Upgrade to Standard for 15 posts per month and viewing statistics"),
    Tier.STANDARD: (Tier.PREMIUM, "Upgrade to Premium for unlimited posts and advanced features"),
}


def parse_tier(value: Union[str, Tier, None], default: Optional[Tier] = Tier.FREE) -> Optional[Tier]:
    """Map a stored or provider-supplied tier string onto Tier (unknown values -> default)."""
    if isinstance(value, Tier):
        return value
    if not value:
        return default
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        return default


def limit_for_tier(tier: Union[str, Tier]) -> int:
    """Deterministic monthly post limit for a tier."""
    return TIER_CATALOG[parse_tier(tier)]["monthly_post_limit"]


def is_postable(tier: Union[str, Tier]) -> bool:
    return parse_tier(tier) in POSTABLE_TIERS


def tier_features(tier: Union[str, Tier]) -> Dict[str, bool]:
    return dict(TIER_CATALOG[parse_tier(tier)]["features"])


def checkout_config(tier: Union[str, Tier]) -> Optional[Dict[str, Any]]:
    return TIER_CATALOG[parse_tier(tier)]["checkout"]


def upgrade_message(tier: Union[str, Tier]) -> Optional[str]:
    """Upsell text for the next tier up, or None at the top of the ladder."""
    step = UPGRADE_PATH.get(parse_tier(tier))
    return step[1] if step else None
