"""
jobboard/features/entitlements/resolver.py

Tier consistency resolver.

Brings the usage-limit row in line with the subscription record:
- missing row -> default row for the subscription tier
- tier/limit drift -> corrected tier and limit, usage preserved
- expired period -> usage zeroed, window advanced by whole months

The subscription record is authoritative for the tier; the usage row is
authoritative for how many posts were made. Write failures do not abort:
the outcome is flagged partial and carries the best-known values.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple
import logging

from dateutil.relativedelta import relativedelta

from jobboard.core.errors import StoreError
from jobboard.features.plans.catalog import limit_for_tier, parse_tier
from jobboard.features.subscriptions import store
from jobboard.models.subscription import Tier, UsageLimitRecord


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolveOutcome:
    usage: UsageLimitRecord
    partial: bool = False
    created: bool = False
    corrected: bool = False
    reset: bool = False


def next_period(period_start: datetime, period_end: datetime, now: datetime) -> Tuple[datetime, datetime]:
    """
    Advance a monthly window by whole months until it contains `now`.

    Months are counted from `period_start` so month-end anchors do not
    drift (Jan 31 -> Feb 28 -> Mar 31).
    """
    months = 1
    start, end = period_start, period_end
    while end <= now:
        start = period_start + relativedelta(months=months)
        end = period_start + relativedelta(months=months + 1)
        months += 1
    return start, end


def _default_usage(user_id: str, tier: Tier, now: datetime) -> UsageLimitRecord:
    return UsageLimitRecord(
        user_id=user_id,
        tier=tier,
        monthly_limit=limit_for_tier(tier),
        monthly_used=0,
        period_start=now,
        period_end=now + store.BILLING_PERIOD,
        updated_at=now,
    )


def reset_expired_period(usage: UsageLimitRecord, now: datetime) -> Tuple[UsageLimitRecord, bool]:
    """
    Roll an expired usage window over (lazy reset).

    Returns the current record and whether a reset happened. If another
    caller already reset the row, their result is re-read and returned.

    Raises:
        StoreError: The reset could not be written or re-read
    """
    if not usage.period_expired(now):
        return usage, False

    start, end = next_period(usage.period_start, usage.period_end, now)
    won = store.reset_usage_period(
        usage.user_id,
        expected_period_end=usage.period_end,
        period_start=start,
        period_end=end,
        now=now,
    )
    if won:
        logger.info(
            "[usage] PERIOD_RESET",
            extra={
                "user_id": usage.user_id,
                "previous_used": usage.monthly_used,
                "period_start": start.isoformat(),
                "period_end": end.isoformat(),
            },
        )
        return usage.model_copy(update={
            "monthly_used": 0,
            "period_start": start,
            "period_end": end,
            "updated_at": now,
        }), True

    current = store.read_usage_limit(usage.user_id)
    if current is None:
        raise StoreError(f"usage row for {usage.user_id} missing during reset")
    return current, False


def resolve_usage_limit(
    user_id: str,
    subscription_tier,
    *,
    now: Optional[datetime] = None,
) -> ResolveOutcome:
    """
    Reconcile the usage-limit row against the subscription tier.

    Raises:
        StoreError: The usage row could not be read at all
    """
    now = store.as_utc(now) or store.utc_now()
    tier = parse_tier(subscription_tier)
    expected = limit_for_tier(tier)
    partial = False
    created = corrected = reset = False

    usage = store.read_usage_limit(user_id)

    if usage is None:
        try:
            usage = store.insert_default_usage_limit(user_id, tier, now=now)
            created = True
        except StoreError as e:
            logger.error(
                "[entitlements] USAGE_INSERT_FAILED",
                extra={"user_id": user_id, "tier": tier.value, "error": str(e)},
            )
            return ResolveOutcome(usage=_default_usage(user_id, tier, now), partial=True)

    if usage.tier != tier or usage.monthly_limit != expected:
        logger.info(
            "[entitlements] TIER_DRIFT",
            extra={
                "user_id": user_id,
                "usage_tier": usage.tier.value,
                "usage_limit": usage.monthly_limit,
                "subscription_tier": tier.value,
                "expected_limit": expected,
            },
        )
        best_known = usage.model_copy(update={"tier": tier, "monthly_limit": expected})
        try:
            updated = store.write_usage_limit(user_id, now=now, tier=tier, monthly_limit=expected)
        except StoreError as e:
            logger.error(
                "[entitlements] USAGE_CORRECTION_FAILED",
                extra={"user_id": user_id, "error": str(e)},
            )
            updated = None
        if updated is None:
            partial = True
            usage = best_known
        else:
            usage = updated
            corrected = True

    try:
        usage, reset = reset_expired_period(usage, now)
    except StoreError as e:
        logger.error(
            "[entitlements] USAGE_RESET_FAILED",
            extra={"user_id": user_id, "error": str(e)},
        )
        partial = True

    return ResolveOutcome(usage=usage, partial=partial, created=created, corrected=corrected, reset=reset)
