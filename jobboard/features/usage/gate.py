"""
jobboard/features/usage/gate.py

Posting-limit gate.

Two ways to guard a job post:

1. can_post() before the job write, increment_usage() after it. Simple, but
   two concurrent posts can both pass the check and overshoot the limit by
   one each (check-then-act).
2. reserve_post() / release_post(), or post_with_limit() which wires them
   around the job-creation callable. The reservation is a conditional SQL
   increment (monthly_used < monthly_limit), so concurrent posts cannot
   overshoot; a failed job write gives the slot back.

Denial is a normal outcome (GateDecision.allowed is False), never an
exception. Store failures raise StoreError.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional
import logging

from jobboard.core.errors import StoreError
from jobboard.features.entitlements.resolver import resolve_usage_limit
from jobboard.features.entitlements.service import ensure_subscription
from jobboard.features.plans.catalog import is_postable, upgrade_message
from jobboard.features.subscriptions import store
from jobboard.models.subscription import Tier


logger = logging.getLogger(__name__)

REASON_OK = "ok"
REASON_UPGRADE_REQUIRED = "upgrade_required"
REASON_LIMIT_REACHED = "limit_reached"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str
    upgrade_message: Optional[str] = None
    remaining: int = 0
    tier: Tier = Tier.FREE
    monthly_limit: int = 0
    monthly_used: int = 0


@dataclass(frozen=True)
class PostResult:
    decision: GateDecision
    job: Any = None

    @property
    def posted(self) -> bool:
        return self.decision.allowed


def can_post(user_id: str, *, now: Optional[datetime] = None) -> GateDecision:
    """
    Decide whether the user may publish one more job post.

    Raises:
        StoreError: Subscription or usage state could not be read
    """
    now = store.as_utc(now) or store.utc_now()
    subscription = ensure_subscription(user_id, now=now)
    effective = subscription.tier if subscription.is_live(now) else Tier.FREE

    if not is_postable(effective):
        logger.info(
            "[gate] DENIED",
            extra={"user_id": user_id, "reason": REASON_UPGRADE_REQUIRED, "tier": effective.value},
        )
        return GateDecision(
            allowed=False,
            reason=REASON_UPGRADE_REQUIRED,
            upgrade_message=upgrade_message(effective),
            tier=effective,
        )

    usage = resolve_usage_limit(user_id, subscription.tier, now=now).usage
    used = 0 if usage.period_expired(now) else usage.monthly_used
    remaining = max(usage.monthly_limit - used, 0)

    if used < usage.monthly_limit:
        return GateDecision(
            allowed=True,
            reason=REASON_OK,
            remaining=remaining,
            tier=effective,
            monthly_limit=usage.monthly_limit,
            monthly_used=used,
        )

    logger.info(
        "[gate] DENIED",
        extra={
            "user_id": user_id,
            "reason": REASON_LIMIT_REACHED,
            "tier": effective.value,
            "monthly_used": used,
            "monthly_limit": usage.monthly_limit,
        },
    )
    return GateDecision(
        allowed=False,
        reason=REASON_LIMIT_REACHED,
        upgrade_message=upgrade_message(effective),
        remaining=0,
        tier=effective,
        monthly_limit=usage.monthly_limit,
        monthly_used=used,
    )


def increment_usage(user_id: str, *, now: Optional[datetime] = None) -> bool:
    """
    Count one post after the job write succeeded.

    Best-effort: a failure is logged and reported as False, the job stays
    posted.
    """
    try:
        counted = store.increment_usage(user_id, now=now)
    except StoreError as e:
        logger.error("[gate] INCREMENT_FAILED", extra={"user_id": user_id, "error": str(e)})
        return False
    if not counted:
        logger.warning("[gate] increment found no usage row", extra={"user_id": user_id})
    return counted


def reserve_post(user_id: str, *, now: Optional[datetime] = None) -> GateDecision:
    """
    Claim one post slot atomically.

    Returns an allowed decision only if the conditional increment took
    effect; a concurrent post that took the last slot yields limit_reached.
    """
    decision = can_post(user_id, now=now)
    if not decision.allowed:
        return decision

    if not store.increment_usage(user_id, only_below_limit=True, now=now):
        logger.info("[gate] RESERVATION_LOST", extra={"user_id": user_id})
        return GateDecision(
            allowed=False,
            reason=REASON_LIMIT_REACHED,
            upgrade_message=upgrade_message(decision.tier),
            tier=decision.tier,
            monthly_limit=decision.monthly_limit,
            monthly_used=decision.monthly_limit,
        )

    return GateDecision(
        allowed=True,
        reason=REASON_OK,
        remaining=max(decision.remaining - 1, 0),
        tier=decision.tier,
        monthly_limit=decision.monthly_limit,
        monthly_used=decision.monthly_used + 1,
    )


def release_post(user_id: str, *, now: Optional[datetime] = None) -> bool:
    """Return a reserved slot (the job write failed)."""
    released = store.decrement_usage(user_id, now=now)
    logger.info("[gate] RESERVATION_RELEASED", extra={"user_id": user_id, "released": released})
    return released


def post_with_limit(
    user_id: str,
    create_job: Callable[[], Any],
    *,
    now: Optional[datetime] = None,
) -> PostResult:
    """
    Reserve a slot, run `create_job`, release the slot if it raises.

    The exception from `create_job` propagates after the release.
    """
    decision = reserve_post(user_id, now=now)
    if not decision.allowed:
        return PostResult(decision=decision)

    try:
        job = create_job()
    except Exception:
        try:
            release_post(user_id, now=now)
        except StoreError as e:
            logger.error("[gate] RELEASE_FAILED", extra={"user_id": user_id, "error": str(e)})
        raise

    logger.info("[gate] POSTED", extra={"user_id": user_id, "remaining": decision.remaining})
    return PostResult(decision=decision, job=job)
