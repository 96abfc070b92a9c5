"""
jobboard/features/subscriptions/store.py

Entitlement store client.

Reads and writes the `subscriptions` and `usage_limits` tables. A missing
row comes back as None; a failed query raises StoreError. Callers create
default rows on None and surface StoreError as a retryable failure, never as
"no subscription".
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from jobboard.core.database import get_db_session, subscriptions, usage_limits
from jobboard.core.errors import StoreError
from jobboard.features.plans.catalog import limit_for_tier, parse_tier
from jobboard.models.subscription import SubscriptionRecord, Tier, UsageLimitRecord


logger = logging.getLogger(__name__)

BILLING_PERIOD = relativedelta(months=1)

_SUBSCRIPTION_FIELDS = {"email", "tier", "active", "expires_at", "external_ref", "customer_ref"}
_USAGE_FIELDS = {"tier", "monthly_limit", "monthly_used", "period_start", "period_end"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC (SQLite hands back naive datetimes)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@contextmanager
def _store_call(operation: str, user_id: str):
    try:
        yield
    except StoreError:
        raise
    except SQLAlchemyError as e:
        logger.error(
            "[store] QUERY_FAILED",
            extra={"operation": operation, "user_id": user_id, "error": str(e)},
        )
        raise StoreError(f"{operation} failed for user {user_id}") from e


def _subscription_from_row(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=row.user_id,
        email=row.email,
        tier=parse_tier(row.tier),
        active=bool(row.active),
        expires_at=as_utc(row.expires_at),
        external_ref=row.external_ref,
        customer_ref=row.customer_ref,
        updated_at=as_utc(row.updated_at),
    )


def _usage_from_row(row) -> UsageLimitRecord:
    return UsageLimitRecord(
        user_id=row.user_id,
        tier=parse_tier(row.tier),
        monthly_limit=row.monthly_limit,
        monthly_used=row.monthly_used,
        period_start=as_utc(row.period_start),
        period_end=as_utc(row.period_end),
        updated_at=as_utc(row.updated_at),
    )


def _clean_patch(patch: Dict[str, Any], allowed: set) -> Dict[str, Any]:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")
    values = {}
    for key, value in patch.items():
        if isinstance(value, Tier):
            value = value.value
        elif isinstance(value, datetime):
            value = as_utc(value)
        values[key] = value
    return values


def read_subscription(user_id: str) -> Optional[SubscriptionRecord]:
    """Return the subscription row, or None when the user has none yet."""
    with _store_call("read_subscription", user_id):
        with get_db_session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.user_id == user_id)
            ).first()
    return _subscription_from_row(row) if row else None


def read_usage_limit(user_id: str) -> Optional[UsageLimitRecord]:
    """Return the usage-limit row, or None when the user has none yet."""
    with _store_call("read_usage_limit", user_id):
        with get_db_session() as session:
            row = session.execute(
                select(usage_limits).where(usage_limits.c.user_id == user_id)
            ).first()
    return _usage_from_row(row) if row else None


def insert_default_subscription(user_id: str, email: Optional[str] = None, *, now: Optional[datetime] = None) -> SubscriptionRecord:
    """
    Create the free, inactive subscription row for a new user.

    A concurrent insert that wins the race is not an error; the winner's
    row is returned.
    """
    now = as_utc(now) or utc_now()
    with _store_call("insert_default_subscription", user_id):
        try:
            with get_db_session() as session:
                session.execute(
                    insert(subscriptions).values(
                        user_id=user_id,
                        email=email,
                        tier=Tier.FREE.value,
                        active=False,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            logger.info("[store] default subscription already present", extra={"user_id": user_id})
        else:
            logger.info("[store] DEFAULT_SUBSCRIPTION_CREATED", extra={"user_id": user_id})

    record = read_subscription(user_id)
    if record is None:
        raise StoreError(f"subscription row for {user_id} vanished after insert")
    return record


def write_subscription(user_id: str, *, now: Optional[datetime] = None, **patch: Any) -> SubscriptionRecord:
    """
    Upsert subscription fields for a user.

    Only the given fields change; `updated_at` is always stamped.
    """
    now = as_utc(now) or utc_now()
    values = _clean_patch(patch, _SUBSCRIPTION_FIELDS)
    values["updated_at"] = now

    stmt = update(subscriptions).where(subscriptions.c.user_id == user_id).values(**values)

    with _store_call("write_subscription", user_id):
        with get_db_session() as session:
            updated = session.execute(stmt).rowcount
        if updated == 0:
            try:
                with get_db_session() as session:
                    session.execute(
                        insert(subscriptions).values(user_id=user_id, created_at=now, **values)
                    )
            except IntegrityError:
                # Lost an insert race; the row exists now, so apply the patch to it
                with get_db_session() as session:
                    session.execute(stmt)

    record = read_subscription(user_id)
    if record is None:
        raise StoreError(f"subscription row for {user_id} missing after write")
    return record


def insert_default_usage_limit(user_id: str, tier: Tier = Tier.FREE, *, now: Optional[datetime] = None) -> UsageLimitRecord:
    """Create a usage row for `tier` with zero usage and a period starting now."""
    now = as_utc(now) or utc_now()
    tier = parse_tier(tier)
    with _store_call("insert_default_usage_limit", user_id):
        try:
            with get_db_session() as session:
                session.execute(
                    insert(usage_limits).values(
                        user_id=user_id,
                        tier=tier.value,
                        monthly_limit=limit_for_tier(tier),
                        monthly_used=0,
                        period_start=now,
                        period_end=now + BILLING_PERIOD,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            logger.info("[store] default usage limit already present", extra={"user_id": user_id})
        else:
            logger.info(
                "[store] DEFAULT_USAGE_LIMIT_CREATED",
                extra={"user_id": user_id, "tier": tier.value},
            )

    record = read_usage_limit(user_id)
    if record is None:
        raise StoreError(f"usage row for {user_id} vanished after insert")
    return record


def write_usage_limit(user_id: str, *, now: Optional[datetime] = None, **patch: Any) -> Optional[UsageLimitRecord]:
    """
    Update usage-limit fields for an existing row.

    Returns the updated record, or None if the row does not exist.
    """
    now = as_utc(now) or utc_now()
    values = _clean_patch(patch, _USAGE_FIELDS)
    values["updated_at"] = now

    with _store_call("write_usage_limit", user_id):
        with get_db_session() as session:
            result = session.execute(
                update(usage_limits)
                .where(usage_limits.c.user_id == user_id)
                .values(**values)
            )
            if result.rowcount == 0:
                return None
    return read_usage_limit(user_id)


def reset_usage_period(
    user_id: str,
    *,
    expected_period_end: datetime,
    period_start: datetime,
    period_end: datetime,
    now: Optional[datetime] = None,
) -> bool:
    """
    Zero the counter and move the window, only if the row still has
    `expected_period_end`.

    Compare-and-set on period_end keeps two concurrent resets from wiping a
    post counted in the new period. Returns True if this call did the reset.
    """
    now = as_utc(now) or utc_now()
    with _store_call("reset_usage_period", user_id):
        with get_db_session() as session:
            result = session.execute(
                update(usage_limits)
                .where(usage_limits.c.user_id == user_id)
                .where(usage_limits.c.period_end == as_utc(expected_period_end))
                .values(
                    monthly_used=0,
                    period_start=as_utc(period_start),
                    period_end=as_utc(period_end),
                    updated_at=now,
                )
            )
            return result.rowcount == 1


def increment_usage(user_id: str, *, only_below_limit: bool = False, now: Optional[datetime] = None) -> bool:
    """
    Atomically add one post to the counter.

    With only_below_limit the increment is conditional on
    monthly_used < monthly_limit, which makes it a reservation.
    Returns True if a row was updated.
    """
    now = as_utc(now) or utc_now()
    stmt = (
        update(usage_limits)
        .where(usage_limits.c.user_id == user_id)
        .values(monthly_used=usage_limits.c.monthly_used + 1, updated_at=now)
    )
    if only_below_limit:
        stmt = stmt.where(usage_limits.c.monthly_used < usage_limits.c.monthly_limit)

    with _store_call("increment_usage", user_id):
        with get_db_session() as session:
            result = session.execute(stmt)
            return result.rowcount == 1


def decrement_usage(user_id: str, *, now: Optional[datetime] = None) -> bool:
    """Give one post back (never below zero). Returns True if a row was updated."""
    now = as_utc(now) or utc_now()
    with _store_call("decrement_usage", user_id):
        with get_db_session() as session:
            result = session.execute(
                update(usage_limits)
                .where(usage_limits.c.user_id == user_id)
                .where(usage_limits.c.monthly_used > 0)
                .values(monthly_used=usage_limits.c.monthly_used - 1, updated_at=now)
            )
            return result.rowcount == 1
