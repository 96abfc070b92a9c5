"""
Subscription entitlement API routes.

- GET  /v1/subscription/features: Feature bundle from stored state
- POST /v1/subscription/refresh: Scheduled reconciliation (+ payment-return markers)
- POST /v1/subscription/notifications/{id}/dismiss: Dismiss a refresh notice
- GET  /v1/subscription/posting-limit: Gate decision for one more post
- POST /v1/subscription/posting-limit/increment: Count a post after the job write
- POST /v1/subscription/posting-limit/reserve: Claim a post slot atomically
- POST /v1/subscription/posting-limit/release: Give a reserved slot back
- POST /v1/subscription/checkout: Stripe checkout URL
- POST /v1/subscription/portal: Stripe customer portal URL
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from jobboard.core.auth import Identity, get_current_identity
from jobboard.core.errors import AppError, BillingDisabledError, NotFoundError
from jobboard.features.billing.provider import BillingProviderError
from jobboard.features.billing.service import billing_enabled, start_checkout, start_portal
from jobboard.features.entitlements.service import load_entitlements
from jobboard.features.refresh.session import Notification, registry
from jobboard.features.refresh.scheduler import RefreshAction
from jobboard.features.usage import gate
from jobboard.models.subscription import FeatureEntitlementBundle


router = APIRouter(prefix="/v1/subscription", tags=["subscription"])


class FeaturesResponse(BaseModel):
    is_active: bool
    tier: str
    status: str
    monthly_post_limit: int
    monthly_posts_used: int
    remaining_posts: int
    has_unlimited_posts: bool
    has_job_view_stats: bool
    has_advanced_stats: bool
    can_boost_posts: bool
    has_priority_support: bool
    can_access_statistics: bool
    expires_at: Optional[datetime] = None


class RefreshRequest(BaseModel):
    force: bool = False
    url: Optional[str] = None


class CheckoutRequest(BaseModel):
    tier: str
    origin: Optional[str] = None


class PortalRequest(BaseModel):
    origin: Optional[str] = None


class UrlResponse(BaseModel):
    url: str


def _features(bundle: FeatureEntitlementBundle) -> Dict[str, Any]:
    payload = bundle.model_dump()
    payload["tier"] = bundle.tier.value
    payload["can_access_statistics"] = bundle.can_access_statistics
    return FeaturesResponse(**payload).model_dump(mode="json")


def _notification(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "kind": n.kind,
        "code": n.code,
        "message": n.message,
        "retryable": n.retryable,
        "dismissible": n.dismissible,
    }


def _decision(decision: gate.GateDecision) -> Dict[str, Any]:
    return {
        "allowed": decision.allowed,
        "reason": decision.reason,
        "upgrade_message": decision.upgrade_message,
        "remaining": decision.remaining,
        "tier": decision.tier.value,
        "monthly_limit": decision.monthly_limit,
        "monthly_used": decision.monthly_used,
    }


def _origin(body_origin: Optional[str], request: Request) -> Optional[str]:
    return body_origin or request.headers.get("origin")


def _require_billing() -> None:
    if not billing_enabled():
        raise BillingDisabledError("Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.")


@router.get("/features", response_model=FeaturesResponse)
def get_features(identity: Identity = Depends(get_current_identity)):
    """
    Feature bundle from stored state.

    Creates default rows for a new user, treats an expired subscription as
    inactive and rolls an expired usage window over. Does not call Stripe.
    """
    return _features(load_entitlements(identity.id, identity.email))


@router.post("/refresh")
async def refresh(body: RefreshRequest, identity: Identity = Depends(get_current_identity)):
    """
    Request a reconciliation through the refresh scheduler.

    Payment-return markers in `url` force a refresh (once per token) and come
    back stripped. A throttled request returns action "delay" with the number
    of seconds to wait before asking again.
    """
    session = registry.get(identity)
    before = {n.id for n in session.notifications}

    clean_url = None
    accepted = False
    if body.url:
        navigation = await session.handle_navigation(body.url, schedule=False)
        clean_url = navigation.url
        accepted = navigation.accepted

    decision = await session.request_refresh(force=body.force or accepted)

    bundle = session.bundle
    if decision.action != RefreshAction.RUN or bundle is None:
        bundle = await asyncio.to_thread(load_entitlements, identity.id, identity.email)

    new_notices = [n for n in session.active_notifications if n.id not in before]
    notice = next((n.message for n in new_notices if n.kind == "success"), None)
    result = session.last_result

    return {
        "features": _features(bundle),
        "decision": {"action": decision.action.value, "delay": decision.delay, "force": decision.force},
        "billing_ok": result.billing_ok if result is not None else None,
        "url": clean_url,
        "notice": notice,
        "notifications": [_notification(n) for n in session.active_notifications],
    }


@router.post("/notifications/{notification_id}/dismiss")
def dismiss_notification(notification_id: int, identity: Identity = Depends(get_current_identity)):
    if not registry.get(identity).dismiss(notification_id):
        raise NotFoundError(f"Notification {notification_id} not found")
    return {"dismissed": True}


@router.get("/posting-limit")
def get_posting_limit(identity: Identity = Depends(get_current_identity)):
    """Whether the user may publish one more job post, with an upsell when not."""
    return _decision(gate.can_post(identity.id))


@router.post("/posting-limit/increment")
def increment_posting_usage(identity: Identity = Depends(get_current_identity)):
    """Count one post. Call after the job write succeeded."""
    return {"counted": gate.increment_usage(identity.id)}


@router.post("/posting-limit/reserve")
def reserve_posting_slot(identity: Identity = Depends(get_current_identity)):
    """Claim a slot before the job write; release it if the write fails."""
    return _decision(gate.reserve_post(identity.id))


@router.post("/posting-limit/release")
def release_posting_slot(identity: Identity = Depends(get_current_identity)):
    return {"released": gate.release_post(identity.id)}


@router.post("/checkout", response_model=UrlResponse)
def create_checkout(body: CheckoutRequest, request: Request, identity: Identity = Depends(get_current_identity)):
    """
    Create Stripe checkout session.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: Unknown plan
        502: Stripe API error
    """
    _require_billing()
    try:
        url = start_checkout(identity, body.tier, _origin(body.origin, request))
    except BillingProviderError as e:
        raise AppError(str(e), code="billing_provider_error", status_code=502)
    if not url:
        raise BillingDisabledError("Billing disabled")
    return {"url": url}


@router.post("/portal", response_model=UrlResponse)
def create_portal(body: PortalRequest, request: Request, identity: Identity = Depends(get_current_identity)):
    """
    Create Stripe billing portal session.

    Errors:
        503: Billing disabled
        404: No billing customer (user never checked out)
        403: No active paid subscription
        502: Stripe API error
    """
    _require_billing()
    try:
        url = start_portal(identity, _origin(body.origin, request))
    except BillingProviderError as e:
        raise AppError(str(e), code="billing_provider_error", status_code=502)
    if not url:
        raise BillingDisabledError("Billing disabled")
    return {"url": url}
