"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Resolves a user's tier from their active subscription's product, falling
back to a one-time "single" purchase.
"""
from typing import Dict, Any, Optional
from datetime import datetime, timedelta, timezone
import logging

import stripe

from jobboard.core.config import settings
from jobboard.features.billing.provider import BillingCheckResult, BillingProviderError
from jobboard.features.plans.catalog import checkout_config, TIER_CATALOG
from jobboard.models.subscription import Tier

logger = logging.getLogger(__name__)

# A one-time purchase grants posting rights for this long after the charge
SINGLE_PLAN_DURATION = timedelta(days=30)


def _meta(obj: Any, key: str) -> Optional[str]:
    metadata = getattr(obj, "metadata", None)
    if not metadata:
        return None
    try:
        return metadata[key]
    except KeyError:
        return None


def _field(obj: Any, key: str) -> Any:
    # Subscription.items collides with dict.items on StripeObject; index first
    try:
        return obj[key]
    except (KeyError, TypeError):
        return getattr(obj, key, None)


def _from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def tier_from_product(product: Any) -> str:
    """Product metadata `tier` wins; otherwise infer from the product name."""
    tier = _meta(product, "tier")
    if tier:
        return tier.lower()

    name = (getattr(product, "name", None) or "").lower()
    if "basic" in name or "bas" in name:
        return Tier.BASIC.value
    if "standard" in name:
        return Tier.STANDARD.value
    if "premium" in name:
        return Tier.PREMIUM.value
    return Tier.FREE.value


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, currency: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            currency: Checkout currency (defaults to STRIPE_CURRENCY setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.currency = currency or settings.STRIPE_CURRENCY

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.api_version = settings.STRIPE_API_VERSION

    def find_customer(self, email: Optional[str]) -> Optional[str]:
        """Look the customer up by email."""
        if not email:
            return None
        customers = stripe.Customer.list(email=email, limit=1)
        if customers.data:
            return customers.data[0].id
        return None

    def check_subscription(
        self,
        user_id: str,
        email: Optional[str] = None,
        customer_ref: Optional[str] = None,
    ) -> BillingCheckResult:
        """Resolve the user's current plan from Stripe."""
        try:
            customer_id = customer_ref or self.find_customer(email)
            if not customer_id:
                logger.info("[stripe] no customer", extra={"user_id": user_id})
                return BillingCheckResult(subscribed=False, tier=Tier.FREE.value, status="none")

            subscriptions = stripe.Subscription.list(customer=customer_id, status="active", limit=10)
            if subscriptions.data:
                return self._from_subscription(subscriptions.data[0], customer_id)

            charges = stripe.Charge.list(customer=customer_id, limit=10)
            for charge in charges.data:
                if charge.status == "succeeded" and _meta(charge, "plan") == Tier.SINGLE.value:
                    created = _from_timestamp(charge.created)
                    return BillingCheckResult(
                        subscribed=True,
                        tier=Tier.SINGLE.value,
                        status="succeeded",
                        current_period_end=created + SINGLE_PLAN_DURATION if created else None,
                        customer_ref=customer_id,
                    )

            return BillingCheckResult(
                subscribed=False,
                tier=Tier.FREE.value,
                status="none",
                customer_ref=customer_id,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription check failed: {e}")

    def _from_subscription(self, subscription: Any, customer_id: str) -> BillingCheckResult:
        tier = Tier.FREE.value
        period_end = _field(subscription, "current_period_end")

        items = _field(subscription, "items")
        item_list = _field(items, "data") if items is not None else None
        item_list = item_list or []
        if item_list:
            item = item_list[0]
            period_end = period_end or _field(item, "current_period_end")
            price = stripe.Price.retrieve(item.price.id)
            product = stripe.Product.retrieve(str(price.product))
            tier = tier_from_product(product)

        return BillingCheckResult(
            subscribed=True,
            tier=tier,
            status=getattr(subscription, "status", "active"),
            current_period_end=_from_timestamp(period_end),
            external_ref=subscription.id,
            customer_ref=customer_id,
        )

    def ensure_customer(self, user_id: str, email: Optional[str] = None, customer_ref: Optional[str] = None) -> str:
        """Return the stored customer, an existing one by email, or a new one."""
        if customer_ref:
            return customer_ref
        try:
            existing = self.find_customer(email)
            if existing:
                return existing

            customer_data: Dict[str, Any] = {
                "metadata": {"user_id": user_id}
            }
            if email:
                customer_data["email"] = email

            customer = stripe.Customer.create(**customer_data)
            logger.info("[stripe] CUSTOMER_CREATED", extra={"user_id": user_id, "customer_ref": customer.id})
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        tier: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create a Stripe checkout session with inline price data for the tier."""
        config = checkout_config(tier)
        if not config:
            raise BillingProviderError(f"Tier is not purchasable: {tier}")

        price_data: Dict[str, Any] = {
            "currency": self.currency,
            "product_data": {
                "name": TIER_CATALOG[Tier(tier)]["name"],
                "description": config["description"],
                "metadata": {"tier": tier},
            },
            "unit_amount": config["unit_amount"],
        }
        if config["mode"] == "subscription":
            price_data["recurring"] = {"interval": "month"}

        params: Dict[str, Any] = {
            "customer": customer_id,
            "line_items": [{"price_data": price_data, "quantity": 1}],
            "mode": config["mode"],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if config["mode"] == "payment":
            # The subscription check finds one-time purchases through this charge metadata
            params["payment_intent_data"] = {"metadata": {"plan": tier, **(metadata or {})}}

        try:
            session = stripe.checkout.Session.create(**params)
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
