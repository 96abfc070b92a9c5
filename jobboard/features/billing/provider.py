"""
Billing provider protocol.

Defines the interface for the billing authority (Stripe).
Reconciliation, checkout and portal logic only talk to this protocol.
"""
from typing import Protocol, Dict, Optional
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class BillingCheckResult:
    """Ground truth for one user as reported by the billing authority."""
    subscribed: bool
    tier: str  # free, basic, standard, premium, single
    status: Optional[str] = None  # active, succeeded, none
    current_period_end: Optional[datetime] = None
    external_ref: Optional[str] = None  # subscription id
    customer_ref: Optional[str] = None  # customer id


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Subscription status lookup
    - Customer creation
    - Checkout session creation
    - Portal session creation
    """

    def check_subscription(
        self,
        user_id: str,
        email: Optional[str] = None,
        customer_ref: Optional[str] = None,
    ) -> BillingCheckResult:
        """
        Ask the provider what the user is currently paying for.

        Args:
            user_id: Internal user ID
            email: User email, used to find the customer when no ref is stored
            customer_ref: Stored provider customer ID (optional)

        Returns:
            Normalized check result

        Raises:
            BillingProviderError: If the provider cannot be reached or errors
        """
        ...

    def ensure_customer(self, user_id: str, email: Optional[str] = None, customer_ref: Optional[str] = None) -> str:
        """
        Ensure a billing customer exists for the user.

        Returns:
            Provider customer ID

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        tier: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a checkout session for a plan.

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a billing portal session for customer self-service.

        Returns:
            Portal session URL

        Raises:
            BillingProviderError: If portal session creation fails
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass
