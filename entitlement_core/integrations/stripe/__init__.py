"""Stripe REST integration."""

from entitlement_core.integrations.stripe.billing_client import (
    StripeBillingClient,
    StripeBillingError,
    StripeAPIError,
    StripeCheckoutSession,
)

__all__ = [
    "StripeBillingClient",
    "StripeBillingError",
    "StripeAPIError",
    "StripeCheckoutSession",
]
