"""
Checkout and billing portal glue for web purchases.

Creates Stripe checkout and portal sessions for an account. The Stripe
customer is created on first checkout and linked to the account (set-once)
so the subsequent webhooks resolve without relying on the echoed hint.
Entitlements are never changed here; they follow from the webhooks or a
client sync.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from entitlement_core.entitlements.errors import (
    NoBillingCustomerError,
    ProviderUnavailableError,
    UnknownProductError,
)
from entitlement_core.entitlements.models import LinkingKey, ProviderKind
from entitlement_core.entitlements.tiers import TierResolver
from entitlement_core.integrations.stripe.billing_client import (
    StripeAPIError,
    StripeBillingClient,
)
from entitlement_core.repositories.entitlement_repository import EntitlementRepository

logger = logging.getLogger(__name__)


class CheckoutService:
    """Outbound checkout/portal session creation."""

    def __init__(
        self,
        db_session: Session,
        client_factory: Optional[Callable[[], StripeBillingClient]],
        tier_resolver: TierResolver,
        web_app_url: str,
    ):
        """
        Args:
            db_session: Database session
            client_factory: Builds a StripeBillingClient; None when Stripe is not configured
            tier_resolver: Validates requested price ids
            web_app_url: Origin used for default redirect urls
        """
        self.db = db_session
        self.repo = EntitlementRepository(db_session)
        self._client_factory = client_factory
        self.tier_resolver = tier_resolver
        self.web_app_url = web_app_url.rstrip("/")

    def _client(self) -> StripeBillingClient:
        if self._client_factory is None:
            raise ProviderUnavailableError("Stripe is not configured")
        return self._client_factory()

    async def create_checkout(
        self,
        account_id: str,
        product_ref: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> str:
        """
        Create a checkout session and return its url.

        Raises:
            UnknownProductError: product_ref is not a configured Stripe price
            ProviderUnavailableError: Stripe failed or is not configured
        """
        tier = self.tier_resolver.resolve(ProviderKind.STRIPE, product_ref)
        if tier is None:
            raise UnknownProductError(f"Unknown product: {product_ref}")

        success_url = success_url or f"{self.web_app_url}/subscription/success"
        cancel_url = cancel_url or f"{self.web_app_url}/subscription/cancel"

        self.repo.get_or_create(account_id)
        customer_id = self.repo.get_linked_id(account_id, ProviderKind.STRIPE)

        try:
            async with self._client() as client:
                if not customer_id:
                    customer_id = await client.create_customer(account_id=account_id)
                    self.repo.link(account_id, LinkingKey(ProviderKind.STRIPE, customer_id))
                    self.db.commit()

                session = await client.create_checkout_session(
                    price_id=product_ref,
                    success_url=success_url,
                    cancel_url=cancel_url,
                    account_id=account_id,
                    customer_id=customer_id,
                )
        except StripeAPIError as e:
            self.db.rollback()
            raise ProviderUnavailableError(f"Stripe checkout failed: {e}")

        logger.info(
            "Checkout session created",
            extra={"account_id": account_id, "tier": tier.value, "session_id": session.id},
        )
        return session.url

    async def create_portal(self, account_id: str, return_url: Optional[str] = None) -> str:
        """
        Create a billing portal session and return its url.

        Raises:
            NoBillingCustomerError: Account has never been linked to a Stripe customer
            ProviderUnavailableError: Stripe failed or is not configured
        """
        customer_id = self.repo.get_linked_id(account_id, ProviderKind.STRIPE)
        if not customer_id:
            raise NoBillingCustomerError("No billing customer for this account")

        try:
            async with self._client() as client:
                url = await client.create_portal_session(
                    customer_id=customer_id,
                    return_url=return_url or f"{self.web_app_url}/settings",
                )
        except StripeAPIError as e:
            raise ProviderUnavailableError(f"Stripe portal failed: {e}")

        logger.info("Portal session created", extra={"account_id": account_id})
        return url
