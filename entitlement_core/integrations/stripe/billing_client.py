"""
Stripe REST client for checkout, billing portal and session lookups.

Stripe's API is form-encoded; nested parameters use bracket notation
(line_items[0][price]). Only the handful of endpoints the entitlement
service needs are wrapped here.

Documentation: https://stripe.com/docs/api
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.stripe.com"


@dataclass
class StripeCheckoutSession:
    """Checkout session created for a web purchase."""
    id: str
    url: str
    customer: Optional[str] = None


class StripeBillingError(Exception):
    """Base exception for Stripe API errors."""
    pass


class StripeAPIError(StripeBillingError):
    """Error communicating with Stripe API."""
    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class StripeBillingClient:
    """
    Client for the subset of Stripe used for web purchases.

    Handles:
    - Creating customers
    - Creating subscription checkout sessions
    - Creating billing portal sessions
    - Retrieving completed checkout sessions (client sync)

    SECURITY: The secret key is sent as a bearer token and never logged.
    """

    def __init__(
        self,
        secret_key: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Stripe client.

        Args:
            secret_key: Stripe secret API key (sk_...)
            api_base: API origin, overridable for tests
            timeout: Total request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not secret_key:
            raise ValueError("secret_key is required")

        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={"Authorization": f"Bearer {secret_key}"},
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Any] = None,
    ) -> dict:
        """
        Execute a request against the Stripe API.

        Raises:
            StripeAPIError: On transport failure or any 4xx/5xx response
        """
        try:
            response = await self._client.request(method, path, data=data, params=params)
        except httpx.TimeoutException as e:
            logger.error("Stripe API timeout", extra={"path": path, "error": str(e)})
            raise StripeAPIError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error("Stripe API request error", extra={"path": path, "error": str(e)})
            raise StripeAPIError(f"Request error: {e}")

        if response.status_code == 401:
            logger.error("Stripe API authentication failed", extra={"path": path})
            raise StripeAPIError("Authentication failed - check STRIPE_SECRET_KEY", status_code=401)

        if response.status_code == 429:
            logger.warning("Stripe API rate limited", extra={"path": path})
            raise StripeAPIError("Rate limited - please retry after a delay", status_code=429)

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            message = ((body or {}).get("error") or {}).get("message") or f"Stripe API error: {response.status_code}"
            logger.error(
                "Stripe API error",
                extra={"path": path, "status_code": response.status_code, "stripe_message": message},
            )
            raise StripeAPIError(message, status_code=response.status_code, response=body)

        return response.json()

    async def create_customer(self, email: Optional[str] = None, account_id: Optional[str] = None) -> str:
        """Create a customer and return its id."""
        data: Dict[str, Any] = {}
        if email:
            data["email"] = email
        if account_id:
            data["metadata[account_id]"] = account_id
        result = await self._request("POST", "/v1/customers", data=data)
        logger.info("Created Stripe customer", extra={"customer_id": result.get("id")})
        return result["id"]

    async def create_checkout_session(
        self,
        price_id: str,
        success_url: str,
        cancel_url: str,
        account_id: str,
        customer_id: Optional[str] = None,
    ) -> StripeCheckoutSession:
        """
        Create a subscription-mode checkout session.

        The account id is echoed back as client_reference_id and metadata so
        the webhook can link the customer to the account. The price id is
        stored in metadata because completed-session webhooks omit line items.

        Args:
            price_id: Stripe price to subscribe to
            success_url: Redirect after payment
            cancel_url: Redirect when the buyer backs out
            account_id: Our account id
            customer_id: Existing Stripe customer, if any

        Returns:
            StripeCheckoutSession with the hosted checkout url
        """
        data = {
            "mode": "subscription",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items[0][price]": price_id,
            "line_items[0][quantity]": "1",
            "client_reference_id": account_id,
            "metadata[account_id]": account_id,
            "metadata[price_id]": price_id,
            "subscription_data[metadata][account_id]": account_id,
        }
        if customer_id:
            data["customer"] = customer_id

        result = await self._request("POST", "/v1/checkout/sessions", data=data)
        if not result.get("url"):
            raise StripeAPIError("Checkout session has no url", response=result)

        return StripeCheckoutSession(
            id=result["id"],
            url=result["url"],
            customer=result.get("customer"),
        )

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a billing portal session and return its url."""
        result = await self._request(
            "POST",
            "/v1/billing_portal/sessions",
            data={"customer": customer_id, "return_url": return_url},
        )
        return result["url"]

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        """
        Fetch a checkout session with its subscription and line items expanded.

        Raises:
            StripeAPIError: 404 when the id does not exist
        """
        return await self._request(
            "GET",
            f"/v1/checkout/sessions/{session_id}",
            params=[("expand[]", "subscription"), ("expand[]", "line_items")],
        )
