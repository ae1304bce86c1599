"""
Stripe webhook signature verification and checkout receipt lookup.

Stripe signs each delivery with:
    Stripe-Signature: t=<unix seconds>,v1=<hex hmac>[,v1=<hex hmac>...]
where the HMAC-SHA256 is computed with the endpoint secret over
"<t>." + raw body. Multiple v1 entries appear while a secret is rolled.

Documentation: https://stripe.com/docs/webhooks/signatures
"""

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from entitlement_core.entitlements.errors import (
    MalformedPayloadError,
    ProviderUnavailableError,
    SignatureInvalidError,
)
from entitlement_core.entitlements.models import ProviderKind, VerifiedPayload
from entitlement_core.integrations.stripe.billing_client import (
    StripeAPIError,
    StripeBillingClient,
)
from entitlement_core.verification.base import (
    NotificationVerifier,
    ReceiptVerifier,
    content_hash,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300

SUBSCRIPTION_UPDATED = "customer.subscription.updated"

# Subscription statuses after which access ends
ENDED_STATUSES = frozenset({"canceled", "unpaid", "incomplete", "incomplete_expired"})
LIVE_STATUSES = frozenset({"active", "trialing"})

PAID_CHECKOUT_STATUSES = frozenset({"paid", "no_payment_required"})


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    """HMAC-SHA256 hex digest Stripe puts in a v1 signature."""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def parse_signature_header(header: Optional[str]) -> Tuple[int, List[str]]:
    """
    Split a Stripe-Signature header into its timestamp and v1 signatures.

    Raises:
        SignatureInvalidError: Header missing or garbled
    """
    if not header:
        raise SignatureInvalidError("Missing Stripe-Signature header", error_code="missing_signature")

    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureInvalidError("Invalid timestamp in Stripe-Signature header")
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise SignatureInvalidError("Invalid Stripe-Signature header format")
    return timestamp, signatures


def subscription_update_subtype(event: Dict[str, Any]) -> Optional[str]:
    """
    Discriminate customer.subscription.updated events.

    Returns one of ended, past_due, cancel_scheduled, cancel_reverted,
    active, or None for statuses with no canonical meaning (paused).
    """
    data = event.get("data") or {}
    subscription = data.get("object") or {}
    previous = data.get("previous_attributes") or {}
    status = subscription.get("status")

    if status in ENDED_STATUSES:
        return "ended"
    if status == "past_due":
        return "past_due"
    if status not in LIVE_STATUSES:
        return None

    cancel_scheduled = bool(subscription.get("cancel_at_period_end"))
    if "cancel_at_period_end" in previous:
        was_scheduled = bool(previous["cancel_at_period_end"])
        if was_scheduled and not cancel_scheduled:
            return "cancel_reverted"
    return "cancel_scheduled" if cancel_scheduled else "active"


def payload_from_event(event: Dict[str, Any], raw_body: Optional[bytes] = None) -> VerifiedPayload:
    """Wrap a decoded Stripe event in a VerifiedPayload."""
    event_type = event.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayloadError("Stripe event has no type")

    payload_hash = content_hash(raw_body if raw_body is not None else json.dumps(event, sort_keys=True).encode("utf-8"))
    subtype = subscription_update_subtype(event) if event_type == SUBSCRIPTION_UPDATED else None

    created = event.get("created")
    signed_at = None
    if created is not None:
        try:
            signed_at = datetime.fromtimestamp(int(created), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            raise MalformedPayloadError(f"Invalid created timestamp: {created!r}")

    return VerifiedPayload(
        provider=ProviderKind.STRIPE,
        event_id=event.get("id") or f"stripe:{payload_hash}",
        event_type=event_type,
        subtype=subtype,
        data=event,
        signed_at=signed_at,
        payload_hash=payload_hash,
    )


class StripeWebhookVerifier(NotificationVerifier):
    """
    Verifies Stripe webhook deliveries.

    Usage:
        verifier = StripeWebhookVerifier(webhook_secret="whsec_...")
        payload = verifier.verify(raw_body, request.headers.get("Stripe-Signature"))
    """

    provider = ProviderKind.STRIPE

    def __init__(
        self,
        webhook_secret: Optional[str],
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(self, raw_body: bytes, signature_header: Optional[str] = None) -> VerifiedPayload:
        if not self._webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
            raise SignatureInvalidError("Webhook secret is not configured", error_code="missing_secret")

        timestamp, signatures = parse_signature_header(signature_header)
        expected = compute_signature(self._webhook_secret, timestamp, raw_body)

        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise SignatureInvalidError("Stripe signature mismatch")

        if abs(self._clock() - timestamp) > self.tolerance_seconds:
            raise SignatureInvalidError(
                "Stripe signature timestamp outside tolerance",
                error_code="stale_signature",
            )

        try:
            event = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise MalformedPayloadError("Stripe webhook body is not JSON")
        if not isinstance(event, dict):
            raise MalformedPayloadError("Stripe webhook body is not a JSON object")

        return payload_from_event(event, raw_body)


class StripeCheckoutReceiptVerifier(ReceiptVerifier):
    """
    Client sync receipts for Stripe are checkout session ids.

    The session is fetched from Stripe with the secret key, so a returned
    session is authentic. It is reshaped into a checkout.session.completed
    event so the normal normalizer path applies.
    """

    provider = ProviderKind.STRIPE

    def __init__(self, client_factory: Callable[[], StripeBillingClient]):
        self._client_factory = client_factory

    async def verify_receipt(self, receipt: str) -> VerifiedPayload:
        session_id = (receipt or "").strip()
        if not session_id.startswith("cs_"):
            raise MalformedPayloadError("Receipt is not a checkout session id")

        try:
            async with self._client_factory() as client:
                session = await client.retrieve_checkout_session(session_id)
        except StripeAPIError as e:
            if e.is_not_found:
                raise MalformedPayloadError("Unknown checkout session")
            raise ProviderUnavailableError(f"Stripe lookup failed: {e}")

        if session.get("status") != "complete" or session.get("payment_status") not in PAID_CHECKOUT_STATUSES:
            raise MalformedPayloadError("Checkout session is not complete and paid")

        event = {
            "id": f"stripe:checkout:{session.get('id', session_id)}",
            "type": "checkout.session.completed",
            "created": session.get("created"),
            "data": {"object": session},
        }
        return payload_from_event(event)
