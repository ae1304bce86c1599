"""
Event normalizer - provider payload -> CanonicalEvent.

Each provider has one static mapping table keyed by (event type, subtype).
A subtype of None in the table is a wildcard. Anything not in the table
raises UnmappableEventTypeError; the caller logs it and acknowledges the
webhook.

Field extraction:
- App Store: originalTransactionId links, productId is the product ref,
  expiresDate (ms) is the period end, appAccountToken is the account hint.
- Stripe: customer links, price id from subscription items / invoice lines /
  checkout metadata, current_period_end or line period end,
  client_reference_id / metadata.account_id is the account hint.

Purchase-class events get a transaction-scoped identity so that the
webhook and the client sync of the same purchase collapse into one event.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from entitlement_core.entitlements.errors import (
    MalformedPayloadError,
    UnmappableEventTypeError,
)
from entitlement_core.entitlements.models import (
    PURCHASE_EVENT_KINDS,
    CanonicalEvent,
    EventKind,
    LinkingKey,
    ProviderKind,
    VerifiedPayload,
)

logger = logging.getLogger(__name__)


APP_STORE_EVENT_MAP: Dict[Tuple[str, Optional[str]], EventKind] = {
    ("SUBSCRIBED", None): EventKind.ACTIVATED,
    ("DID_RENEW", None): EventKind.RENEWED,
    ("OFFER_REDEEMED", None): EventKind.OFFER_REDEEMED,
    ("DID_FAIL_TO_RENEW", None): EventKind.ENTERED_GRACE_PERIOD,
    ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_DISABLED"): EventKind.AUTO_RENEW_DISABLED,
    ("DID_CHANGE_RENEWAL_STATUS", "AUTO_RENEW_ENABLED"): EventKind.AUTO_RENEW_ENABLED,
    ("EXPIRED", None): EventKind.EXPIRED,
    ("GRACE_PERIOD_EXPIRED", None): EventKind.EXPIRED,
    ("REFUND", None): EventKind.REFUNDED,
    ("DID_CHANGE_RENEWAL_INFO", None): EventKind.RENEWAL_INFO_CHANGED,
    ("DID_CHANGE_RENEWAL_PREF", None): EventKind.RENEWAL_INFO_CHANGED,
    # Client-submitted StoreKit 2 transactions
    ("TRANSACTION", "PURCHASE"): EventKind.ACTIVATED,
    ("TRANSACTION", "RENEWAL"): EventKind.RENEWED,
    ("TRANSACTION", "OFFER"): EventKind.OFFER_REDEEMED,
    ("TRANSACTION", "REVOKED"): EventKind.REFUNDED,
}

STRIPE_EVENT_MAP: Dict[Tuple[str, Optional[str]], EventKind] = {
    ("checkout.session.completed", None): EventKind.ACTIVATED,
    ("customer.subscription.created", None): EventKind.ACTIVATED,
    ("customer.subscription.updated", "active"): EventKind.RENEWED,
    ("customer.subscription.updated", "cancel_scheduled"): EventKind.AUTO_RENEW_DISABLED,
    ("customer.subscription.updated", "cancel_reverted"): EventKind.AUTO_RENEW_ENABLED,
    ("customer.subscription.updated", "past_due"): EventKind.ENTERED_GRACE_PERIOD,
    ("customer.subscription.updated", "ended"): EventKind.EXPIRED,
    ("customer.subscription.deleted", None): EventKind.EXPIRED,
    ("invoice.paid", None): EventKind.RENEWED,
    ("invoice.payment_succeeded", None): EventKind.RENEWED,
    ("invoice.payment_failed", None): EventKind.ENTERED_GRACE_PERIOD,
    ("charge.refunded", None): EventKind.REFUNDED,
}

EVENT_MAPS = {
    ProviderKind.APP_STORE: APP_STORE_EVENT_MAP,
    ProviderKind.STRIPE: STRIPE_EVENT_MAP,
}


def lookup_event_kind(provider: ProviderKind, event_type: str, subtype: Optional[str]) -> EventKind:
    """
    Find the canonical kind for a provider event.

    An exact (type, subtype) entry wins over the (type, None) wildcard.

    Raises:
        UnmappableEventTypeError: If neither entry exists
    """
    table = EVENT_MAPS[provider]
    kind = table.get((event_type, subtype))
    if kind is None:
        kind = table.get((event_type, None))
    if kind is None:
        raise UnmappableEventTypeError(provider.value, event_type, subtype)
    return kind


def _from_millis(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayloadError(f"Invalid millisecond timestamp: {value!r}")


def _from_seconds(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise MalformedPayloadError(f"Invalid unix timestamp: {value!r}")


class EventNormalizer:
    """Stateless translation of verified payloads into canonical events."""

    def normalize(self, payload: VerifiedPayload) -> CanonicalEvent:
        """
        Args:
            payload: Output of a NotificationVerifier or ReceiptVerifier

        Returns:
            CanonicalEvent

        Raises:
            UnmappableEventTypeError: Event type not in the provider table
            MalformedPayloadError: Timestamp missing or unparseable
        """
        kind = lookup_event_kind(payload.provider, payload.event_type, payload.subtype)

        if payload.provider == ProviderKind.APP_STORE:
            return self._normalize_app_store(payload, kind)
        return self._normalize_stripe(payload, kind)

    # -------------------------------------------------------------------------
    # App Store
    # -------------------------------------------------------------------------

    def _normalize_app_store(self, payload: VerifiedPayload, kind: EventKind) -> CanonicalEvent:
        transaction = payload.data.get("transaction") or {}
        renewal_info = payload.data.get("renewal_info") or {}

        original_id = (
            transaction.get("originalTransactionId")
            or renewal_info.get("originalTransactionId")
        )
        linking_key = None
        if original_id:
            linking_key = LinkingKey(ProviderKind.APP_STORE, str(original_id))
        else:
            logger.info(
                "App Store payload carries no originalTransactionId",
                extra={"event_id": payload.event_id, "event_type": payload.event_type},
            )

        event_id = payload.event_id
        occurred_at = payload.signed_at
        transaction_id = transaction.get("transactionId")
        if kind in PURCHASE_EVENT_KINDS and transaction_id:
            event_id = f"app_store:txn:{transaction_id}"
            occurred_at = _from_millis(transaction.get("purchaseDate")) or occurred_at

        if occurred_at is None:
            raise MalformedPayloadError("App Store payload carries no timestamp")

        return CanonicalEvent(
            provider=ProviderKind.APP_STORE,
            kind=kind,
            linking_key=linking_key,
            occurred_at=occurred_at,
            event_id=event_id,
            product_ref=transaction.get("productId") or renewal_info.get("productId"),
            period_end=_from_millis(transaction.get("expiresDate")),
            account_hint=transaction.get("appAccountToken"),
        )

    # -------------------------------------------------------------------------
    # Stripe
    # -------------------------------------------------------------------------

    def _normalize_stripe(self, payload: VerifiedPayload, kind: EventKind) -> CanonicalEvent:
        obj = (payload.data.get("data") or {}).get("object") or {}

        customer = obj.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        linking_key = None
        if customer:
            linking_key = LinkingKey(ProviderKind.STRIPE, str(customer))
        else:
            # Guest checkouts and their charges have customer: null
            logger.info(
                "Stripe object carries no customer",
                extra={"event_id": payload.event_id, "event_type": payload.event_type},
            )

        event_id = payload.event_id
        occurred_at = payload.signed_at or _from_seconds(payload.data.get("created"))

        if payload.event_type == "checkout.session.completed":
            product_ref, period_end = self._checkout_product(obj)
            if obj.get("id"):
                event_id = f"stripe:checkout:{obj['id']}"
            occurred_at = _from_seconds(obj.get("created")) or occurred_at
        elif payload.event_type.startswith("invoice."):
            product_ref, period_end = self._invoice_product(obj)
        elif payload.event_type.startswith("customer.subscription."):
            product_ref, period_end = self._subscription_product(obj)
        else:
            product_ref, period_end = None, None

        if occurred_at is None:
            raise MalformedPayloadError("Stripe event carries no created timestamp")

        return CanonicalEvent(
            provider=ProviderKind.STRIPE,
            kind=kind,
            linking_key=linking_key,
            occurred_at=occurred_at,
            event_id=event_id,
            product_ref=product_ref,
            period_end=period_end,
            account_hint=self._stripe_account_hint(obj),
        )

    @staticmethod
    def _stripe_account_hint(obj: Dict[str, Any]) -> Optional[str]:
        if obj.get("client_reference_id"):
            return obj["client_reference_id"]
        for metadata in (
            obj.get("metadata"),
            (obj.get("subscription_details") or {}).get("metadata"),
        ):
            if metadata and metadata.get("account_id"):
                return metadata["account_id"]
        return None

    @staticmethod
    def _subscription_product(subscription: Dict[str, Any]) -> Tuple[Optional[str], Optional[datetime]]:
        items = (subscription.get("items") or {}).get("data") or []
        first = items[0] if items else {}
        price_id = (first.get("price") or {}).get("id")
        period_end = subscription.get("current_period_end") or first.get("current_period_end")
        return price_id, _from_seconds(period_end)

    @classmethod
    def _checkout_product(cls, session: Dict[str, Any]) -> Tuple[Optional[str], Optional[datetime]]:
        subscription = session.get("subscription")
        if isinstance(subscription, dict):
            price_id, period_end = cls._subscription_product(subscription)
            if price_id:
                return price_id, period_end
        line_items = (session.get("line_items") or {}).get("data") or []
        if line_items:
            price_id = (line_items[0].get("price") or {}).get("id")
            if price_id:
                return price_id, None
        return (session.get("metadata") or {}).get("price_id"), None

    @staticmethod
    def _is_proration(line: Dict[str, Any]) -> bool:
        if line.get("proration"):
            return True
        # Newer API versions move the flag under parent.subscription_item_details
        details = (line.get("parent") or {}).get("subscription_item_details") or {}
        return bool(details.get("proration"))

    @classmethod
    def _invoice_line(cls, invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        The line that describes what the customer is now paying for.

        Credit lines (negative amount, e.g. unused time on the old price after
        an upgrade) never count. Among the rest, regular lines beat proration
        lines, and subscription lines beat invoice items.
        """
        lines = (invoice.get("lines") or {}).get("data") or []
        charged = [line for line in lines if (line.get("amount") or 0) >= 0]
        if not charged:
            return None
        return min(
            charged,
            key=lambda line: (cls._is_proration(line), line.get("type", "subscription") != "subscription"),
        )

    @classmethod
    def _invoice_product(cls, invoice: Dict[str, Any]) -> Tuple[Optional[str], Optional[datetime]]:
        line = cls._invoice_line(invoice)
        if line is None:
            return None, None
        price_id = (line.get("price") or {}).get("id")
        if not price_id:
            # Newer API versions nest the price under pricing.price_details
            price_id = ((line.get("pricing") or {}).get("price_details") or {}).get("price")
        period_end = (line.get("period") or {}).get("end")
        return price_id, _from_seconds(period_end)
