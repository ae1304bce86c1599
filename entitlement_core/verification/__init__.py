"""
Inbound payload verification.

- AppStoreNotificationVerifier: JWS with x5c chain or JWKS key id
- StripeWebhookVerifier: HMAC-SHA256 Stripe-Signature header
- Receipt verifiers for client-submitted purchases
"""

from entitlement_core.verification.base import NotificationVerifier, ReceiptVerifier
from entitlement_core.verification.signing_keys import SigningKeyCache
from entitlement_core.verification.app_store_verifier import (
    AppStoreNotificationVerifier,
    AppStoreReceiptVerifier,
)
from entitlement_core.verification.stripe_verifier import (
    StripeWebhookVerifier,
    StripeCheckoutReceiptVerifier,
)

__all__ = [
    "NotificationVerifier",
    "ReceiptVerifier",
    "SigningKeyCache",
    "AppStoreNotificationVerifier",
    "AppStoreReceiptVerifier",
    "StripeWebhookVerifier",
    "StripeCheckoutReceiptVerifier",
]
