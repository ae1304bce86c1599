"""
Business logic services.
"""

from entitlement_core.services.entitlement_service import EntitlementService
from entitlement_core.services.billing_webhook_handler import (
    BillingWebhookHandler,
    WebhookProcessingResult,
)
from entitlement_core.services.client_sync import ClientSyncHandler
from entitlement_core.services.checkout_service import CheckoutService

__all__ = [
    "EntitlementService",
    "BillingWebhookHandler",
    "WebhookProcessingResult",
    "ClientSyncHandler",
    "CheckoutService",
]
