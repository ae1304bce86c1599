"""
App Store Server Notifications v2 webhook.

SECURITY: The notification is a signed JWS inside the JSON body; it is
verified (certificate chain or key id) before anything is read from it.

Documentation: https://developer.apple.com/documentation/appstoreservernotifications
"""

import logging

from fastapi import APIRouter, Depends, Request

from entitlement_core.api.dependencies.components import get_app_store_webhook_handler
from entitlement_core.api.routes.webhook_models import WebhookResponse, to_webhook_response
from entitlement_core.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/appstore", response_model=WebhookResponse)
async def app_store_notification(
    request: Request,
    handler: BillingWebhookHandler = Depends(get_app_store_webhook_handler),
):
    """
    Receive an App Store server notification.

    400 on verification failure (Apple retries), 200 otherwise, including
    notifications that change nothing.
    """
    body = await request.body()
    result = handler.handle(body)
    return to_webhook_response(result)
