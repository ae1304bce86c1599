"""
Stripe webhook.

SECURITY: Every delivery MUST carry a valid Stripe-Signature header
computed over the exact raw body; the body is parsed only afterwards.

Documentation: https://stripe.com/docs/webhooks
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from entitlement_core.api.dependencies.components import get_stripe_webhook_handler
from entitlement_core.api.routes.webhook_models import WebhookResponse, to_webhook_response
from entitlement_core.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    handler: BillingWebhookHandler = Depends(get_stripe_webhook_handler),
):
    """Receive a Stripe event. 400 on a bad or stale signature."""
    body = await request.body()
    result = handler.handle(body, stripe_signature)
    return to_webhook_response(result)
