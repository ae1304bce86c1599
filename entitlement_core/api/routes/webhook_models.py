"""Shared webhook response model."""

from typing import Optional

from pydantic import BaseModel

from entitlement_core.services.billing_webhook_handler import WebhookProcessingResult


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    status: str = "processed"
    message: str = "Webhook processed"
    event_id: Optional[str] = None


def to_webhook_response(result: WebhookProcessingResult) -> WebhookResponse:
    return WebhookResponse(
        received=True,
        status="processed" if result.processed else (result.skipped_reason or "ignored"),
        message=result.message,
        event_id=result.event_id,
    )
