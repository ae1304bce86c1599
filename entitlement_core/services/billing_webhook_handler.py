"""
Billing webhook handler.

Processes App Store and Stripe webhooks with:
- Signature verification (failures propagate to the route as 400)
- Normalization to canonical events (unmapped types acknowledged and dropped)
- Idempotency and ordering via the reconciler guards
- One commit per delivery; anything unexpected rolls back and surfaces as
  500 so the provider redelivers
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from entitlement_core.entitlements.errors import (
    LinkingConflictError,
    UnmappableEventTypeError,
)
from entitlement_core.entitlements.normalizer import EventNormalizer
from entitlement_core.entitlements.reconciler import EntitlementReconciler
from entitlement_core.services.entitlement_service import EntitlementService
from entitlement_core.verification.base import NotificationVerifier

logger = logging.getLogger(__name__)


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    account_id: Optional[str] = None
    event_id: Optional[str] = None
    event_kind: Optional[str] = None
    skipped_reason: Optional[str] = None


class BillingWebhookHandler:
    """
    Handler for one provider's webhook stream.

    The same class serves both providers; only the verifier differs.
    """

    def __init__(
        self,
        db_session: Session,
        verifier: NotificationVerifier,
        normalizer: EventNormalizer,
        reconciler: EntitlementReconciler,
    ):
        """
        Initialize webhook handler.

        Args:
            db_session: Database session
            verifier: Provider-specific notification verifier
            normalizer: Event normalizer
            reconciler: Entitlement state machine
        """
        self.db = db_session
        self.verifier = verifier
        self.normalizer = normalizer
        self.service = EntitlementService(db_session, reconciler)

    def handle(self, raw_body: bytes, signature_header: Optional[str] = None) -> WebhookProcessingResult:
        """
        Process one webhook delivery.

        Args:
            raw_body: Exact request body
            signature_header: Provider signature header, if any

        Returns:
            WebhookProcessingResult

        Raises:
            VerificationError: Signature or payload rejected
        """
        provider = self.verifier.provider.value
        payload = self.verifier.verify(raw_body, signature_header)

        try:
            event = self.normalizer.normalize(payload)
        except UnmappableEventTypeError as e:
            logger.info(
                "Unmapped webhook event type acknowledged",
                extra={
                    "provider": provider,
                    "event_type": e.event_type,
                    "subtype": e.subtype,
                    "event_id": payload.event_id,
                },
            )
            return WebhookProcessingResult(
                processed=False,
                message=f"Event type {payload.event_type} ignored",
                event_id=payload.event_id,
                skipped_reason="unmappable_event_type",
            )

        try:
            result = self.service.apply_event(event)
            self.db.commit()
        except LinkingConflictError as e:
            self.db.rollback()
            logger.warning(
                "Webhook dropped on linking conflict",
                extra={"provider": provider, "event_id": event.event_id, "error": e.message},
            )
            return WebhookProcessingResult(
                processed=False,
                message=e.message,
                event_id=event.event_id,
                event_kind=event.kind.value,
                skipped_reason="linking_conflict",
            )
        except Exception:
            self.db.rollback()
            logger.error(
                "Error processing webhook",
                extra={"provider": provider, "event_id": event.event_id, "event_kind": event.kind.value},
                exc_info=True,
            )
            raise

        if result.applied:
            message = "Entitlement updated"
        elif result.skipped_reason == "unresolvable_account":
            message = "No account linked to this purchase"
        else:
            message = f"No change ({result.skipped_reason})"

        logger.info(
            "Webhook processed",
            extra={
                "provider": provider,
                "event_id": event.event_id,
                "event_kind": event.kind.value,
                "account_id": result.account_id,
                "applied": result.applied,
                "skipped_reason": result.skipped_reason,
            },
        )

        return WebhookProcessingResult(
            processed=result.applied,
            message=message,
            account_id=result.account_id,
            event_id=event.event_id,
            event_kind=event.kind.value,
            skipped_reason=result.skipped_reason,
        )
