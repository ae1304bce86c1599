"""
Client sync - the client-initiated path that closes the first-purchase race.

A client that has just completed a purchase submits the receipt it holds.
The receipt goes through the same verifier -> normalizer -> reconciler
pipeline as a webhook and the resulting snapshot is returned
synchronously. The later webhook for the same transaction carries the
same event id and is absorbed as a NoOp.

Clients may only report purchases (activated, renewed, offer_redeemed).
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional

from sqlalchemy.orm import Session

from entitlement_core.entitlements.errors import (
    DisallowedEventKindError,
    MalformedPayloadError,
    ProviderUnavailableError,
    UnmappableEventTypeError,
)
from entitlement_core.entitlements.models import (
    PURCHASE_EVENT_KINDS,
    EntitlementSnapshot,
    ProviderKind,
)
from entitlement_core.entitlements.normalizer import EventNormalizer
from entitlement_core.entitlements.reconciler import EntitlementReconciler
from entitlement_core.services.entitlement_service import EntitlementService
from entitlement_core.verification.base import ReceiptVerifier

logger = logging.getLogger(__name__)


class ClientSyncHandler:
    """Verifies a client receipt and reconciles it immediately."""

    def __init__(
        self,
        db_session: Session,
        receipt_verifiers: Mapping[ProviderKind, ReceiptVerifier],
        normalizer: EventNormalizer,
        reconciler: EntitlementReconciler,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.receipt_verifiers = receipt_verifiers
        self.normalizer = normalizer
        self.service = EntitlementService(db_session, reconciler)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def sync(self, account_id: str, provider: ProviderKind, receipt: str) -> EntitlementSnapshot:
        """
        Verify a receipt and apply it to the account.

        Args:
            account_id: Authenticated account
            provider: Provider that issued the receipt
            receipt: App Store signed transaction or Stripe checkout session id

        Returns:
            The account's stored snapshot after reconciliation

        Raises:
            VerificationError: Receipt not authentic or undecodable
            DisallowedEventKindError: Receipt is not a live purchase
            LinkingConflictError: Purchase belongs to another account
            ProviderUnavailableError: Provider not configured or unreachable
        """
        verifier = self.receipt_verifiers.get(provider)
        if verifier is None:
            raise ProviderUnavailableError(f"Client sync for {provider.value} is not configured")

        payload = await verifier.verify_receipt(receipt)

        try:
            event = self.normalizer.normalize(payload)
        except UnmappableEventTypeError as e:
            raise DisallowedEventKindError(e.event_type)

        if event.kind not in PURCHASE_EVENT_KINDS:
            logger.warning(
                "Client sync rejected disallowed event kind",
                extra={"account_id": account_id, "provider": provider.value, "event_kind": event.kind.value},
            )
            raise DisallowedEventKindError(event.kind.value)

        now = self._clock()
        if event.period_end is not None and event.period_end <= now:
            logger.warning(
                "Client sync rejected expired receipt",
                extra={
                    "account_id": account_id,
                    "provider": provider.value,
                    "period_end": event.period_end.isoformat(),
                },
            )
            raise DisallowedEventKindError(
                event.kind.value, "Receipt describes a purchase that has already expired"
            )

        if event.linking_key is None:
            raise MalformedPayloadError("Receipt names no customer or original transaction to link")

        try:
            self.service.repo.get_or_create(account_id)
            self.service.repo.link(account_id, event.linking_key)
            transition = self.service.apply_to_account(account_id, event)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Client sync reconciled",
            extra={
                "account_id": account_id,
                "provider": provider.value,
                "event_id": event.event_id,
                "applied": transition.applied,
                "reason": transition.reason,
                "tier": transition.snapshot.tier.value,
            },
        )
        return transition.snapshot
