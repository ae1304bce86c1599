"""
Entitlement service - account resolution and the apply loop.

Shared by the webhook handlers, client sync and the expiry sweep:
- resolve_account(): linking key -> account id, establishing the first
  link from the provider-echoed account hint
- apply_to_account(): read, reconcile, conditional replace; on a lost race
  re-read and re-reconcile, at most MAX_APPLY_ATTEMPTS times

The service never commits; callers own the transaction.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from entitlement_core.entitlements.errors import StaleWriteError
from entitlement_core.entitlements.models import (
    CanonicalEvent,
    EntitlementSnapshot,
    Transition,
)
from entitlement_core.entitlements.reconciler import EntitlementReconciler
from entitlement_core.repositories.entitlement_repository import EntitlementRepository

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Outcome of applying one canonical event."""
    account_id: Optional[str]
    transition: Optional[Transition] = None
    skipped_reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.transition is not None and self.transition.applied


class EntitlementService:
    """Applies canonical events to stored entitlements."""

    MAX_APPLY_ATTEMPTS = 3

    def __init__(self, db_session: Session, reconciler: EntitlementReconciler):
        """
        Args:
            db_session: Database session (caller commits)
            reconciler: Pure state machine
        """
        self.db = db_session
        self.reconciler = reconciler
        self.repo = EntitlementRepository(db_session)

    def get_entitlement(self, account_id: str) -> EntitlementSnapshot:
        return self.repo.get_or_create(account_id)

    def resolve_account(self, event: CanonicalEvent) -> Optional[str]:
        """
        Find the account an event belongs to.

        An already-linked identifier wins. Otherwise the provider-echoed
        account hint, if any, is linked (set-once) and used. Events without
        a linking key never resolve.

        Raises:
            LinkingConflictError: The hinted account is linked to a different identifier
        """
        if event.linking_key is None:
            return None

        owner = self.repo.find_by_linking_key(event.linking_key)
        if owner is not None:
            return owner.account_id

        if event.account_hint:
            self.repo.get_or_create(event.account_hint)
            self.repo.link(event.account_hint, event.linking_key)
            return event.account_hint

        return None

    def apply_to_account(
        self,
        account_id: str,
        event: CanonicalEvent,
        precondition: Optional[Callable[[EntitlementSnapshot], bool]] = None,
    ) -> Transition:
        """
        Reconcile one event against one account and store the result.

        Args:
            account_id: Target account
            event: Canonical event
            precondition: Re-checked against every fresh read; False makes
                the call a NoOp "precondition_failed"

        Raises:
            StaleWriteError: Lost the conditional replace on every attempt
        """
        for attempt in range(1, self.MAX_APPLY_ATTEMPTS + 1):
            current = self.repo.get_or_create(account_id)
            if precondition is not None and not precondition(current):
                return Transition(applied=False, snapshot=current, reason="precondition_failed")
            transition = self.reconciler.apply(current, event)
            if not transition.applied:
                return transition

            if self.repo.replace(account_id, current.version, transition.snapshot, event.is_refund):
                stored = transition.snapshot.evolve(version=current.version + 1)
                logger.info(
                    "Entitlement updated",
                    extra={
                        "account_id": account_id,
                        "event_id": event.event_id,
                        "event_kind": event.kind.value,
                        "provider": event.provider.value,
                        "tier": stored.tier.value,
                        "status": stored.status.value,
                        "tier_unresolved": transition.tier_unresolved,
                    },
                )
                return Transition(
                    applied=True,
                    snapshot=stored,
                    reason=transition.reason,
                    tier_unresolved=transition.tier_unresolved,
                )

            logger.info(
                "Concurrent entitlement write, retrying",
                extra={"account_id": account_id, "event_id": event.event_id, "attempt": attempt},
            )

        raise StaleWriteError(
            f"Could not store event {event.event_id} for account {account_id} "
            f"after {self.MAX_APPLY_ATTEMPTS} attempts"
        )

    def apply_event(self, event: CanonicalEvent) -> ApplyResult:
        """Resolve the account and apply. Unresolvable events are dropped."""
        account_id = self.resolve_account(event)
        if account_id is None:
            logger.warning(
                "No account for linking key, dropping event",
                extra={
                    "linking_key": str(event.linking_key) if event.linking_key else None,
                    "event_id": event.event_id,
                    "event_kind": event.kind.value,
                },
            )
            return ApplyResult(account_id=None, skipped_reason="unresolvable_account")

        transition = self.apply_to_account(account_id, event)
        return ApplyResult(
            account_id=account_id,
            transition=transition,
            skipped_reason=None if transition.applied else transition.reason,
        )
