"""
Entitlement reconciler - the state machine.

apply(current, event) -> Transition is a pure function: no I/O, no clock.
Guards run before the transition table:
1. idempotency: event_id == last_event_id -> NoOp "duplicate"
2. ordering: occurred_at < as_of -> NoOp "stale" (refunds bypass)

Transition table:
- activated / renewed / offer_redeemed -> active, tier from product ref
  (unchanged when unresolvable), expires_at = period_end
- entered_grace_period -> grace_period, tier kept
- auto_renew_disabled -> pending_expiry, tier and expires_at kept
- auto_renew_enabled -> pending_expiry back to active, tier kept; other
  live statuses unchanged
- expired -> {free, expired}, provider fields cleared
- refunded -> {free, none} baseline
- renewal_info_changed -> NoOp "informational"

The three status-only kinds require a live entitlement; against a free or
expired account they are NoOps.
"""

import logging

from entitlement_core.entitlements.models import (
    PURCHASE_EVENT_KINDS,
    CanonicalEvent,
    EntitlementSnapshot,
    EntitlementStatus,
    EventKind,
    Tier,
    Transition,
)
from entitlement_core.entitlements.tiers import TierResolver

logger = logging.getLogger(__name__)


# NoOp reasons
REASON_APPLIED = "applied"
REASON_DUPLICATE = "duplicate"
REASON_STALE = "stale"
REASON_INFORMATIONAL = "informational"
REASON_NO_ACTIVE_ENTITLEMENT = "no_active_entitlement"


class EntitlementReconciler:
    """Folds canonical events into entitlement snapshots."""

    def __init__(self, tier_resolver: TierResolver):
        self.tier_resolver = tier_resolver

    def apply(self, current: EntitlementSnapshot, event: CanonicalEvent) -> Transition:
        """
        Apply one event to one snapshot.

        Args:
            current: Stored snapshot (baseline for a new account)
            event: Canonical event already resolved to this account

        Returns:
            Transition; applied=False leaves current untouched
        """
        if current.last_event_id is not None and event.event_id == current.last_event_id:
            return Transition(applied=False, snapshot=current, reason=REASON_DUPLICATE)

        if (
            not event.is_refund
            and current.as_of is not None
            and event.occurred_at < current.as_of
        ):
            logger.info(
                "Dropping stale event",
                extra={
                    "account_id": current.account_id,
                    "event_id": event.event_id,
                    "event_kind": event.kind.value,
                    "occurred_at": event.occurred_at.isoformat(),
                    "as_of": current.as_of.isoformat(),
                },
            )
            return Transition(applied=False, snapshot=current, reason=REASON_STALE)

        kind = event.kind
        tier_unresolved = False

        if kind in PURCHASE_EVENT_KINDS:
            tier = self.tier_resolver.resolve(event.provider, event.product_ref)
            if tier is None:
                tier_unresolved = True
                tier = current.tier
                logger.warning(
                    "Unresolvable product ref, applying status only",
                    extra={
                        "account_id": current.account_id,
                        "provider": event.provider.value,
                        "product_ref": event.product_ref,
                        "event_id": event.event_id,
                    },
                )
            changes = dict(
                tier=tier,
                status=EntitlementStatus.ACTIVE,
                expires_at=event.period_end,
                source_provider=event.provider,
                product_ref=event.product_ref if not tier_unresolved else current.product_ref,
            )

        elif kind == EventKind.ENTERED_GRACE_PERIOD:
            if not current.is_live:
                return Transition(applied=False, snapshot=current, reason=REASON_NO_ACTIVE_ENTITLEMENT)
            changes = dict(status=EntitlementStatus.GRACE_PERIOD)

        elif kind == EventKind.AUTO_RENEW_DISABLED:
            if not current.is_live:
                return Transition(applied=False, snapshot=current, reason=REASON_NO_ACTIVE_ENTITLEMENT)
            changes = dict(status=EntitlementStatus.PENDING_EXPIRY)

        elif kind == EventKind.AUTO_RENEW_ENABLED:
            if not current.is_live:
                return Transition(applied=False, snapshot=current, reason=REASON_NO_ACTIVE_ENTITLEMENT)
            # Only a scheduled cancellation is undone; a failed renewal stays in
            # grace until a renewal or expiry arrives
            if current.status == EntitlementStatus.PENDING_EXPIRY:
                changes = dict(status=EntitlementStatus.ACTIVE)
            else:
                changes = {}

        elif kind == EventKind.EXPIRED:
            changes = dict(
                tier=Tier.FREE,
                status=EntitlementStatus.EXPIRED,
                expires_at=None,
                source_provider=None,
                product_ref=None,
            )

        elif kind == EventKind.REFUNDED:
            changes = dict(
                tier=Tier.FREE,
                status=EntitlementStatus.NONE,
                expires_at=None,
                source_provider=None,
                product_ref=None,
            )

        else:
            return Transition(applied=False, snapshot=current, reason=REASON_INFORMATIONAL)

        next_snapshot = current.evolve(
            as_of=_later(current.as_of, event.occurred_at),
            last_event_id=event.event_id,
            **changes,
        )
        return Transition(
            applied=True,
            snapshot=next_snapshot,
            reason=REASON_APPLIED,
            tier_unresolved=tier_unresolved,
        )

    def fold(self, initial: EntitlementSnapshot, events) -> EntitlementSnapshot:
        """Apply events in delivery order and return the final snapshot."""
        snapshot = initial
        for event in events:
            snapshot = self.apply(snapshot, event).snapshot
        return snapshot


def _later(current, candidate):
    if current is None:
        return candidate
    return max(current, candidate)
