"""
Entitlement core: canonical types and the pure decision logic.

This module provides:
- Canonical types: Tier, EntitlementStatus, EventKind, CanonicalEvent,
  EntitlementSnapshot, Transition
- TierResolver: product reference -> tier, per provider
- EventNormalizer: verified provider payload -> CanonicalEvent
- EntitlementReconciler: (snapshot, event) -> Transition state machine
- access_gate: tier limits and feature checks read by every consumer

Ordering: occurred_at watermark per account; refunds always apply.
"""

from entitlement_core.entitlements.models import (
    Tier,
    EntitlementStatus,
    ProviderKind,
    EventKind,
    LinkingKey,
    VerifiedPayload,
    CanonicalEvent,
    EntitlementSnapshot,
    Transition,
)
from entitlement_core.entitlements.errors import (
    EntitlementError,
    VerificationError,
    SignatureInvalidError,
    MalformedPayloadError,
    UnknownKeyIdError,
    UnmappableEventTypeError,
    DisallowedEventKindError,
    LinkingConflictError,
    ProviderUnavailableError,
    TierRequirementError,
)
from entitlement_core.entitlements.tiers import TierResolver
from entitlement_core.entitlements.normalizer import EventNormalizer
from entitlement_core.entitlements.reconciler import EntitlementReconciler
from entitlement_core.entitlements.access_gate import (
    Feature,
    TierLimits,
    meets_requirement,
    limits_for,
    can_create_project,
    can_submit_feedback,
    required_tier_for,
)

__all__ = [
    "Tier",
    "EntitlementStatus",
    "ProviderKind",
    "EventKind",
    "LinkingKey",
    "VerifiedPayload",
    "CanonicalEvent",
    "EntitlementSnapshot",
    "Transition",
    "EntitlementError",
    "VerificationError",
    "SignatureInvalidError",
    "MalformedPayloadError",
    "UnknownKeyIdError",
    "UnmappableEventTypeError",
    "DisallowedEventKindError",
    "LinkingConflictError",
    "ProviderUnavailableError",
    "TierRequirementError",
    "TierResolver",
    "EventNormalizer",
    "EntitlementReconciler",
    "Feature",
    "TierLimits",
    "meets_requirement",
    "limits_for",
    "can_create_project",
    "can_submit_feedback",
    "required_tier_for",
]
