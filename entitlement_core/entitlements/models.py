"""
Canonical entitlement types.

Everything downstream of verification speaks these types only:
- Tier / EntitlementStatus / ProviderKind / EventKind enums
- VerifiedPayload: authenticated, decoded provider-native payload
- CanonicalEvent: provider-agnostic billing event
- EntitlementSnapshot: immutable view of one account's entitlement row
- Transition: outcome of applying one event to one snapshot
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Tier(str, Enum):
    """Canonical subscription level, totally ordered FREE < PRO < TEAM."""
    FREE = "free"
    PRO = "pro"
    TEAM = "team"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {Tier.FREE: 0, Tier.PRO: 1, Tier.TEAM: 2}


class EntitlementStatus(str, Enum):
    """Lifecycle status of an account entitlement."""
    NONE = "none"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"          # Renewal failed, access retained
    PENDING_EXPIRY = "pending_expiry"      # Auto-renew off, access until expires_at
    EXPIRED = "expired"


# Statuses that represent a live paid entitlement
LIVE_STATUSES = frozenset({
    EntitlementStatus.ACTIVE,
    EntitlementStatus.GRACE_PERIOD,
    EntitlementStatus.PENDING_EXPIRY,
})


class ProviderKind(str, Enum):
    """Payment platforms that can back an entitlement."""
    APP_STORE = "app_store"
    STRIPE = "stripe"


class EventKind(str, Enum):
    """Closed set of canonical billing event kinds."""
    ACTIVATED = "activated"
    RENEWED = "renewed"
    OFFER_REDEEMED = "offer_redeemed"
    ENTERED_GRACE_PERIOD = "entered_grace_period"
    AUTO_RENEW_DISABLED = "auto_renew_disabled"
    AUTO_RENEW_ENABLED = "auto_renew_enabled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    RENEWAL_INFO_CHANGED = "renewal_info_changed"


# Event kinds that carry a purchase and therefore a tier
PURCHASE_EVENT_KINDS = frozenset({
    EventKind.ACTIVATED,
    EventKind.RENEWED,
    EventKind.OFFER_REDEEMED,
})


@dataclass(frozen=True)
class LinkingKey:
    """(provider, external id) pair used to resolve an event to an account."""
    provider: ProviderKind
    external_id: str

    def __str__(self) -> str:
        return f"{self.provider.value}:{self.external_id}"


@dataclass(frozen=True)
class VerifiedPayload:
    """Authenticated provider-native payload."""
    provider: ProviderKind
    event_id: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    subtype: Optional[str] = None
    signed_at: Optional[datetime] = None
    payload_hash: Optional[str] = None


@dataclass(frozen=True)
class CanonicalEvent:
    """Provider-agnostic billing event."""
    provider: ProviderKind
    kind: EventKind
    # None when the provider object names no customer or original transaction
    linking_key: Optional[LinkingKey]
    occurred_at: datetime
    event_id: str
    product_ref: Optional[str] = None
    period_end: Optional[datetime] = None
    # Account id echoed back by the provider (client_reference_id, appAccountToken)
    account_hint: Optional[str] = None

    @property
    def is_refund(self) -> bool:
        return self.kind == EventKind.REFUNDED


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Immutable view of an account's entitlement."""
    account_id: str
    tier: Tier = Tier.FREE
    status: EntitlementStatus = EntitlementStatus.NONE
    source_provider: Optional[ProviderKind] = None
    product_ref: Optional[str] = None
    expires_at: Optional[datetime] = None
    as_of: Optional[datetime] = None
    last_event_id: Optional[str] = None
    version: int = 0

    @classmethod
    def baseline(cls, account_id: str) -> "EntitlementSnapshot":
        """Free/None entitlement every account starts with."""
        return cls(account_id=account_id)

    def evolve(self, **changes) -> "EntitlementSnapshot":
        return replace(self, **changes)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "status": self.status.value,
            "product_id": self.product_ref,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "source": self.source_provider.value if self.source_provider else None,
        }


@dataclass(frozen=True)
class Transition:
    """
    Result of applying one event to one snapshot.

    applied=False is a NoOp: snapshot is the unchanged current snapshot and
    reason says why (duplicate, stale, informational, no_active_entitlement).
    """
    applied: bool
    snapshot: EntitlementSnapshot
    reason: str
    tier_unresolved: bool = False
