"""
Account entitlement model - one row per account.

CRITICAL: Rows are mutated only through EntitlementRepository.replace(),
which is a conditional UPDATE on version. Never assign fields and commit
directly.
"""

from sqlalchemy import Column, Enum, Index, Integer, String

from entitlement_core.entitlements.models import (
    EntitlementSnapshot,
    EntitlementStatus,
    ProviderKind,
    Tier,
)
from entitlement_core.models.base import Base, TimestampMixin, UTCDateTime


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class AccountEntitlement(Base, TimestampMixin):
    """
    Current entitlement snapshot for an account.

    CRITICAL DESIGN:
    - ONE row per account, created lazily as the {free, none} baseline
    - Linking identifiers are unique and set once
    - version increments on every successful replace
    """

    __tablename__ = "account_entitlements"

    account_id = Column(
        String(64),
        primary_key=True,
        comment="Account identifier from the authentication layer"
    )

    tier = Column(
        Enum(*_enum_values(Tier), name="entitlement_tier"),
        nullable=False,
        default=Tier.FREE.value,
        comment="Derived subscription tier"
    )
    status = Column(
        Enum(*_enum_values(EntitlementStatus), name="entitlement_status"),
        nullable=False,
        default=EntitlementStatus.NONE.value,
        index=True,
        comment="Derived subscription status"
    )
    source_provider = Column(
        Enum(*_enum_values(ProviderKind), name="entitlement_provider"),
        nullable=True,
        comment="Provider that produced the current paid entitlement"
    )
    product_ref = Column(
        String(255),
        nullable=True,
        comment="Provider product or price id in effect"
    )
    expires_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of the current paid period"
    )
    as_of = Column(
        UTCDateTime(),
        nullable=True,
        comment="occurred_at of the event that produced this snapshot"
    )
    last_event_id = Column(
        String(255),
        nullable=True,
        comment="Idempotency id of the last applied event"
    )

    # Linking identifiers (set once)
    app_store_original_transaction_id = Column(
        String(64),
        nullable=True,
        unique=True,
        comment="App Store originalTransactionId"
    )
    stripe_customer_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Stripe customer id"
    )

    version = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic concurrency token"
    )

    __table_args__ = (
        Index("ix_account_entitlements_status_expires", "status", "expires_at"),
    )

    def to_snapshot(self) -> EntitlementSnapshot:
        return EntitlementSnapshot(
            account_id=self.account_id,
            tier=Tier(self.tier),
            status=EntitlementStatus(self.status),
            source_provider=ProviderKind(self.source_provider) if self.source_provider else None,
            product_ref=self.product_ref,
            expires_at=self.expires_at,
            as_of=self.as_of,
            last_event_id=self.last_event_id,
            version=self.version or 0,
        )

    def __repr__(self) -> str:
        return (
            f"<AccountEntitlement(account_id={self.account_id}, tier={self.tier}, "
            f"status={self.status}, version={self.version})>"
        )
