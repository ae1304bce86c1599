"""
Entitlement repository - the entitlement store.

Encapsulates all database operations for account entitlements with:
- Baseline row creation on first access
- Set-once provider linking
- Conditional replace (optimistic concurrency on version + as_of)
- Expiry sweep lookups

Reads return EntitlementSnapshot values, never ORM rows, so callers cannot
mutate a row outside replace().
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_core.entitlements.errors import LinkingConflictError
from entitlement_core.entitlements.models import (
    EntitlementSnapshot,
    EntitlementStatus,
    LinkingKey,
    ProviderKind,
    Tier,
)
from entitlement_core.models.account_entitlement import AccountEntitlement

logger = logging.getLogger(__name__)

LINKING_COLUMNS = {
    ProviderKind.APP_STORE: AccountEntitlement.app_store_original_transaction_id,
    ProviderKind.STRIPE: AccountEntitlement.stripe_customer_id,
}


class EntitlementRepository:
    """Repository for account entitlement rows."""

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def _get_row(self, account_id: str) -> Optional[AccountEntitlement]:
        # populate_existing: replace() bypasses the identity map
        return (
            self.db.query(AccountEntitlement)
            .populate_existing()
            .filter(AccountEntitlement.account_id == account_id)
            .first()
        )

    def get(self, account_id: str) -> Optional[EntitlementSnapshot]:
        row = self._get_row(account_id)
        return row.to_snapshot() if row else None

    def get_or_create(self, account_id: str) -> EntitlementSnapshot:
        """
        Get the account's snapshot, inserting the {free, none} baseline if absent.

        A concurrent insert of the same account is tolerated: the loser
        re-reads the winner's row.
        """
        if not account_id:
            raise ValueError("account_id is required")

        row = self._get_row(account_id)
        if row:
            return row.to_snapshot()

        try:
            with self.db.begin_nested():
                self.db.add(AccountEntitlement(
                    account_id=account_id,
                    tier=Tier.FREE.value,
                    status=EntitlementStatus.NONE.value,
                    version=0,
                ))
            logger.info("Created baseline entitlement", extra={"account_id": account_id})
        except IntegrityError:
            logger.info("Baseline entitlement created concurrently", extra={"account_id": account_id})

        return self._get_row(account_id).to_snapshot()

    def find_by_linking_key(self, key: LinkingKey) -> Optional[EntitlementSnapshot]:
        """
        Find the account linked to a provider identifier.

        Returns:
            Snapshot of the linked account, None when nothing is linked
        """
        column = LINKING_COLUMNS[key.provider]
        row = (
            self.db.query(AccountEntitlement)
            .populate_existing()
            .filter(column == key.external_id)
            .first()
        )
        return row.to_snapshot() if row else None

    def get_linked_id(self, account_id: str, provider: ProviderKind) -> Optional[str]:
        """External id linked to the account for one provider."""
        row = self._get_row(account_id)
        if row is None:
            return None
        return getattr(row, LINKING_COLUMNS[provider].key)

    def link(self, account_id: str, key: LinkingKey) -> bool:
        """
        Link a provider identifier to an account. Set-once.

        Args:
            account_id: Account to link (row must exist)
            key: Provider identifier

        Returns:
            True if a new link was written, False if it already existed

        Raises:
            LinkingConflictError: The identifier belongs to another account,
                or the account is already linked to a different identifier
        """
        column = LINKING_COLUMNS[key.provider]

        owner = self.find_by_linking_key(key)
        if owner is not None:
            if owner.account_id == account_id:
                return False
            logger.warning(
                "Linking conflict: identifier owned by another account",
                extra={"account_id": account_id, "linking_key": str(key)},
            )
            raise LinkingConflictError(f"{key} is linked to another account")

        try:
            with self.db.begin_nested():
                result = self.db.execute(
                    update(AccountEntitlement)
                    .where(
                        AccountEntitlement.account_id == account_id,
                        column.is_(None),
                    )
                    .values({column.key: key.external_id})
                    .execution_options(synchronize_session=False)
                )
        except IntegrityError:
            raise LinkingConflictError(f"{key} is linked to another account")

        if result.rowcount != 1:
            existing = self.get_linked_id(account_id, key.provider)
            if existing == key.external_id:
                return False
            logger.warning(
                "Linking conflict: account already linked",
                extra={"account_id": account_id, "linking_key": str(key), "provider": key.provider.value},
            )
            raise LinkingConflictError(
                f"Account {account_id} is already linked to a different {key.provider.value} identifier"
            )

        logger.info("Linked provider identifier", extra={"account_id": account_id, "linking_key": str(key)})
        return True

    def replace(
        self,
        account_id: str,
        expected_version: int,
        snapshot: EntitlementSnapshot,
        is_refund: bool = False,
    ) -> bool:
        """
        Conditionally replace an account's snapshot.

        The UPDATE only matches when the stored version is expected_version
        and, unless is_refund, the stored as_of is not newer than the new
        snapshot's as_of.

        Returns:
            True if written, False if another writer got there first
        """
        conditions = [
            AccountEntitlement.account_id == account_id,
            AccountEntitlement.version == expected_version,
        ]
        if not is_refund and snapshot.as_of is not None:
            conditions.append(or_(
                AccountEntitlement.as_of.is_(None),
                AccountEntitlement.as_of <= snapshot.as_of,
            ))

        result = self.db.execute(
            update(AccountEntitlement)
            .where(and_(*conditions))
            .values(
                tier=snapshot.tier.value,
                status=snapshot.status.value,
                source_provider=snapshot.source_provider.value if snapshot.source_provider else None,
                product_ref=snapshot.product_ref,
                expires_at=snapshot.expires_at,
                as_of=snapshot.as_of,
                last_event_id=snapshot.last_event_id,
                version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def find_expiring(self, now: datetime, grace_period: timedelta) -> List[EntitlementSnapshot]:
        """
        Rows whose paid access has run out without a provider Expired event.

        - pending_expiry with expires_at < now
        - grace_period with expires_at + grace_period < now
        """
        rows = (
            self.db.query(AccountEntitlement)
            .populate_existing()
            .filter(
                AccountEntitlement.expires_at.isnot(None),
                or_(
                    and_(
                        AccountEntitlement.status == EntitlementStatus.PENDING_EXPIRY.value,
                        AccountEntitlement.expires_at < now,
                    ),
                    and_(
                        AccountEntitlement.status == EntitlementStatus.GRACE_PERIOD.value,
                        AccountEntitlement.expires_at < now - grace_period,
                    ),
                ),
            )
            .order_by(AccountEntitlement.expires_at.asc())
            .all()
        )
        return [row.to_snapshot() for row in rows]
