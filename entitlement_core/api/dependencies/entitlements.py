"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies for tier-gated routes. Other
services mount these on their own routers; the gate logic itself lives in
entitlements.access_gate.
"""

import logging
from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import Session

from entitlement_core.database.session import get_db_session
from entitlement_core.entitlements.access_gate import Feature, ensure_feature, meets_requirement
from entitlement_core.entitlements.errors import TierRequirementError
from entitlement_core.entitlements.models import EntitlementSnapshot, Tier
from entitlement_core.platform.account_context import AccountContext, get_account_context
from entitlement_core.repositories.entitlement_repository import EntitlementRepository

logger = logging.getLogger(__name__)


def get_current_entitlement(
    account: AccountContext = Depends(get_account_context),
    db_session: Session = Depends(get_db_session),
) -> EntitlementSnapshot:
    """Stored entitlement of the authenticated account (baseline if new)."""
    snapshot = EntitlementRepository(db_session).get_or_create(account.account_id)
    db_session.commit()
    return snapshot


def require_tier(required: Tier, feature_name: str) -> Callable:
    """
    Factory function to create a tier check dependency.

    Args:
        required: Lowest tier allowed through
        feature_name: Human-readable name for error messages (e.g., "Integrations")

    Returns:
        A FastAPI dependency that returns the snapshot or raises
        TierRequirementError (rendered as 402)
    """

    def check_tier(snapshot: EntitlementSnapshot = Depends(get_current_entitlement)) -> EntitlementSnapshot:
        if not meets_requirement(snapshot.tier, required):
            logger.warning(
                f"{feature_name} access denied - tier too low",
                extra={
                    "account_id": snapshot.account_id,
                    "current_tier": snapshot.tier.value,
                    "required_tier": required.value,
                },
            )
            raise TierRequirementError(
                feature=feature_name,
                current_tier=snapshot.tier.value,
                required_tier=required.value,
            )
        return snapshot

    return check_tier


def require_feature(feature: str) -> Callable:
    """Like require_tier, with the tier looked up from the feature matrix."""

    def check_feature(snapshot: EntitlementSnapshot = Depends(get_current_entitlement)) -> EntitlementSnapshot:
        ensure_feature(snapshot.tier, feature)
        return snapshot

    return check_feature


# Pre-configured checks for common features
check_integrations_entitlement = require_feature(Feature.INTEGRATIONS)
check_invite_members_entitlement = require_feature(Feature.INVITE_MEMBERS)
check_advanced_analytics_entitlement = require_feature(Feature.ADVANCED_ANALYTICS)
