"""
Access gate - tier feature matrix and limit checks.

Single source of truth for what each tier allows. Every feature check in the
application imports from here; nothing else hard-codes tier comparisons.

All functions are pure functions of the tier (and a usage count where a
limit applies). Status is deliberately not an input: expiry and refunds
already reset the tier to FREE.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Optional

from entitlement_core.entitlements.errors import TierRequirementError
from entitlement_core.entitlements.models import Tier

logger = logging.getLogger(__name__)


class Feature:
    """Feature keys used by the gate."""
    CREATE_PROJECT = "create_project"
    SUBMIT_FEEDBACK = "submit_feedback"
    INVITE_MEMBERS = "invite_members"
    INTEGRATIONS = "integrations"
    ADVANCED_ANALYTICS = "advanced_analytics"
    CONFIGURABLE_STATUSES = "configurable_statuses"


@dataclass(frozen=True)
class TierLimits:
    """Limits and feature flags for one tier. None means unlimited."""
    max_projects: Optional[int]
    max_feedback_per_project: Optional[int]
    can_invite_members: bool
    has_integrations: bool
    has_advanced_analytics: bool
    has_configurable_statuses: bool

    def to_dict(self) -> Dict:
        return asdict(self)


TIER_LIMITS = {
    Tier.FREE: TierLimits(
        max_projects=1,
        max_feedback_per_project=10,
        can_invite_members=False,
        has_integrations=False,
        has_advanced_analytics=False,
        has_configurable_statuses=False,
    ),
    Tier.PRO: TierLimits(
        max_projects=2,
        max_feedback_per_project=None,
        can_invite_members=False,
        has_integrations=True,
        has_advanced_analytics=True,
        has_configurable_statuses=True,
    ),
    Tier.TEAM: TierLimits(
        max_projects=None,
        max_feedback_per_project=None,
        can_invite_members=True,
        has_integrations=True,
        has_advanced_analytics=True,
        has_configurable_statuses=True,
    ),
}

# Lowest tier that unlocks a boolean feature
FEATURE_REQUIRED_TIER = {
    Feature.INVITE_MEMBERS: Tier.TEAM,
    Feature.INTEGRATIONS: Tier.PRO,
    Feature.ADVANCED_ANALYTICS: Tier.PRO,
    Feature.CONFIGURABLE_STATUSES: Tier.PRO,
}


def meets_requirement(tier: Tier, required: Tier) -> bool:
    return tier.rank >= required.rank


def limits_for(tier: Tier) -> TierLimits:
    return TIER_LIMITS[tier]


def required_tier_for(feature: str) -> Tier:
    """
    Lowest tier that unlocks a feature.

    Raises:
        KeyError: If the feature is not a boolean feature of the matrix
    """
    return FEATURE_REQUIRED_TIER[feature]


def _next_tier_with_more(tier: Tier, attribute: str, current_count: int) -> Tier:
    for candidate in Tier:
        if candidate.rank <= tier.rank:
            continue
        limit = getattr(TIER_LIMITS[candidate], attribute)
        if limit is None or current_count < limit:
            return candidate
    return Tier.TEAM


def can_create_project(tier: Tier, current_count: int) -> bool:
    limit = limits_for(tier).max_projects
    return limit is None or current_count < limit


def can_submit_feedback(tier: Tier, current_count: int) -> bool:
    limit = limits_for(tier).max_feedback_per_project
    return limit is None or current_count < limit


def ensure_can_create_project(tier: Tier, current_count: int) -> None:
    """
    Raise unless another project may be created.

    Raises:
        TierRequirementError: With the lowest tier whose limit admits one more
    """
    if can_create_project(tier, current_count):
        return
    required = _next_tier_with_more(tier, "max_projects", current_count)
    raise TierRequirementError(
        feature=Feature.CREATE_PROJECT,
        current_tier=tier.value,
        required_tier=required.value,
        limit=limits_for(tier).max_projects,
        current=current_count,
    )


def ensure_can_submit_feedback(tier: Tier, current_count: int) -> None:
    """Raise TierRequirementError once the per-project feedback limit is reached."""
    if can_submit_feedback(tier, current_count):
        return
    required = _next_tier_with_more(tier, "max_feedback_per_project", current_count)
    raise TierRequirementError(
        feature=Feature.SUBMIT_FEEDBACK,
        current_tier=tier.value,
        required_tier=required.value,
        limit=limits_for(tier).max_feedback_per_project,
        current=current_count,
    )


def ensure_feature(tier: Tier, feature: str) -> None:
    required = required_tier_for(feature)
    if not meets_requirement(tier, required):
        logger.info(
            "Feature gated by tier",
            extra={"feature": feature, "current_tier": tier.value, "required_tier": required.value},
        )
        raise TierRequirementError(
            feature=feature,
            current_tier=tier.value,
            required_tier=required.value,
        )
