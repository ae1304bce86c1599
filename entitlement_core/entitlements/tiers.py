"""
Product reference -> Tier resolution.

One table per provider, loaded from config/product_tiers.yml and merged with
the Stripe price ids configured in the environment. Lookups are exact; a
product reference that is not in its provider's table resolves to None and
the caller decides what that means.

Usage:
    from entitlement_core.entitlements.tiers import TierResolver

    resolver = TierResolver.from_settings(settings)
    resolver.resolve(ProviderKind.APP_STORE, "swiftlyfeedback.pro.monthly")  # Tier.PRO
"""

import logging
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

import yaml

from entitlement_core.entitlements.models import ProviderKind, Tier

logger = logging.getLogger(__name__)

DEFAULT_TABLES_PATH = Path(__file__).resolve().parent.parent / "config" / "product_tiers.yml"


def _parse_table(provider: ProviderKind, raw: Optional[Mapping]) -> Dict[str, Tier]:
    table: Dict[str, Tier] = {}
    for product_ref, tier_value in (raw or {}).items():
        try:
            table[str(product_ref)] = Tier(str(tier_value).lower())
        except ValueError:
            raise ValueError(
                f"Invalid tier {tier_value!r} for {provider.value} product {product_ref!r}"
            )
    return table


def load_product_tables(path: Optional[Union[str, Path]] = None) -> Dict[ProviderKind, Dict[str, Tier]]:
    """
    Load per-provider product tables from YAML.

    Args:
        path: YAML file; defaults to the packaged config/product_tiers.yml

    Returns:
        Mapping of provider -> {product_ref: Tier}

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If a tier value is not a known Tier
    """
    resolved = Path(path) if path else DEFAULT_TABLES_PATH
    with open(resolved, "r") as f:
        raw = yaml.safe_load(f) or {}

    tables = {
        provider: _parse_table(provider, raw.get(provider.value))
        for provider in ProviderKind
    }
    logger.info(
        "Loaded product tier tables",
        extra={
            "path": str(resolved),
            "counts": {p.value: len(t) for p, t in tables.items()},
        },
    )
    return tables


class TierResolver:
    """Exact-match product reference lookup, per provider."""

    def __init__(self, tables: Mapping[ProviderKind, Mapping[str, Tier]]):
        self._tables: Dict[ProviderKind, Dict[str, Tier]] = {
            provider: dict(tables.get(provider, {})) for provider in ProviderKind
        }

    @classmethod
    def from_settings(cls, settings, path: Optional[Union[str, Path]] = None) -> "TierResolver":
        """Packaged tables plus Stripe price ids from settings.stripe_prices."""
        tables = load_product_tables(path)
        tables[ProviderKind.STRIPE].update(
            _parse_table(ProviderKind.STRIPE, settings.stripe_prices)
        )
        return cls(tables)

    def resolve(self, provider: ProviderKind, product_ref: Optional[str]) -> Optional[Tier]:
        if not product_ref:
            return None
        return self._tables[provider].get(product_ref)

    def product_refs_for(self, provider: ProviderKind, tier: Tier) -> list:
        """All product references of one provider that grant the given tier."""
        return sorted(ref for ref, t in self._tables[provider].items() if t == tier)
