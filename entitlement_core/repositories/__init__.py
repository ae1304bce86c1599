"""Repository layer for entitlement persistence."""

from entitlement_core.repositories.entitlement_repository import EntitlementRepository

__all__ = ["EntitlementRepository"]
