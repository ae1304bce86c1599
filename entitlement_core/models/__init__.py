"""
Database models.

Importing this package registers every table on Base.metadata.
"""

from entitlement_core.models.base import Base, TimestampMixin, UTCDateTime
from entitlement_core.models.account_entitlement import AccountEntitlement

__all__ = ["Base", "TimestampMixin", "UTCDateTime", "AccountEntitlement"]
