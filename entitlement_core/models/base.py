"""
Base mixins for database models.

Provides common functionality:
- Base: the declarative base every model registers on
- TimestampMixin: created_at, updated_at timestamps
- UTCDateTime: Cross-database timezone-aware datetime type
"""

from datetime import timezone

from sqlalchemy import Column, DateTime, func, TypeDecorator
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    Platform-independent timezone-aware datetime type.

    PostgreSQL keeps the offset (timestamptz); SQLite drops it. Values are
    normalized to UTC on write and naive values read back are assumed UTC,
    so comparisons in Python never mix naive and aware datetimes.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )
