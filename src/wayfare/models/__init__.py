"""SQLAlchemy declarative base and shared column types."""

from wayfare.models.base import Base, TimestampMixin, UTCDateTime, utcnow

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utcnow",
]
