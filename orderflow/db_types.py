"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on storage, so naive values coming back are
    re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
