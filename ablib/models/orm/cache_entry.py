from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text

from .base import Base


class CacheEntryORM(Base):
    """One serialized envelope in the local key/value store."""

    __tablename__ = "ab_cache_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
