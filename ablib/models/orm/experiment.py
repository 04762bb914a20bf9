from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, String
from sqlalchemy.dialects.postgresql import JSONB

from .base import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class ExperimentORM(Base):
    __tablename__ = "ab_experiments"

    key = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)

    # Variant key -> relative weight, e.g. {"A": 0.5, "B": 0.5}
    splits = Column(JSON_TYPE, default=dict, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False, index=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
