from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, PrimaryKeyConstraint, String

from .base import Base


class UserVariantORM(Base):
    __tablename__ = "ab_user_variants"

    user_id = Column(String, nullable=False, index=True)
    experiment_key = Column(
        String, ForeignKey("ab_experiments.key"), nullable=False, index=True
    )
    variant = Column(String, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # At most one assignment per user per experiment; saves upsert on this key
    __table_args__ = (
        PrimaryKeyConstraint("user_id", "experiment_key", name="user_variant_pk"),
    )
