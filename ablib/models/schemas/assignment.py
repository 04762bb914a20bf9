from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserVariant(BaseModel):
    """Data model for a persistent user assignment record."""

    user_id: str
    experiment_key: str
    variant: str = Field(..., description="The key of the variant the user was assigned.")
    updated_at: Optional[datetime] = Field(default_factory=utcnow)
    # Unique per (user_id, experiment_key)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("updated_at")
    @classmethod
    def assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Databases hand back naive UTC timestamps
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def composite_key(self) -> tuple[str, str]:
        return self.user_id, self.experiment_key


class VariantResponseModel(BaseModel):
    experiment_key: str
    variant: Optional[str] = None
