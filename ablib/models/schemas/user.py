from pydantic import BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """A caller-owned user identity; the library never generates one."""

    id: str = Field(..., min_length=1, description="Stable, non-empty user ID.")
    email: str = ""

    model_config = ConfigDict(from_attributes=True)
