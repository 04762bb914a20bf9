from typing import Dict

from pydantic import BaseModel, ConfigDict, Field


class Experiment(BaseModel):
    """An experiment definition as delivered by the remote store."""

    key: str = Field(..., min_length=1, description="Unique experiment key.")
    name: str
    splits: Dict[str, float] = Field(
        default_factory=dict,
        description="Variant key -> relative weight, e.g. {'A': 0.5, 'B': 0.5}.",
    )
    enabled: bool = True

    model_config = ConfigDict(from_attributes=True)


class ExperimentListResponseModel(BaseModel):
    experiments: list[Experiment]
