import enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SyncOperationType(str, enum.Enum):
    USER = "user"
    VARIANT = "variant"


class SyncAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncOperation(BaseModel):
    """A queued write that still has to reach the remote store."""

    id: str
    type: SyncOperationType
    action: SyncAction
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(..., description="Enqueue time, epoch milliseconds.")
    retries: int = 0


class CacheEnvelope(BaseModel):
    """Wrapper persisted around every local cache value."""

    data: Any
    version: int
    timestamp: int = Field(..., description="Write time, epoch milliseconds.")
    checksum: Optional[str] = None
