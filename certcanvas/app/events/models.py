from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


# ----------------------------------------------------------------------
# Event Types
# ----------------------------------------------------------------------
class PipelineEventType(str, Enum):
    """
    Observable transitions of an editing session.

    NOTE:
    Rejections are emitted alongside the error raised to the caller;
    they never replace it.
    """

    SESSION_CREATED = "session_created"
    SESSION_RELOADED = "session_reloaded"
    SESSION_DELETED = "session_deleted"

    SAVE_COMPLETED = "save_completed"
    SAVE_REJECTED = "save_rejected"

    VERIFY_COMPLETED = "verify_completed"
    VERIFY_REJECTED = "verify_rejected"

    EXPORT_COMPLETED = "export_completed"
    EXPORT_REJECTED = "export_rejected"


# ----------------------------------------------------------------------
# Event Model
# ----------------------------------------------------------------------
class PipelineEvent(BaseModel):
    """
    An immutable observation of a pipeline transition.

    Events are strictly observational and not authoritative.
    """

    event_id: UUID = Field(default_factory=uuid4)
    session_id: str
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    event_type: PipelineEventType

    # Optional contextual metadata (save_id, format, error kind, etc.)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )
