"""
Persisted and derived records of the save → verify → export pipeline.

SaveRecord and VerificationRecord are immutable once created. A later
save creates a new SaveRecord; it never rewrites an earlier one.
ExportArtifact is derived, disposable output and is never persisted.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from certcanvas.app.schemas.canvas import CanvasDesign


ExportFormat = Literal["png", "pdf"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CallerIdentity(BaseModel):
    """Authenticated identity supplied by the auth collaborator."""

    user_id: str = Field(..., min_length=1, max_length=128)

    model_config = ConfigDict(frozen=True)


class SaveRecord(BaseModel):
    """
    Immutable snapshot of a CanvasDesign at save time.

    The most recent revision for a session is its "current" save.
    """

    save_id: str
    session_id: str
    revision: int = Field(..., ge=1)
    title: str
    design: CanvasDesign
    saved_by: str
    saved_at: datetime = Field(default_factory=_now)

    content_hash: str = Field(
        ...,
        description=(
            "SHA-256 of the canonical design snapshot and title. "
            "Copied into the VerificationRecord and every export."
        ),
    )

    model_config = ConfigDict(frozen=True, extra="forbid")


class VerificationRecord(BaseModel):
    """
    Immutable binding of one SaveRecord to an authorship claim and a
    publicly resolvable verification identifier.
    """

    verification_id: str
    session_id: str
    save_id: str
    author_name: str
    authorized_date: date
    verified_by: str
    created_at: datetime = Field(default_factory=_now)
    content_hash: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class ExportArtifact(BaseModel):
    """Rendered output handed to the caller. Never persisted."""

    format: ExportFormat
    media_type: str
    filename: str
    content: bytes
    verification_id: str
    verification_url: str
    content_hash: str

    model_config = ConfigDict(frozen=True)


class ExportLogEntry(BaseModel):
    """Metadata recording that an export took place."""

    session_id: str
    save_id: str
    verification_id: str
    format: ExportFormat
    exported_by: str
    byte_size: int = Field(..., ge=0)
    exported_at: datetime = Field(default_factory=_now)

    model_config = ConfigDict(frozen=True, extra="forbid")


class AssetInfo(BaseModel):
    """An uploaded image that image elements can reference."""

    image_ref: str
    media_type: str
    byte_size: int = Field(..., ge=0)
    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)

    model_config = ConfigDict(frozen=True, extra="forbid")
