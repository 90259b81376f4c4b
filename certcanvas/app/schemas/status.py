"""
Read models exposed to the UI collaborator and to third parties.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ExportBlockReason(str, Enum):
    """
    Which export precondition is unmet.

    The UI uses this to tell the user which step to perform next.
    """

    NOT_SAVED = "not_saved"
    NOT_VERIFIED = "not_verified"

    @property
    def remediation(self) -> str:
        if self is ExportBlockReason.NOT_SAVED:
            return "Save the canvas first to enable export."
        return "Generate a verification link to enable export."


class PipelineStatus(BaseModel):
    """Export readiness of one editing session."""

    session_id: str
    state: Literal["editing", "saved", "verified"]
    dirty: bool
    is_saved: bool
    can_export: bool
    save_id: Optional[str] = None
    verification_id: Optional[str] = None
    verification_url: Optional[str] = None
    export_blocked_reason: Optional[ExportBlockReason] = None
    message: str


class CertificateSummary(BaseModel):
    """Public metadata of a verified certificate."""

    title: str
    author_name: str
    authorized_date: date
    saved_at: datetime
    issued_by: str
    verification_id: str
    content_hash: str


class VerificationLookup(BaseModel):
    """Result of resolving a public verification identifier."""

    valid: bool
    message: str
    certificate: Optional[CertificateSummary] = Field(
        None,
        description="Present only when valid is true",
    )
