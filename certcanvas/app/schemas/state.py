"""
Pipeline state of an editing session.

The save → verify → export sequence is an explicit tagged state rather
than independent booleans:

    editing  ──save──▶  saved  ──verify──▶  verified
       ▲                  │                     │
       └────── edit ──────┴──────── edit ───────┘

A verified state always carries the SaveRecord it was bound to, so
"verified but never saved" cannot be represented.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from certcanvas.app.schemas.records import SaveRecord, VerificationRecord


class EditingState(BaseModel):
    """The design has changes that are not covered by any save."""

    kind: Literal["editing"] = "editing"
    last_save_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class SavedState(BaseModel):
    kind: Literal["saved"] = "saved"
    save_record: SaveRecord

    model_config = ConfigDict(frozen=True)


class VerifiedState(BaseModel):
    kind: Literal["verified"] = "verified"
    save_record: SaveRecord
    verification_record: VerificationRecord

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _bound_to_save(self) -> "VerifiedState":
        if self.verification_record.save_id != self.save_record.save_id:
            raise ValueError(
                "verification_record is bound to save "
                f"'{self.verification_record.save_id}', "
                f"not '{self.save_record.save_id}'"
            )
        return self


PipelineState = Annotated[
    Union[EditingState, SavedState, VerifiedState],
    Field(discriminator="kind"),
]
