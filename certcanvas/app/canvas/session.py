"""
Canvas editing session.

A CanvasSession is the explicit context object for one design: it owns
the current in-memory CanvasDesign and the pipeline state of that
design. Every save, verify and export call receives the session it acts
on; there is no module-level session state.

Element edits are validated before they are applied. A rejected edit
leaves the session exactly as it was. A successful edit always returns
the session to the ``editing`` state, which is what makes an earlier
save stale.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from certcanvas.app.errors import AuthorizationError, ValidationError
from certcanvas.app.schemas.canvas import CanvasDesign, CanvasElement
from certcanvas.app.schemas.records import (
    CallerIdentity,
    SaveRecord,
    VerificationRecord,
)
from certcanvas.app.schemas.state import (
    EditingState,
    PipelineState,
    SavedState,
    VerifiedState,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _field_errors(exc: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {
            "field": ".".join(str(part) for part in err["loc"]) or "element",
            "message": err["msg"],
        }
        for err in exc.errors()
    ]


def _rejected(message: str, exc: PydanticValidationError) -> ValidationError:
    return ValidationError(message, errors=_field_errors(exc))


class CanvasSession:
    """
    In-memory editing session for a single certificate design.

    Single writer: one user interaction stream mutates a session.
    """

    def __init__(
        self,
        *,
        session_id: str,
        owner_id: str,
        design: Optional[CanvasDesign] = None,
        state: Optional[PipelineState] = None,
    ) -> None:
        self.session_id = session_id
        self.owner_id = owner_id
        self._design = design if design is not None else CanvasDesign()
        self._state: PipelineState = state or EditingState()
        self.updated_at = _now()

    # ------------------------------------------------------------------
    # Reload
    # ------------------------------------------------------------------

    @classmethod
    def restore(
        cls,
        save_record: SaveRecord,
        verification_record: Optional[VerificationRecord] = None,
    ) -> "CanvasSession":
        """Rebuild a session from its current save (and verification)."""
        if verification_record is None:
            state: PipelineState = SavedState(save_record=save_record)
        else:
            state = VerifiedState(
                save_record=save_record,
                verification_record=verification_record,
            )

        session = cls(
            session_id=save_record.session_id,
            owner_id=save_record.saved_by,
            design=save_record.design,
            state=state,
        )
        session.updated_at = save_record.saved_at
        return session

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    @property
    def design(self) -> CanvasDesign:
        return self._design

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def dirty(self) -> bool:
        return isinstance(self._state, EditingState)

    @property
    def save_record(self) -> Optional[SaveRecord]:
        if isinstance(self._state, (SavedState, VerifiedState)):
            return self._state.save_record
        return None

    @property
    def verification_record(self) -> Optional[VerificationRecord]:
        if isinstance(self._state, VerifiedState):
            return self._state.verification_record
        return None

    @property
    def is_saved(self) -> bool:
        return not self.dirty and self.save_record is not None

    @property
    def can_export(self) -> bool:
        return (
            self.is_saved
            and self.verification_record is not None
            and not self.dirty
        )

    def require_owner(self, caller: CallerIdentity) -> None:
        if caller.user_id != self.owner_id:
            raise AuthorizationError(
                f"User '{caller.user_id}' may not modify canvas "
                f"'{self.session_id}'."
            )

    # ------------------------------------------------------------------
    # Element edits
    # ------------------------------------------------------------------

    def add_element(
        self,
        element: Union[CanvasElement, Mapping[str, Any]],
    ) -> CanvasDesign:
        try:
            if not isinstance(element, CanvasElement):
                element = CanvasElement.model_validate(dict(element))
        except PydanticValidationError as exc:
            raise _rejected("Invalid element", exc) from exc

        if self._design.find(element.element_id) is not None:
            raise ValidationError.for_field(
                "element_id",
                f"element '{element.element_id}' already exists",
            )

        try:
            design = self._design.with_element(element)
        except PydanticValidationError as exc:
            raise _rejected("Invalid design", exc) from exc

        return self._apply(design)

    def update_element(
        self,
        element_id: str,
        changes: Mapping[str, Any],
    ) -> CanvasDesign:
        current = self._require_element(element_id)

        if changes.get("element_id", element_id) != element_id:
            raise ValidationError.for_field(
                "element_id", "element_id cannot be changed"
            )

        merged = current.model_dump()
        for key, value in changes.items():
            if key == "style" and isinstance(value, Mapping):
                merged["style"] = {**merged["style"], **value}
            else:
                merged[key] = value

        try:
            updated = CanvasElement.model_validate(merged)
        except PydanticValidationError as exc:
            raise _rejected("Invalid element update", exc) from exc

        return self._apply(self._design.with_replaced(updated))

    def move_element(self, element_id: str, x: float, y: float) -> CanvasDesign:
        return self.update_element(element_id, {"x": x, "y": y})

    def remove_element(self, element_id: str) -> CanvasDesign:
        self._require_element(element_id)
        return self._apply(self._design.without(element_id))

    # ------------------------------------------------------------------
    # Pipeline transitions (driven by the coordinator)
    # ------------------------------------------------------------------

    def mark_saved(self, save_record: SaveRecord) -> None:
        if save_record.session_id != self.session_id:
            raise ValueError("save_record belongs to another session")
        self._state = SavedState(save_record=save_record)

    def mark_verified(self, verification_record: VerificationRecord) -> None:
        save_record = self.save_record
        if self.dirty or save_record is None:
            raise ValueError("cannot verify a session that is not saved")
        self._state = VerifiedState(
            save_record=save_record,
            verification_record=verification_record,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_element(self, element_id: str) -> CanvasElement:
        element = self._design.find(element_id)
        if element is None:
            raise ValidationError.for_field(
                "element_id", f"element '{element_id}' does not exist"
            )
        return element

    def _apply(self, design: CanvasDesign) -> CanvasDesign:
        if isinstance(self._state, EditingState):
            last_save_id = self._state.last_save_id
        else:
            last_save_id = self._state.save_record.save_id

        self._design = design
        self._state = EditingState(last_save_id=last_save_id)
        self.updated_at = _now()
        return design
