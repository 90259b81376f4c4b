"""
Canvas design schema.

A CanvasDesign is an immutable value: every edit produces a new design.
Immutability is what allows a SaveRecord to hold the exact snapshot that
was saved while the editing session keeps moving.

Geometry uses the editor's coordinate system: origin at the top-left
corner of the canvas, units in canvas pixels.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Bound on element coordinates and sizes, in canvas pixels
MAX_EXTENT = 100_000


def _new_element_id() -> str:
    return uuid4().hex


class ElementStyle(BaseModel):
    """Presentation attributes shared by all element kinds."""

    fill: Optional[str] = Field(
        None,
        pattern=r"^#[0-9a-fA-F]{6}$",
        description="Fill colour (#RRGGBB). None means no fill.",
    )

    stroke: Optional[str] = Field(
        "#000000",
        pattern=r"^#[0-9a-fA-F]{6}$",
        description="Outline colour (#RRGGBB). None means no outline.",
    )

    stroke_width: float = Field(1.0, ge=0, le=100, allow_inf_nan=False)

    font_size: float = Field(24.0, gt=0, le=500, allow_inf_nan=False)

    text_color: str = Field("#000000", pattern=r"^#[0-9a-fA-F]{6}$")

    model_config = ConfigDict(frozen=True, extra="forbid")


class CanvasElement(BaseModel):
    """
    A single drawable element.

    The element_id is stable for the lifetime of the element and is
    never reassigned by an update.
    """

    element_id: str = Field(
        default_factory=_new_element_id,
        min_length=1,
        max_length=64,
    )

    kind: Literal["shape", "text", "image"]

    x: float = Field(..., ge=-MAX_EXTENT, le=MAX_EXTENT, allow_inf_nan=False)
    y: float = Field(..., ge=-MAX_EXTENT, le=MAX_EXTENT, allow_inf_nan=False)
    width: float = Field(..., ge=0, le=MAX_EXTENT, allow_inf_nan=False)
    height: float = Field(..., ge=0, le=MAX_EXTENT, allow_inf_nan=False)

    style: ElementStyle = Field(default_factory=ElementStyle)

    shape: Optional[Literal["rect", "ellipse", "line"]] = None
    text: Optional[str] = Field(None, max_length=2000)
    image_ref: Optional[str] = Field(None, min_length=1, max_length=512)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def _kind_payload(self) -> "CanvasElement":
        if self.kind == "shape" and self.shape is None:
            raise ValueError("shape elements require 'shape'")
        if self.kind == "text" and self.text is None:
            raise ValueError("text elements require 'text'")
        if self.kind == "image" and self.image_ref is None:
            raise ValueError("image elements require 'image_ref'")
        return self


class CanvasDesign(BaseModel):
    """
    Ordered sequence of drawable elements on a fixed-size canvas.

    Element order is paint order: later elements are drawn on top.
    """

    width: int = Field(800, gt=0, le=10_000)
    height: int = Field(600, gt=0, le=10_000)
    background: str = Field("#ffffff", pattern=r"^#[0-9a-fA-F]{6}$")
    elements: Tuple[CanvasElement, ...] = ()

    model_config = ConfigDict(frozen=True, extra="forbid")

    @model_validator(mode="after")
    def _unique_element_ids(self) -> "CanvasDesign":
        seen = set()
        for element in self.elements:
            if element.element_id in seen:
                raise ValueError(
                    f"duplicate element_id '{element.element_id}'"
                )
            seen.add(element.element_id)
        return self

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find(self, element_id: str) -> Optional[CanvasElement]:
        for element in self.elements:
            if element.element_id == element_id:
                return element
        return None

    @property
    def is_empty(self) -> bool:
        return not self.elements

    # ------------------------------------------------------------------
    # Derivation (returns new designs, never mutates)
    # ------------------------------------------------------------------

    def with_element(self, element: CanvasElement) -> "CanvasDesign":
        return self.model_validate(
            {**self._shallow(), "elements": (*self.elements, element)}
        )

    def with_replaced(self, element: CanvasElement) -> "CanvasDesign":
        return self.model_validate(
            {
                **self._shallow(),
                "elements": tuple(
                    element if e.element_id == element.element_id else e
                    for e in self.elements
                ),
            }
        )

    def without(self, element_id: str) -> "CanvasDesign":
        return self.model_validate(
            {
                **self._shallow(),
                "elements": tuple(
                    e for e in self.elements if e.element_id != element_id
                ),
            }
        )

    def _shallow(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "background": self.background,
            "elements": self.elements,
        }
