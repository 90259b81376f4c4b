"""
Shared contract for export encoders.

Encoders are presentation-only. They receive a RenderJob built from a
(SaveRecord, VerificationRecord) pair and never see the live editing
session, so an export always reproduces the verified snapshot.
"""

from __future__ import annotations

import io
import logging
from typing import List, Optional, Protocol, Tuple

from PIL import Image, ImageColor, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict

from certcanvas.app.render.assets import AssetSource
from certcanvas.app.schemas.canvas import CanvasDesign, CanvasElement
from certcanvas.app.schemas.records import (
    ExportFormat,
    SaveRecord,
    VerificationRecord,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_COLOR = "#9ca3af"
FOOTER_COLOR = "#4b5563"


class RenderJob(BaseModel):
    """Everything an encoder may read. Immutable."""

    save_record: SaveRecord
    verification_record: VerificationRecord
    verification_url: str
    issued_by: str

    model_config = ConfigDict(frozen=True)

    @property
    def design(self) -> CanvasDesign:
        return self.save_record.design

    def footer_lines(self) -> List[str]:
        record = self.verification_record
        return [
            f"Verify at: {self.verification_url}",
            (
                f"Authorized by {record.author_name} on "
                f"{record.authorized_date.isoformat()} | {self.issued_by}"
            ),
        ]


class ExportEncoder(Protocol):
    format: ExportFormat
    media_type: str
    extension: str

    def encode(self, job: RenderJob) -> bytes:
        ...


def rgb(color: str) -> Tuple[int, int, int]:
    return ImageColor.getrgb(color)[:3]


def load_asset_image(
    assets: AssetSource,
    image_ref: str,
) -> Optional[Image.Image]:
    """Decode an image asset, or return None so callers draw a placeholder."""
    data = assets.load(image_ref)
    if data is None:
        return None
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        logger.warning(
            "asset_decode_failed",
            extra={"image_ref": image_ref, "error": str(exc)},
        )
        return None


Box = Tuple[float, float, float, float]


def visible_box(
    element: CanvasElement,
    design: CanvasDesign,
    pad: float = 0.0,
) -> Optional[Box]:
    """
    Clip the element's box to the canvas grown by ``pad`` on every side.

    Returns None when nothing of the element can land on the canvas.
    Text is anchored at its top-left corner and may overflow its box, so
    only the anchor is tested against the right and bottom edges.
    """
    x0, y0 = element.x, element.y
    x1, y1 = x0 + element.width, y0 + element.height

    if element.kind == "text":
        if x0 >= design.width or y0 >= design.height:
            return None
        return x0, y0, x1, y1

    if x1 < -pad or y1 < -pad:
        return None
    if x0 > design.width + pad or y0 > design.height + pad:
        return None
    return (
        max(x0, -pad),
        max(y0, -pad),
        min(x1, design.width + pad),
        min(y1, design.height + pad),
    )
