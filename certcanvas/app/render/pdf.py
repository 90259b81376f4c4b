"""
PDF export encoder.

Lays the saved design onto a fixed A4-landscape page using pikepdf. The
design is scaled to fit the printable area and centred above a footer
band that carries the visible verification text.

Verification binding:
- visible footer text ("Verify at: <url>")
- a clickable URI link annotation over the footer
- XMP metadata fields in the certificate canvas namespace

Trust boundary:
- This module is presentation-only. Gating, hashing and record creation
  happen strictly upstream.
"""

from __future__ import annotations

import io
from decimal import Decimal
from typing import Any, List, Tuple

import pikepdf
from pikepdf import Array, Dictionary, Name, Operator, Stream, String

from certcanvas.app.errors import ExportEncodeError
from certcanvas.app.render.assets import AssetSource, NullAssetSource
from certcanvas.app.render.base import (
    FOOTER_COLOR,
    PLACEHOLDER_COLOR,
    RenderJob,
    load_asset_image,
    rgb,
    visible_box,
)
from certcanvas.app.schemas.canvas import CanvasElement

# A4 landscape, in points
PAGE_WIDTH = 842
PAGE_HEIGHT = 595
MARGIN = 36
FOOTER_BAND = 40
FOOTER_FONT_SIZE = 9

XMP_NAMESPACE = "https://certcanvas.dev/ns/verification/1.0/"

# Bezier control-point ratio for approximating a quarter ellipse
_KAPPA = 0.5522847498

Instruction = Tuple[List[Any], Operator]


class PdfEncodeError(ExportEncodeError):
    """Raised when the PDF artifact cannot be assembled."""


def _n(value: float) -> Decimal:
    # Fixed precision keeps content streams byte-stable across runs.
    return Decimal(f"{value:.3f}")


def _color(color: str) -> List[Decimal]:
    return [_n(c / 255) for c in rgb(color)]


def _pdf_text(text: str) -> String:
    # Standard 14 fonts with WinAnsiEncoding
    return String(text.encode("cp1252", errors="replace"))


def _op(operands: List[Any], operator: str) -> Instruction:
    return (operands, Operator(operator))


class PdfEncoder:
    format = "pdf"
    media_type = "application/pdf"
    extension = "pdf"

    def __init__(self, *, assets: AssetSource | None = None) -> None:
        self._assets = assets or NullAssetSource()

    def encode(self, job: RenderJob) -> bytes:
        design = job.design

        avail_w = PAGE_WIDTH - 2 * MARGIN
        avail_h = PAGE_HEIGHT - 2 * MARGIN - FOOTER_BAND
        scale = min(avail_w / design.width, avail_h / design.height)

        draw_w = design.width * scale
        draw_h = design.height * scale
        origin_x = MARGIN + (avail_w - draw_w) / 2
        origin_top = PAGE_HEIGHT - MARGIN - (avail_h - draw_h) / 2

        try:
            with pikepdf.new() as pdf:
                page = pdf.add_blank_page(page_size=(PAGE_WIDTH, PAGE_HEIGHT))
                layout = _PageLayout(
                    pdf=pdf,
                    scale=scale,
                    origin_x=origin_x,
                    origin_top=origin_top,
                    assets=self._assets,
                )

                instructions: List[Instruction] = []
                instructions += layout.background(design.background, draw_w, draw_h)
                instructions += layout.clip(draw_w, draw_h)
                for element in design.elements:
                    pad = element.style.stroke_width
                    if visible_box(element, design, pad=pad) is None:
                        continue
                    instructions += layout.element(element)
                instructions.append(_op([], "Q"))

                footer_ops, link_rect = layout.footer(job)
                instructions += footer_ops

                font = pdf.make_indirect(
                    Dictionary(
                        Type=Name.Font,
                        Subtype=Name.Type1,
                        BaseFont=Name.Helvetica,
                        Encoding=Name.WinAnsiEncoding,
                    )
                )
                page.Resources = Dictionary(
                    Font=Dictionary(F1=font),
                    XObject=Dictionary(layout.xobjects),
                )
                page.Contents = pdf.make_stream(
                    pikepdf.unparse_content_stream(instructions)
                )
                page.Annots = Array(
                    [pdf.make_indirect(self._link(job.verification_url, link_rect))]
                )

                self._bind_metadata(pdf, job)

                buffer = io.BytesIO()
                pdf.save(buffer, deterministic_id=True)
                return buffer.getvalue()

        except pikepdf.PdfError as exc:
            raise PdfEncodeError(f"Failed to assemble PDF artifact: {exc}") from exc

    # ------------------------------------------------------------------
    # Verification binding
    # ------------------------------------------------------------------

    def _link(self, url: str, rect: Tuple[float, float, float, float]) -> Dictionary:
        return Dictionary(
            Type=Name.Annot,
            Subtype=Name.Link,
            Rect=Array([_n(v) for v in rect]),
            Border=Array([0, 0, 0]),
            A=Dictionary(S=Name.URI, URI=String(url)),
        )

    def _bind_metadata(self, pdf: pikepdf.Pdf, job: RenderJob) -> None:
        record = job.verification_record
        with pdf.open_metadata(set_pikepdf_as_editor=False) as meta:
            meta["dc:title"] = job.save_record.title
            meta[f"{{{XMP_NAMESPACE}}}verificationUrl"] = job.verification_url
            meta[f"{{{XMP_NAMESPACE}}}verificationId"] = record.verification_id
            meta[f"{{{XMP_NAMESPACE}}}contentHash"] = record.content_hash
            meta[f"{{{XMP_NAMESPACE}}}authorName"] = record.author_name
            meta[f"{{{XMP_NAMESPACE}}}authorizedDate"] = (
                record.authorized_date.isoformat()
            )


class _PageLayout:
    """Maps design coordinates (top-left origin) onto the PDF page."""

    def __init__(
        self,
        *,
        pdf: pikepdf.Pdf,
        scale: float,
        origin_x: float,
        origin_top: float,
        assets: AssetSource,
    ) -> None:
        self._pdf = pdf
        self._scale = scale
        self._origin_x = origin_x
        self._origin_top = origin_top
        self._assets = assets
        self.xobjects: dict = {}

    # ------------------------------------------------------------------
    # Coordinate mapping
    # ------------------------------------------------------------------

    def _box(self, element: CanvasElement) -> Tuple[float, float, float, float]:
        """Return (x, y_bottom, width, height) in page space."""
        s = self._scale
        w = element.width * s
        h = element.height * s
        x = self._origin_x + element.x * s
        y = self._origin_top - element.y * s - h
        return x, y, w, h

    # ------------------------------------------------------------------
    # Drawing
    # ------------------------------------------------------------------

    def background(self, color: str, width: float, height: float) -> List[Instruction]:
        return [
            _op([], "q"),
            _op(_color(color), "rg"),
            _op(
                [
                    _n(self._origin_x),
                    _n(self._origin_top - height),
                    _n(width),
                    _n(height),
                ],
                "re",
            ),
            _op([], "f"),
            _op([], "Q"),
        ]

    def clip(self, width: float, height: float) -> List[Instruction]:
        """Open a graphics state clipped to the design area. Caller closes it."""
        return [
            _op([], "q"),
            _op(
                [
                    _n(self._origin_x),
                    _n(self._origin_top - height),
                    _n(width),
                    _n(height),
                ],
                "re",
            ),
            _op([], "W"),
            _op([], "n"),
        ]

    def element(self, element: CanvasElement) -> List[Instruction]:
        if element.kind == "shape":
            return self._shape(element)
        if element.kind == "text":
            return self._text(element)
        return self._image(element)

    def _paint_setup(self, element: CanvasElement) -> Tuple[List[Instruction], str]:
        style = element.style
        ops: List[Instruction] = []
        if style.fill:
            ops.append(_op(_color(style.fill), "rg"))
        if style.stroke and style.stroke_width > 0:
            ops.append(_op(_color(style.stroke), "RG"))
            ops.append(_op([_n(style.stroke_width * self._scale)], "w"))

        fills = bool(style.fill)
        strokes = bool(style.stroke) and style.stroke_width > 0
        if fills and strokes:
            paint = "B"
        elif fills:
            paint = "f"
        elif strokes:
            paint = "S"
        else:
            paint = "n"
        return ops, paint

    def _shape(self, element: CanvasElement) -> List[Instruction]:
        x, y, w, h = self._box(element)
        setup, paint = self._paint_setup(element)
        ops: List[Instruction] = [_op([], "q"), *setup]

        if element.shape == "rect":
            ops.append(_op([_n(x), _n(y), _n(w), _n(h)], "re"))
            ops.append(_op([], paint))

        elif element.shape == "ellipse":
            ops += _ellipse_path(x, y, w, h)
            ops.append(_op([], paint))

        elif element.shape == "line":
            stroke = element.style.stroke or "#000000"
            ops.append(_op(_color(stroke), "RG"))
            ops.append(_op([_n(max(element.style.stroke_width, 1) * self._scale)], "w"))
            # Design lines run from the top-left to the bottom-right corner
            ops.append(_op([_n(x), _n(y + h)], "m"))
            ops.append(_op([_n(x + w), _n(y)], "l"))
            ops.append(_op([], "S"))

        ops.append(_op([], "Q"))
        return ops

    def _text(self, element: CanvasElement) -> List[Instruction]:
        size = element.style.font_size * self._scale
        x = self._origin_x + element.x * self._scale
        baseline = self._origin_top - element.y * self._scale - size

        ops: List[Instruction] = [
            _op([], "BT"),
            _op([Name("/F1"), _n(size)], "Tf"),
            _op(_color(element.style.text_color), "rg"),
            _op([_n(size * 1.2)], "TL"),
            _op([_n(x), _n(baseline)], "Td"),
        ]
        for index, line in enumerate((element.text or "").split("\n")):
            if index:
                ops.append(_op([], "T*"))
            ops.append(_op([_pdf_text(line)], "Tj"))
        ops.append(_op([], "ET"))
        return ops

    def _image(self, element: CanvasElement) -> List[Instruction]:
        x, y, w, h = self._box(element)
        if w <= 0 or h <= 0:
            return []

        asset = load_asset_image(self._assets, element.image_ref or "")
        if asset is None:
            return self._placeholder(x, y, w, h)

        rgb_image = asset.convert("RGB")
        xobject = Stream(self._pdf, rgb_image.tobytes())
        xobject.Type = Name.XObject
        xobject.Subtype = Name.Image
        xobject.Width = rgb_image.width
        xobject.Height = rgb_image.height
        xobject.ColorSpace = Name.DeviceRGB
        xobject.BitsPerComponent = 8

        alpha = asset.getchannel("A")
        if alpha.getextrema()[0] < 255:
            smask = Stream(self._pdf, alpha.tobytes())
            smask.Type = Name.XObject
            smask.Subtype = Name.Image
            smask.Width = alpha.width
            smask.Height = alpha.height
            smask.ColorSpace = Name.DeviceGray
            smask.BitsPerComponent = 8
            xobject.SMask = self._pdf.make_indirect(smask)

        name = f"/Im{len(self.xobjects) + 1}"
        self.xobjects[name] = self._pdf.make_indirect(xobject)

        return [
            _op([], "q"),
            _op([_n(w), 0, 0, _n(h), _n(x), _n(y)], "cm"),
            _op([Name(name)], "Do"),
            _op([], "Q"),
        ]

    def _placeholder(self, x: float, y: float, w: float, h: float) -> List[Instruction]:
        return [
            _op([], "q"),
            _op(_color(PLACEHOLDER_COLOR), "RG"),
            _op([_n(1)], "w"),
            _op([_n(x), _n(y), _n(w), _n(h)], "re"),
            _op([_n(x), _n(y)], "m"),
            _op([_n(x + w), _n(y + h)], "l"),
            _op([_n(x), _n(y + h)], "m"),
            _op([_n(x + w), _n(y)], "l"),
            _op([], "S"),
            _op([], "Q"),
        ]

    def footer(
        self, job: RenderJob
    ) -> Tuple[List[Instruction], Tuple[float, float, float, float]]:
        lines = job.footer_lines()
        x = MARGIN
        top = MARGIN + FOOTER_BAND - FOOTER_FONT_SIZE
        leading = FOOTER_FONT_SIZE + 4

        ops: List[Instruction] = [
            _op([], "BT"),
            _op([Name("/F1"), FOOTER_FONT_SIZE], "Tf"),
            _op(_color(FOOTER_COLOR), "rg"),
            _op([leading], "TL"),
            _op([x, top], "Td"),
        ]
        for index, line in enumerate(lines):
            if index:
                ops.append(_op([], "T*"))
            ops.append(_op([_pdf_text(line)], "Tj"))
        ops.append(_op([], "ET"))

        # Helvetica averages roughly half an em per character
        link_width = min(
            len(lines[0]) * FOOTER_FONT_SIZE * 0.5,
            PAGE_WIDTH - 2 * MARGIN,
        )
        link_rect = (x, top - 2, x + link_width, top + FOOTER_FONT_SIZE)
        return ops, link_rect


def _ellipse_path(x: float, y: float, w: float, h: float) -> List[Instruction]:
    rx, ry = w / 2, h / 2
    cx, cy = x + rx, y + ry
    ox, oy = rx * _KAPPA, ry * _KAPPA
    return [
        _op([_n(cx + rx), _n(cy)], "m"),
        _op([_n(cx + rx), _n(cy + oy), _n(cx + ox), _n(cy + ry), _n(cx), _n(cy + ry)], "c"),
        _op([_n(cx - ox), _n(cy + ry), _n(cx - rx), _n(cy + oy), _n(cx - rx), _n(cy)], "c"),
        _op([_n(cx - rx), _n(cy - oy), _n(cx - ox), _n(cy - ry), _n(cx), _n(cy - ry)], "c"),
        _op([_n(cx + ox), _n(cy - ry), _n(cx + rx), _n(cy - oy), _n(cx + rx), _n(cy)], "c"),
        _op([], "h"),
    ]
