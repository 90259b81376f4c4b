"""
PNG export encoder.

Rasterizes the saved design at ``design size × scale`` using Pillow and
appends a footer band carrying the visible verification text. The
verification fields are also attached as PNG text chunks so they survive
cropping of the visible footer.

Output is deterministic: the same RenderJob always produces the same
bytes.
"""

from __future__ import annotations

import io
from functools import lru_cache
from typing import Union

from PIL import Image, ImageDraw, ImageFont
from PIL.PngImagePlugin import PngInfo

from certcanvas.app.errors import ValidationError
from certcanvas.app.render.assets import AssetSource, NullAssetSource
from certcanvas.app.render.base import (
    FOOTER_COLOR,
    PLACEHOLDER_COLOR,
    RenderJob,
    load_asset_image,
    rgb,
    visible_box,
)
from certcanvas.app.schemas.canvas import CanvasDesign, CanvasElement

# Footer band height in design pixels
FOOTER_HEIGHT = 48
FOOTER_FONT_SIZE = 12

# Upper bound on the pixel count of one raster export
DEFAULT_MAX_PIXELS = 40_000_000

Font = Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]


@lru_cache(maxsize=32)
def _font(size: int) -> Font:
    return ImageFont.load_default(size=max(size, 1))


class PngEncoder:
    format = "png"
    media_type = "image/png"
    extension = "png"

    def __init__(
        self,
        *,
        scale: int = 2,
        max_pixels: int = DEFAULT_MAX_PIXELS,
        assets: AssetSource | None = None,
    ) -> None:
        self._scale = scale
        self._max_pixels = max_pixels
        self._assets = assets or NullAssetSource()

    def encode(self, job: RenderJob) -> bytes:
        design = job.design
        s = self._scale

        canvas_w = design.width * s
        canvas_h = design.height * s
        footer_h = FOOTER_HEIGHT * s

        pixels = canvas_w * (canvas_h + footer_h)
        if pixels > self._max_pixels:
            raise ValidationError.for_field(
                "design",
                f"PNG export of {canvas_w}x{canvas_h + footer_h} pixels "
                f"exceeds the limit of {self._max_pixels} pixels.",
            )

        image = Image.new(
            "RGB", (canvas_w, canvas_h + footer_h), "#ffffff"
        )
        artwork = Image.new("RGBA", (canvas_w, canvas_h), design.background)
        draw = ImageDraw.Draw(artwork)

        for element in design.elements:
            self._draw_element(artwork, draw, element, design)

        image.paste(artwork.convert("RGB"), (0, 0))
        self._draw_footer(ImageDraw.Draw(image), job, top=canvas_h)

        buffer = io.BytesIO()
        image.save(buffer, format="PNG", pnginfo=self._png_info(job))
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Element drawing
    # ------------------------------------------------------------------

    def _draw_element(
        self,
        artwork: Image.Image,
        draw: ImageDraw.ImageDraw,
        element: CanvasElement,
        design: CanvasDesign,
    ) -> None:
        s = self._scale
        style = element.style

        fill = rgb(style.fill) if style.fill else None
        outline = rgb(style.stroke) if style.stroke else None
        stroke_width = round(style.stroke_width * s)
        if outline is None:
            stroke_width = 0

        # Clipped edges are pushed one pixel past any stroke so they stay
        # off the canvas.
        box = visible_box(element, design, pad=style.stroke_width + 1)
        if box is None:
            return

        x0 = round(element.x * s)
        y0 = round(element.y * s)
        x1 = round((element.x + element.width) * s)
        y1 = round((element.y + element.height) * s)

        if element.kind == "shape":
            if element.shape == "rect":
                draw.rectangle(
                    [round(v * s) for v in box],
                    fill=fill,
                    outline=outline,
                    width=stroke_width,
                )
            elif element.shape == "ellipse":
                draw.ellipse(
                    [x0, y0, x1, y1],
                    fill=fill,
                    outline=outline,
                    width=stroke_width,
                )
            elif element.shape == "line":
                draw.line(
                    [(x0, y0), (x1, y1)],
                    fill=outline or rgb("#000000"),
                    width=max(stroke_width, 1),
                )

        elif element.kind == "text":
            draw.multiline_text(
                (x0, y0),
                element.text or "",
                fill=rgb(style.text_color),
                font=_font(round(style.font_size * s)),
            )

        elif element.kind == "image":
            if x1 <= x0 or y1 <= y0:
                return
            asset = load_asset_image(self._assets, element.image_ref or "")
            if asset is None:
                self._draw_placeholder(draw, [round(v * s) for v in box])
                return
            self._paste_asset(artwork, asset, (x0, y0, x1, y1))

    def _paste_asset(self, artwork: Image.Image, asset: Image.Image, box) -> None:
        """Scale only the part of the asset that lands on the canvas."""
        x0, y0, x1, y1 = box
        vx0, vy0 = max(x0, 0), max(y0, 0)
        vx1, vy1 = min(x1, artwork.width), min(y1, artwork.height)
        if vx1 <= vx0 or vy1 <= vy0:
            return

        sx = asset.width / (x1 - x0)
        sy = asset.height / (y1 - y0)
        source = (
            (vx0 - x0) * sx,
            (vy0 - y0) * sy,
            (vx1 - x0) * sx,
            (vy1 - y0) * sy,
        )
        resized = asset.resize((vx1 - vx0, vy1 - vy0), box=source)
        artwork.paste(resized, (vx0, vy0), resized)

    def _draw_placeholder(self, draw: ImageDraw.ImageDraw, box) -> None:
        x0, y0, x1, y1 = box
        color = rgb(PLACEHOLDER_COLOR)
        draw.rectangle([x0, y0, x1, y1], outline=color, width=self._scale)
        draw.line([(x0, y0), (x1, y1)], fill=color, width=self._scale)
        draw.line([(x0, y1), (x1, y0)], fill=color, width=self._scale)

    # ------------------------------------------------------------------
    # Verification binding
    # ------------------------------------------------------------------

    def _draw_footer(
        self,
        draw: ImageDraw.ImageDraw,
        job: RenderJob,
        *,
        top: int,
    ) -> None:
        s = self._scale
        font = _font(FOOTER_FONT_SIZE * s)
        line_height = (FOOTER_FONT_SIZE + 6) * s
        y = top + 6 * s
        for line in job.footer_lines():
            draw.text((8 * s, y), line, fill=rgb(FOOTER_COLOR), font=font)
            y += line_height

    def _png_info(self, job: RenderJob) -> PngInfo:
        record = job.verification_record
        info = PngInfo()
        info.add_text("VerificationUrl", job.verification_url)
        info.add_text("VerificationId", record.verification_id)
        info.add_text("ContentHash", record.content_hash)
        info.add_itxt("Title", job.save_record.title)
        info.add_itxt("Author", record.author_name)
        return info
