"""
Export encoder registry.

Each supported export format is bound to exactly one encoder. Formats
must be registered here to be addressable by the export operation; the
gating and snapshot logic upstream is shared by all of them.
"""

from typing import Dict

from certcanvas.app.config import Settings
from certcanvas.app.render.assets import (
    AssetSource,
    FilesystemAssetSource,
    NullAssetSource,
)
from certcanvas.app.render.base import ExportEncoder
from certcanvas.app.render.pdf import PdfEncoder
from certcanvas.app.render.png import PngEncoder


def build_encoder_registry(
    settings: Settings,
    assets: AssetSource | None = None,
) -> Dict[str, ExportEncoder]:
    if assets is None:
        assets = (
            FilesystemAssetSource(settings.assets_dir)
            if settings.assets_dir is not None
            else NullAssetSource()
        )

    return {
        "png": PngEncoder(
            scale=settings.png_scale,
            max_pixels=settings.max_export_pixels,
            assets=assets,
        ),
        "pdf": PdfEncoder(assets=assets),
    }
