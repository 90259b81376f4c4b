"""
Image asset resolution for image elements.

Image elements reference assets by a relative path. References are
resolved strictly inside the configured assets directory; anything that
escapes it resolves to nothing and renders as a placeholder.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class AssetSource(Protocol):
    def load(self, image_ref: str) -> Optional[bytes]:
        """Return the raw bytes for image_ref, or None if unavailable."""
        ...


class NullAssetSource:
    def load(self, image_ref: str) -> Optional[bytes]:
        return None


class FilesystemAssetSource:
    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser().resolve()

    def load(self, image_ref: str) -> Optional[bytes]:
        candidate = (self._root / image_ref).resolve()

        if not candidate.is_relative_to(self._root):
            logger.warning(
                "asset_path_outside_root",
                extra={"image_ref": image_ref},
            )
            return None

        try:
            return candidate.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning(
                "asset_read_failed",
                extra={"image_ref": image_ref, "error": str(exc)},
            )
            return None
