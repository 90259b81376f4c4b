"""
Uploaded image assets.

Assets are content-addressed per owner. A reference has the form

    <owner digest>/<content digest>.<ext>

so uploading the same bytes twice yields the same reference, and a
reference never points at content other than what was uploaded under
it. The filesystem library keeps every file inside its root and writes
through a temporary file and os.replace.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from PIL import Image, UnidentifiedImageError

from certcanvas.app.errors import (
    AuthorizationError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from certcanvas.app.render.assets import FilesystemAssetSource
from certcanvas.app.schemas.records import AssetInfo

logger = logging.getLogger(__name__)

# Pillow format name -> (extension, media type)
ACCEPTED_FORMATS: Dict[str, Tuple[str, str]] = {
    "PNG": ("png", "image/png"),
    "JPEG": ("jpg", "image/jpeg"),
    "GIF": ("gif", "image/gif"),
    "WEBP": ("webp", "image/webp"),
}

_MEDIA_TYPES = {ext: media for ext, media in ACCEPTED_FORMATS.values()}

_ASSET_REF = re.compile(r"^([0-9a-f]{24})/[0-9a-f]{32}\.(png|jpg|gif|webp)$")


def owner_prefix(owner_id: str) -> str:
    return hashlib.sha256(owner_id.encode("utf-8")).hexdigest()[:24]


def inspect_image(data: bytes) -> Tuple[str, str, int, int]:
    """
    Identify an upload as one of the accepted image formats.

    Returns (extension, media type, width, height). Anything Pillow
    cannot fully decode, or would refuse as a decompression bomb, is a
    ValidationError.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format
            width, height = img.size
            img.verify()
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as exc:
        raise ValidationError.for_field(
            "file", f"upload is not a readable image: {exc}"
        ) from exc

    if image_format not in ACCEPTED_FORMATS:
        raise ValidationError.for_field(
            "file",
            f"unsupported image format '{image_format}'; expected one of "
            f"{sorted(ACCEPTED_FORMATS)}",
        )
    extension, media_type = ACCEPTED_FORMATS[image_format]
    return extension, media_type, width, height


def _describe(image_ref: str, data: bytes) -> AssetInfo:
    _, media_type, width, height = inspect_image(data)
    return AssetInfo(
        image_ref=image_ref,
        media_type=media_type,
        byte_size=len(data),
        width=width,
        height=height,
    )


def _new_asset(owner_id: str, data: bytes) -> AssetInfo:
    extension, media_type, width, height = inspect_image(data)
    digest = hashlib.sha256(data).hexdigest()[:32]
    return AssetInfo(
        image_ref=f"{owner_prefix(owner_id)}/{digest}.{extension}",
        media_type=media_type,
        byte_size=len(data),
        width=width,
        height=height,
    )


def _require_owned(owner_id: str, image_ref: str) -> None:
    match = _ASSET_REF.match(image_ref)
    if match is None:
        raise NotFoundError(f"Asset '{image_ref}' not found.")
    if match.group(1) != owner_prefix(owner_id):
        raise AuthorizationError(
            f"User '{owner_id}' may not access asset '{image_ref}'."
        )


class AssetLibrary(Protocol):
    def load(self, image_ref: str) -> Optional[bytes]: ...

    def store(self, owner_id: str, data: bytes) -> AssetInfo: ...

    def read(self, owner_id: str, image_ref: str) -> Tuple[bytes, AssetInfo]: ...

    def list(self, owner_id: str) -> List[AssetInfo]: ...

    def delete(self, owner_id: str, image_ref: str) -> None: ...


class InMemoryAssetLibrary:
    def __init__(self) -> None:
        self._assets: Dict[str, Tuple[bytes, AssetInfo]] = {}
        self._lock = threading.Lock()

    def load(self, image_ref: str) -> Optional[bytes]:
        with self._lock:
            entry = self._assets.get(image_ref)
        return entry[0] if entry else None

    def store(self, owner_id: str, data: bytes) -> AssetInfo:
        info = _new_asset(owner_id, data)
        with self._lock:
            self._assets[info.image_ref] = (data, info)
        return info

    def read(self, owner_id: str, image_ref: str) -> Tuple[bytes, AssetInfo]:
        _require_owned(owner_id, image_ref)
        with self._lock:
            entry = self._assets.get(image_ref)
        if entry is None:
            raise NotFoundError(f"Asset '{image_ref}' not found.")
        return entry

    def list(self, owner_id: str) -> List[AssetInfo]:
        prefix = owner_prefix(owner_id) + "/"
        with self._lock:
            return sorted(
                (info for ref, (_, info) in self._assets.items() if ref.startswith(prefix)),
                key=lambda info: info.image_ref,
            )

    def delete(self, owner_id: str, image_ref: str) -> None:
        _require_owned(owner_id, image_ref)
        with self._lock:
            if self._assets.pop(image_ref, None) is None:
                raise NotFoundError(f"Asset '{image_ref}' not found.")


class FilesystemAssetLibrary(FilesystemAssetSource):
    """
    Asset files under a root directory.

    Files placed in the root by hand stay loadable by relative path;
    only uploaded assets are listed, read back or deleted.
    """

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self._lock = threading.Lock()
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(
                f"Assets directory is not usable: {self._root}: {exc}"
            ) from exc

    def _path(self, image_ref: str) -> Path:
        path = (self._root / image_ref).resolve()
        if not path.is_relative_to(self._root):
            raise NotFoundError(f"Asset '{image_ref}' not found.")
        return path

    def store(self, owner_id: str, data: bytes) -> AssetInfo:
        info = _new_asset(owner_id, data)
        path = self._path(info.image_ref)

        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
                try:
                    with os.fdopen(fd, "wb") as fh:
                        fh.write(data)
                        fh.flush()
                        os.fsync(fh.fileno())
                    os.replace(tmp_name, path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as exc:
                logger.error(
                    "asset_write_failed",
                    extra={"image_ref": info.image_ref, "error": str(exc)},
                )
                raise PersistenceError(f"Failed to store asset: {exc}") from exc
        return info

    def read(self, owner_id: str, image_ref: str) -> Tuple[bytes, AssetInfo]:
        _require_owned(owner_id, image_ref)
        try:
            data = self._path(image_ref).read_bytes()
        except FileNotFoundError:
            raise NotFoundError(f"Asset '{image_ref}' not found.") from None
        except OSError as exc:
            raise PersistenceError(f"Failed to read asset: {exc}") from exc
        return data, _describe(image_ref, data)

    def list(self, owner_id: str) -> List[AssetInfo]:
        prefix = owner_prefix(owner_id)
        owner_dir = self._root / prefix
        try:
            paths = sorted(owner_dir.glob("*.*")) if owner_dir.is_dir() else []
        except OSError as exc:
            raise PersistenceError(f"Failed to list assets: {exc}") from exc

        assets = []
        for path in paths:
            image_ref = f"{prefix}/{path.name}"
            if not _ASSET_REF.match(image_ref):
                continue
            try:
                with Image.open(path) as img:
                    width, height = img.size
                byte_size = path.stat().st_size
            except (UnidentifiedImageError, OSError) as exc:
                logger.warning(
                    "asset_unreadable",
                    extra={"image_ref": image_ref, "error": str(exc)},
                )
                continue
            assets.append(
                AssetInfo(
                    image_ref=image_ref,
                    media_type=_MEDIA_TYPES[path.suffix.lstrip(".")],
                    byte_size=byte_size,
                    width=width,
                    height=height,
                )
            )
        return assets

    def delete(self, owner_id: str, image_ref: str) -> None:
        _require_owned(owner_id, image_ref)
        with self._lock:
            try:
                self._path(image_ref).unlink()
            except FileNotFoundError:
                raise NotFoundError(f"Asset '{image_ref}' not found.") from None
            except OSError as exc:
                raise PersistenceError(f"Failed to delete asset: {exc}") from exc
