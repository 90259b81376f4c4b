from certcanvas.app.config import Settings

from .assets import AssetLibrary, FilesystemAssetLibrary, InMemoryAssetLibrary
from .filesystem import FilesystemPersistenceStore
from .store import InMemoryPersistenceStore, PersistenceStore


def build_persistence_store(settings: Settings) -> PersistenceStore:
    if settings.storage_backend == "filesystem":
        return FilesystemPersistenceStore(settings.storage_dir)
    return InMemoryPersistenceStore()


def build_asset_library(settings: Settings) -> AssetLibrary:
    if settings.assets_dir is not None:
        return FilesystemAssetLibrary(settings.assets_dir)
    if settings.storage_backend == "filesystem":
        return FilesystemAssetLibrary(settings.storage_dir / "assets")
    return InMemoryAssetLibrary()


__all__ = [
    "AssetLibrary",
    "FilesystemAssetLibrary",
    "InMemoryAssetLibrary",
    "PersistenceStore",
    "InMemoryPersistenceStore",
    "FilesystemPersistenceStore",
    "build_asset_library",
    "build_persistence_store",
]
