"""
Centralized configuration management for the certificate canvas service.

Pydantic v2 settings management to enforce strict validation and
fast-failure on invalid configuration. Settings are read once from the
environment (prefix ``CERTCANVAS_``) and are immutable afterwards.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# -------------------------------------------------------------------------
# Reusable Type Aliases
# -------------------------------------------------------------------------

CanvasDimension = Annotated[
    int,
    Field(gt=0, le=10_000, description="Canvas size in editor pixels"),
]


# -------------------------------------------------------------------------
# Settings Model
# -------------------------------------------------------------------------

class Settings(BaseSettings):
    """
    Application settings parsed from the environment.

    Fails fast at startup if a value is malformed or if the filesystem
    storage backend is selected without a storage directory.
    """

    # ---------------------------------------------------------------------
    # Verification links
    # ---------------------------------------------------------------------

    public_base_url: Annotated[
        str,
        Field(
            default="http://localhost:5173",
            description=(
                "Base URL of the public verification page. Verification "
                "URLs are built as {public_base_url}/verify/{id}."
            ),
        ),
    ]

    verification_id_prefix: Annotated[
        str,
        Field(
            default="cert",
            pattern=r"^[a-z0-9]{0,16}$",
            description="Readable prefix prepended to verification ids",
        ),
    ]

    issued_by: Annotated[
        str,
        Field(
            default="Certificate Canvas",
            min_length=1,
            description="Issuer name reported by the public lookup",
        ),
    ]

    # ---------------------------------------------------------------------
    # Input limits
    # ---------------------------------------------------------------------

    max_title_length: Annotated[int, Field(default=150, ge=1, le=1000)]
    max_author_name_length: Annotated[int, Field(default=100, ge=1, le=1000)]

    # ---------------------------------------------------------------------
    # Canvas and export geometry
    # ---------------------------------------------------------------------

    default_canvas_width: CanvasDimension = 800
    default_canvas_height: CanvasDimension = 600

    png_scale: Annotated[
        int,
        Field(
            default=2,
            ge=1,
            le=4,
            description="Raster multiplier applied to the design size",
        ),
    ]

    max_export_pixels: Annotated[
        int,
        Field(
            default=40_000_000,
            ge=1,
            description="Largest PNG export, in pixels including the footer",
        ),
    ]

    # ---------------------------------------------------------------------
    # Storage
    # ---------------------------------------------------------------------

    storage_backend: Literal["memory", "filesystem"] = "memory"

    storage_dir: Annotated[
        Optional[Path],
        Field(
            default=None,
            description="Root directory for the filesystem storage backend",
        ),
    ]

    assets_dir: Annotated[
        Optional[Path],
        Field(
            default=None,
            description=(
                "Directory holding uploaded image assets. Defaults to "
                "storage_dir/assets with the filesystem backend and to "
                "process memory otherwise."
            ),
        ),
    ]

    max_asset_bytes: Annotated[
        int,
        Field(
            default=5 * 1024 * 1024,
            ge=1,
            description="Largest accepted image upload",
        ),
    ]

    # ---------------------------------------------------------------------
    # Observability
    # ---------------------------------------------------------------------

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CERTCANVAS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        frozen=True,
    )

    # ---------------------------------------------------------------------
    # Validators (Pydantic v2)
    # ---------------------------------------------------------------------

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(
                f"public_base_url must be an http(s) URL, got '{v}'"
            )
        return v.rstrip("/")

    @model_validator(mode="after")
    def storage_dir_required_for_filesystem(self) -> "Settings":
        if self.storage_backend == "filesystem" and self.storage_dir is None:
            raise ValueError(
                "storage_backend is 'filesystem' but storage_dir is not "
                "configured."
            )
        return self

    # ---------------------------------------------------------------------
    # Derived values
    # ---------------------------------------------------------------------

    def verification_url(self, verification_id: str) -> str:
        return f"{self.public_base_url}/verify/{verification_id}"


# -------------------------------------------------------------------------
# Settings Dependency Provider
# -------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Dependency injection provider for application settings.

    Uses an explicit singleton pattern within the FastAPI lifecycle.
    """
    return Settings()
