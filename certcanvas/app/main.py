import sys
import logging

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from certcanvas.app.api.assets import router as asset_router
from certcanvas.app.api.canvases import router as canvas_router
from certcanvas.app.api.handlers import register_error_handlers
from certcanvas.app.api.verification import router as verification_router
from certcanvas.app.canvas.registry import SessionRegistry
from certcanvas.app.config import Settings, get_settings
from certcanvas.app.coordinator.pipeline import CertificatePipeline
from certcanvas.app.events import LoggingEventEmitter
from certcanvas.app.persistence import (
    build_asset_library,
    build_persistence_store,
)

logger = logging.getLogger("certcanvas.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source version when the package is not installed.
    """
    try:
        return version("certificate-canvas")
    except PackageNotFoundError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration or the storage root is invalid
    - One persistence store and one session registry per process
    """

    # ------------------------------------------------------------------
    # Load and validate configuration (FAIL FAST)
    # ------------------------------------------------------------------
    settings: Optional[Settings] = getattr(app.state, "settings", None)
    if settings is None:
        try:
            settings = get_settings()
        except Exception:
            logger.exception("invalid_certcanvas_configuration")
            raise
        app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    logger.info(
        "certcanvas_startup_begin",
        extra={
            "version": get_app_version(),
            "storage_backend": settings.storage_backend,
        },
    )

    # ------------------------------------------------------------------
    # Pipeline wiring
    # ------------------------------------------------------------------
    store = build_persistence_store(settings)

    app.state.store = store
    app.state.pipeline = CertificatePipeline(
        settings=settings,
        store=store,
        registry=SessionRegistry(),
        emitter=LoggingEventEmitter(),
        assets=build_asset_library(settings),
    )

    try:
        yield
    finally:
        logger.info("certcanvas_shutdown")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory for the certificate canvas service.

    Passing ``settings`` bypasses environment parsing, which is how
    tests configure isolated instances.
    """
    app = FastAPI(
        title="Certificate Canvas",
        description=(
            "Certificate design service with a gated "
            "save, verify and export pipeline."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    if settings is not None:
        app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "Content-Disposition",
            "X-Verification-Url",
            "X-Verification-Id",
            "X-Content-Hash",
            "X-Export-Format",
        ],
    )

    register_error_handlers(app)
    app.include_router(canvas_router, prefix="/canvases")
    app.include_router(asset_router, prefix="/assets")
    app.include_router(verification_router, prefix="/verify")

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check():
        """
        Verifies that the runtime is alive and correctly initialized.

        NOTE:
        - Does NOT touch the persistence store
        """
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "certcanvas",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "pipeline_ready": hasattr(app.state, "pipeline"),
            }
        )

    return app


app = create_app()
