import io
from pathlib import Path
from typing import Optional

from PIL import Image

from certcanvas.app.canvas.session import CanvasSession
from certcanvas.app.config import Settings
from certcanvas.app.coordinator.pipeline import CertificatePipeline
from certcanvas.app.persistence.store import InMemoryPersistenceStore
from certcanvas.app.schemas.canvas import CanvasElement
from certcanvas.app.schemas.records import CallerIdentity

OWNER = CallerIdentity(user_id="user-alice")
INTRUDER = CallerIdentity(user_id="user-mallory")


# ------------------------------------------------------------------
# Elements
# ------------------------------------------------------------------

def rect(element_id: str = "frame", **overrides) -> CanvasElement:
    data = {
        "element_id": element_id,
        "kind": "shape",
        "shape": "rect",
        "x": 20,
        "y": 20,
        "width": 760,
        "height": 560,
        "style": {"fill": "#fef3c7", "stroke": "#92400e", "stroke_width": 4},
    }
    data.update(overrides)
    return CanvasElement.model_validate(data)


def text(element_id: str = "heading", value: str = "Certificate of Completion", **overrides) -> CanvasElement:
    data = {
        "element_id": element_id,
        "kind": "text",
        "x": 120,
        "y": 80,
        "width": 560,
        "height": 60,
        "text": value,
        "style": {"font_size": 32, "text_color": "#111827"},
    }
    data.update(overrides)
    return CanvasElement.model_validate(data)


def image(element_id: str = "logo", image_ref: str = "logo.png", **overrides) -> CanvasElement:
    data = {
        "element_id": element_id,
        "kind": "image",
        "x": 340,
        "y": 400,
        "width": 120,
        "height": 120,
        "image_ref": image_ref,
    }
    data.update(overrides)
    return CanvasElement.model_validate(data)


def png_bytes(size=(8, 8), color="#1d4ed8", mode="RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


# ------------------------------------------------------------------
# Sessions and pipelines
# ------------------------------------------------------------------

def make_settings(**overrides) -> Settings:
    values = {
        "public_base_url": "https://certs.example.org",
        "verification_id_prefix": "cert",
        "issued_by": "Example Academy",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_pipeline(
    settings: Optional[Settings] = None,
    store=None,
    **kwargs,
) -> CertificatePipeline:
    return CertificatePipeline(
        settings=settings or make_settings(),
        store=store if store is not None else InMemoryPersistenceStore(),
        **kwargs,
    )


def designed_session(
    session_id: str = "session-1",
    owner: CallerIdentity = OWNER,
) -> CanvasSession:
    """A session holding a small, saveable certificate design."""
    session = CanvasSession(session_id=session_id, owner_id=owner.user_id)
    session.add_element(rect())
    session.add_element(text())
    return session


def write_asset(directory: Path, name: str = "logo.png") -> Path:
    path = directory / name
    path.write_bytes(png_bytes())
    return path
