"""
Canvas editing and pipeline endpoints.

Every route acts on behalf of the caller identified by the X-User-Id
header and only on sessions that caller owns. Element edits are applied
to the live session; save, verify and export are delegated to the
pipeline coordinator, which owns all gating decisions.
"""

import logging
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field

from certcanvas.app.api.deps import get_caller_identity, get_pipeline
from certcanvas.app.canvas.session import CanvasSession
from certcanvas.app.coordinator.pipeline import CertificatePipeline
from certcanvas.app.schemas.canvas import CanvasDesign
from certcanvas.app.schemas.records import (
    CallerIdentity,
    ExportLogEntry,
    SaveRecord,
    VerificationRecord,
)
from certcanvas.app.schemas.status import PipelineStatus

logger = logging.getLogger("certcanvas.api")

router = APIRouter(tags=["Canvases"])

Caller = Annotated[CallerIdentity, Depends(get_caller_identity)]
Pipeline = Annotated[CertificatePipeline, Depends(get_pipeline)]


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------


class CreateCanvasRequest(BaseModel):
    width: Optional[int] = Field(None, gt=0, le=10_000)
    height: Optional[int] = Field(None, gt=0, le=10_000)
    background: str = Field("#ffffff", pattern=r"^#[0-9a-fA-F]{6}$")

    model_config = ConfigDict(extra="forbid")


class SaveRequest(BaseModel):
    title: str

    model_config = ConfigDict(extra="forbid")


class VerifyRequest(BaseModel):
    save_id: str
    author_name: str
    authorized_date: str = Field(..., description="ISO date, YYYY-MM-DD")

    model_config = ConfigDict(extra="forbid")


class CanvasView(BaseModel):
    session_id: str
    owner_id: str
    updated_at: datetime
    design: CanvasDesign
    status: PipelineStatus


class CanvasListItem(BaseModel):
    session_id: str
    updated_at: datetime
    elements: int
    status: PipelineStatus


def _view(pipeline: CertificatePipeline, session: CanvasSession) -> CanvasView:
    return CanvasView(
        session_id=session.session_id,
        owner_id=session.owner_id,
        updated_at=session.updated_at,
        design=session.design,
        status=pipeline.status(session),
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=CanvasView,
    summary="Open a new, empty canvas",
)
async def create_canvas(
    pipeline: Pipeline,
    caller: Caller,
    body: Annotated[Optional[CreateCanvasRequest], Body()] = None,
) -> CanvasView:
    body = body or CreateCanvasRequest()
    session = await pipeline.create_session(
        caller,
        width=body.width,
        height=body.height,
        background=body.background,
    )
    return _view(pipeline, session)


@router.get(
    "",
    response_model=List[CanvasListItem],
    summary="List the caller's canvases, live and saved",
)
async def list_canvases(
    pipeline: Pipeline,
    caller: Caller,
) -> List[CanvasListItem]:
    return [
        CanvasListItem(
            session_id=session.session_id,
            updated_at=session.updated_at,
            elements=len(session.design.elements),
            status=pipeline.status(session),
        )
        for session in await pipeline.list_sessions(caller)
    ]


@router.get("/{session_id}", response_model=CanvasView)
async def get_canvas(
    session_id: str,
    pipeline: Pipeline,
    caller: Caller,
) -> CanvasView:
    session = await pipeline.get_session(session_id, caller)
    return _view(pipeline, session)


@router.delete(
    "/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Delete a canvas; issued verification links stay valid",
)
async def delete_canvas(
    session_id: str,
    pipeline: Pipeline,
    caller: Caller,
) -> Response:
    await pipeline.delete_session(session_id, caller=caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{session_id}/reload",
    response_model=CanvasView,
    summary="Discard unsaved edits and reload the current save",
)
async def reload_canvas(
    session_id: str,
    pipeline: Pipeline,
    caller: Caller,
) -> CanvasView:
    session = await pipeline.reload(session_id, caller=caller)
    return _view(pipeline, session)


# ---------------------------------------------------------------------------
# Element edits
# ---------------------------------------------------------------------------


@router.post(
    "/{session_id}/elements",
    status_code=status.HTTP_201_CREATED,
    response_model=CanvasView,
)
async def add_element(
    session_id: str,
    element: Annotated[Dict[str, Any], Body()],
    pipeline: Pipeline,
    caller: Caller,
) -> CanvasView:
    session = await pipeline.get_session(session_id, caller)
    session.add_element(element)
    return _view(pipeline, session)


@router.patch("/{session_id}/elements/{element_id}", response_model=CanvasView)
async def update_element(
    session_id: str,
    element_id: str,
    changes: Annotated[Dict[str, Any], Body()],
    pipeline: Pipeline,
    caller: Caller,
) -> CanvasView:
    session = await pipeline.get_session(session_id, caller)
    session.update_element(element_id, changes)
    return _view(pipeline, session)


@router.delete("/{session_id}/elements/{element_id}", response_model=CanvasView)
async def remove_element(
    session_id: str,
    element_id: str,
    pipeline: Pipeline,
    caller: Caller,
) -> CanvasView:
    session = await pipeline.get_session(session_id, caller)
    session.remove_element(element_id)
    return _view(pipeline, session)


# ---------------------------------------------------------------------------
# Save → verify → export
# ---------------------------------------------------------------------------


@router.post(
    "/{session_id}/save",
    status_code=status.HTTP_201_CREATED,
    response_model=SaveRecord,
)
async def save_canvas(
    session_id: str,
    body: SaveRequest,
    pipeline: Pipeline,
    caller: Caller,
) -> SaveRecord:
    session = await pipeline.get_session(session_id, caller)
    return await pipeline.save(session, title=body.title, caller=caller)


@router.post(
    "/{session_id}/verify",
    response_model=VerificationRecord,
    summary="Bind the current save to an author and a verification link",
)
async def verify_canvas(
    session_id: str,
    body: VerifyRequest,
    pipeline: Pipeline,
    caller: Caller,
) -> VerificationRecord:
    session = await pipeline.get_session(session_id, caller)
    save_record = pipeline.resolve_save(session, body.save_id)
    return await pipeline.verify(
        session,
        save_record=save_record,
        author_name=body.author_name,
        authorized_date=body.authorized_date,
        caller=caller,
    )


@router.get("/{session_id}/status", response_model=PipelineStatus)
async def canvas_status(
    session_id: str,
    pipeline: Pipeline,
    caller: Caller,
) -> PipelineStatus:
    session = await pipeline.get_session(session_id, caller)
    return pipeline.status(session)


@router.post(
    "/{session_id}/export",
    response_class=Response,
    responses={
        200: {
            "content": {"image/png": {}, "application/pdf": {}},
            "description": "Exported certificate",
        },
        409: {"description": "Export gate closed"},
    },
)
async def export_canvas(
    session_id: str,
    pipeline: Pipeline,
    caller: Caller,
    export_format: Annotated[
        str,
        Query(alias="format", description="png or pdf"),
    ] = "png",
) -> Response:
    session = await pipeline.get_session(session_id, caller)
    artifact = await pipeline.export(
        session, export_format=export_format, caller=caller
    )
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={
            "Content-Disposition": (
                f'attachment; filename="{artifact.filename}"'
            ),
            "X-Verification-Url": artifact.verification_url,
            "X-Verification-Id": artifact.verification_id,
            "X-Content-Hash": artifact.content_hash,
            "X-Export-Format": artifact.format,
        },
    )


@router.get("/{session_id}/exports", response_model=List[ExportLogEntry])
async def list_exports(
    session_id: str,
    pipeline: Pipeline,
    caller: Caller,
) -> List[ExportLogEntry]:
    session = await pipeline.get_session(session_id, caller)
    return pipeline.export_history(session)
