"""
Image asset endpoints.

Uploaded images are private to the uploader. The returned ``image_ref``
is what image elements put in their ``image_ref`` field.
"""

from typing import Annotated, List

from fastapi import APIRouter, Depends, File, UploadFile, status
from fastapi.responses import Response

from certcanvas.app.api.deps import get_caller_identity, get_pipeline
from certcanvas.app.coordinator.pipeline import CertificatePipeline
from certcanvas.app.errors import ValidationError
from certcanvas.app.schemas.records import AssetInfo, CallerIdentity

router = APIRouter(tags=["Assets"])

Caller = Annotated[CallerIdentity, Depends(get_caller_identity)]
Pipeline = Annotated[CertificatePipeline, Depends(get_pipeline)]


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=AssetInfo,
    summary="Upload a PNG, JPEG, GIF or WebP image",
)
async def upload_asset(
    file: Annotated[UploadFile, File()],
    pipeline: Pipeline,
    caller: Caller,
) -> AssetInfo:
    limit = pipeline.settings.max_asset_bytes
    # Read one byte past the limit so oversized uploads are detected
    # without buffering them whole.
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise ValidationError.for_field(
            "file", f"upload must not exceed {limit} bytes"
        )
    return await pipeline.upload_asset(caller, data)


@router.get("", response_model=List[AssetInfo])
async def list_assets(
    pipeline: Pipeline,
    caller: Caller,
) -> List[AssetInfo]:
    return await pipeline.list_assets(caller)


@router.get(
    "/{image_ref:path}",
    response_class=Response,
    responses={200: {"content": {"image/*": {}}}},
)
async def read_asset(
    image_ref: str,
    pipeline: Pipeline,
    caller: Caller,
) -> Response:
    data, info = await pipeline.read_asset(caller, image_ref)
    return Response(content=data, media_type=info.media_type)


@router.delete(
    "/{image_ref:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
async def delete_asset(
    image_ref: str,
    pipeline: Pipeline,
    caller: Caller,
) -> Response:
    await pipeline.delete_asset(caller, image_ref)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
