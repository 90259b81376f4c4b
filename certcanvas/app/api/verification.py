"""
Public certificate verification endpoint.

This is the target of every verification URL printed on an exported
certificate. It requires no caller identity and never raises for an
unknown identifier: third parties always receive a valid/invalid
verdict.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from certcanvas.app.api.deps import get_pipeline
from certcanvas.app.coordinator.pipeline import CertificatePipeline
from certcanvas.app.schemas.status import VerificationLookup

router = APIRouter(tags=["Verification"])


@router.get(
    "/{verification_id}",
    response_model=VerificationLookup,
    summary="Check whether a certificate is authentic",
)
async def verify_certificate(
    verification_id: str,
    pipeline: Annotated[CertificatePipeline, Depends(get_pipeline)],
) -> VerificationLookup:
    return pipeline.lookup(verification_id)
