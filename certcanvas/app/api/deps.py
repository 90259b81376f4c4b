import logging
from typing import Annotated, Optional

from fastapi import Header, Request

from certcanvas.app.coordinator.pipeline import CertificatePipeline
from certcanvas.app.errors import AuthenticationError
from certcanvas.app.schemas.records import CallerIdentity

logger = logging.getLogger("certcanvas.api")


# =============================================================================
# Dependency providers
# =============================================================================

def get_caller_identity(
    x_user_id: Annotated[
        Optional[str],
        Header(description="Authenticated user id set by the auth proxy"),
    ] = None,
) -> CallerIdentity:
    """
    Resolve the caller supplied by the authentication collaborator.

    Authentication itself happens upstream; this service only requires
    that an identity is present and well formed.
    """
    user_id = (x_user_id or "").strip()
    if not user_id or len(user_id) > 128:
        raise AuthenticationError("Missing or invalid X-User-Id header.")
    return CallerIdentity(user_id=user_id)


def get_pipeline(request: Request) -> CertificatePipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise RuntimeError("pipeline not initialized")
    return pipeline
