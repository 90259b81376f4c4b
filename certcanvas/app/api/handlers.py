"""
Translation of pipeline errors into HTTP responses.

Every error body carries the machine-readable ``kind`` so the UI can
tell a stale save from a closed export gate without parsing messages.
"""

import logging
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse

from certcanvas.app.errors import CanvasPipelineError, PersistenceError

logger = logging.getLogger("certcanvas.api")

STATUS_BY_KIND: Dict[str, int] = {
    "validation_error": 422,
    "stale_save": 409,
    "already_verified": 409,
    "export_not_allowed": 409,
    "persistence_error": 503,
    "not_found": 404,
    "forbidden": 403,
    "unauthenticated": 401,
    "export_failed": 500,
}


async def pipeline_error_handler(
    request: Request,
    exc: CanvasPipelineError,
) -> ORJSONResponse:
    status_code = STATUS_BY_KIND.get(exc.kind, 500)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "request_rejected",
        extra={
            "path": request.url.path,
            "kind": exc.kind,
            "status_code": status_code,
        },
    )
    headers = {"Retry-After": "1"} if isinstance(exc, PersistenceError) else None
    return ORJSONResponse(
        status_code=status_code,
        content=exc.to_dict(),
        headers=headers,
    )


async def request_validation_handler(
    request: Request,
    exc: RequestValidationError,
) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=422,
        content={
            "kind": "validation_error",
            "message": "Validation failed: malformed request",
            "errors": [
                {
                    "field": ".".join(
                        str(part) for part in err["loc"] if part != "body"
                    ),
                    "message": err["msg"],
                }
                for err in exc.errors()
            ],
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CanvasPipelineError, pipeline_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
