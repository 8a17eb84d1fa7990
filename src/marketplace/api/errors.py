"""Mapping of marketplace errors to HTTP responses.

Every error body has the shape ``{"error": {"code", "kind", "message"}}``.
Admin routes also see the stage that failed. Internal errors never expose
their message.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from protean.exceptions import ExpectedVersionError
from protean.exceptions import ValidationError as ProteanValidationError

from marketplace.errors import ErrorKind, MarketplaceError, from_protean

logger = structlog.get_logger(__name__)

HTTP_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UPSTREAM_FAILURE: 503,
    ErrorKind.INTERNAL: 500,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
}

_INTERNAL_BODY = {
    "code": ErrorKind.INTERNAL.value,
    "kind": ErrorKind.INTERNAL.value,
    "message": "An unexpected error occurred",
}


def _is_admin_route(request: Request) -> bool:
    return request.url.path.startswith("/admin")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MarketplaceError)
    async def handle_marketplace_error(request: Request, exc: MarketplaceError) -> JSONResponse:
        status_code = HTTP_STATUS.get(exc.kind, 500)
        if exc.kind is ErrorKind.INTERNAL:
            logger.error("Internal error", path=request.url.path, code=exc.code, error=exc.message, stage=exc.stage)
            body = dict(_INTERNAL_BODY)
            if _is_admin_route(request) and exc.stage:
                body["stage"] = exc.stage
            return JSONResponse(status_code=status_code, content={"error": body})

        if exc.kind is ErrorKind.UPSTREAM_FAILURE:
            logger.warning("Upstream failure", path=request.url.path, code=exc.code, stage=exc.stage)
        else:
            logger.info("Request rejected", path=request.url.path, code=exc.code, kind=exc.kind.value)
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.to_dict(include_stage=_is_admin_route(request))},
        )

    @app.exception_handler(ProteanValidationError)
    @app.exception_handler(ExpectedVersionError)
    async def handle_protean_error(request: Request, exc: Exception) -> JSONResponse:
        """Field validation and stale writes raised outside the stage runner."""
        return await handle_marketplace_error(request, from_protean(exc))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error", path=request.url.path, error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content={"error": dict(_INTERNAL_BODY)})
