"""Global error handlers: consistent JSON error responses."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from questline.errors import InconsistentLedger, QuestlineError

logger = structlog.get_logger()


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(QuestlineError)
    async def questline_error_handler(request: Request, exc: QuestlineError) -> JSONResponse:
        """Render domain errors as ``{"detail", "code"}``."""
        if isinstance(exc, InconsistentLedger):
            # Operator-only incident; end users get a generic failure.
            logger.error(
                "ledger_inconsistency",
                path=request.url.path,
                method=request.method,
                error=str(exc),
            )
        else:
            logger.info("domain_error", path=request.url.path, code=exc.code, error=str(exc))
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.public_message or str(exc), "code": exc.code},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": "Validation error", "errors": exc.errors()},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; always return JSON."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
