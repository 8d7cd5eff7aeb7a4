import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError

from apps.backend.services.errors import EngineError
from apps.backend.utils.envelope import error

log = logging.getLogger("nightlife.errors")


def install_error_handlers(app: FastAPI) -> None:
    """
    Stable error envelopes; stack traces stay in the logs.
    """

    @app.exception_handler(EngineError)
    async def _engine_error(request: Request, exc: EngineError):
        if exc.status_code >= 500:
            log.error(f"[ERROR] {request.method} {request.url.path}: {exc.message}")
        return error(exc.message, code=exc.code, status=exc.status_code, details=exc.details)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        return error("Invalid request", code="invalid_request", status=422, details=jsonable_encoder(exc.errors()))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception(f"[ERROR] unhandled {request.method} {request.url.path}: {exc}")
        return error("Internal server error", code="internal_error", status=500)
