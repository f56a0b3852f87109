"""Translate domain errors into HTTP responses."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clients.couchbase import TransactionConflict
from models.errors import NotFound, NotOrderParty, RescueError
from utils import log

logger = log.get_logger(__name__)


def _status_for(exc: RescueError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, NotOrderParty):
        return 403
    # Validation and precondition failures
    return 400


async def rescue_error_handler(request: Request, exc: RescueError) -> JSONResponse:
    status_code = _status_for(exc)
    logger.info(f"{request.method} {request.url.path} -> {status_code} {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})


async def conflict_error_handler(request: Request, exc: TransactionConflict) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} -> 503 after write conflicts: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "Conflict", "detail": "The order is busy, please retry."},
        headers={"Retry-After": "1"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RescueError, rescue_error_handler)
    app.add_exception_handler(TransactionConflict, conflict_error_handler)
