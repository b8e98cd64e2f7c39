"""FastAPI application entry point."""

import logging
import os

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

# Apply the same format to Uvicorn's loggers so they also show timestamps.
for _uvicorn_logger in ("uvicorn", "uvicorn.error", "uvicorn.access"):
    _log = logging.getLogger(_uvicorn_logger)
    _log.handlers.clear()
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"))
    _log.addHandler(_handler)
    _log.propagate = False

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from cellar.db import create_tables
from cellar.schemas.batch import ErrorResponse

logger = logging.getLogger(__name__)

app = FastAPI(title="Cellar")

app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup() -> None:
    create_tables()


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Import here to avoid circular imports at module level.
    from cellar.services.batch_processor import JobConflictError, UnknownJobKindError
    from cellar.services.job_store import JobNotFoundError, NothingToProcessError

    if isinstance(exc, JobNotFoundError):
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="not_found", detail=str(exc)).model_dump(),
        )
    if isinstance(exc, UnknownJobKindError):
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="unknown_job_kind", detail=str(exc)).model_dump(),
        )
    if isinstance(exc, JobConflictError):
        return JSONResponse(
            status_code=409,
            content=ErrorResponse(error="job_conflict", detail=str(exc)).model_dump(),
        )
    if isinstance(exc, NothingToProcessError):
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(error="nothing_to_process", detail=str(exc)).model_dump(),
        )
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="internal_error", detail=str(exc)).model_dump(),
    )


# Import and register routers after app is defined to avoid circular imports.
from cellar.api import batch  # noqa: E402

app.include_router(batch.router, prefix="/batch", tags=["batch"])
