"""FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logging.basicConfig(level=logging.INFO, format=_LOG_FORMAT, datefmt="%H:%M:%S")

# Apply the same format to Uvicorn's loggers so they also show timestamps.
for _uvicorn_logger in ("uvicorn", "uvicorn.error", "uvicorn.access"):
    _log = logging.getLogger(_uvicorn_logger)
    _log.handlers.clear()
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%H:%M:%S"))
    _log.addHandler(_handler)
    _log.propagate = False

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from docbatch.db import create_tables  # noqa: E402
from docbatch.deps import get_settings, run_sweep  # noqa: E402
from docbatch.schemas.batch import ErrorResponse  # noqa: E402
from docbatch.services import reaper, worker  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    create_tables()
    settings = get_settings()
    if settings.reaper_enabled:
        reaper.start(run_sweep, settings.reaper_interval_seconds)
    yield
    worker.stop_loop()
    reaper.stop()


app = FastAPI(title="DocBatch", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Import here to avoid circular imports at module level.
    from docbatch.services.blobs import BlobStorageError
    from docbatch.services.merger import NothingToMergeError, NotReadyError
    from docbatch.services.quota import AdmissionDenied
    from docbatch.services.store import InvalidTransitionError, NotFoundError
    from docbatch.services.tokens import TokenExpiredError, TokenNotFoundError

    if isinstance(exc, AdmissionDenied):
        return _error(403, "quota_exceeded", exc)
    if isinstance(exc, (NotFoundError, TokenNotFoundError)):
        return _error(404, "not_found", exc)
    if isinstance(exc, TokenExpiredError):
        return _error(410, "expired", exc)
    if isinstance(exc, (InvalidTransitionError, NotReadyError, NothingToMergeError)):
        return _error(409, "conflict", exc)
    if isinstance(exc, BlobStorageError):
        return _error(502, "storage_error", exc)
    if isinstance(exc, ValueError):
        return _error(422, "invalid_request", exc)
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", exc)


# Import and register routers after app is defined to avoid circular imports.
from docbatch.api import downloads, jobs  # noqa: E402
from docbatch.api import worker as worker_api  # noqa: E402

app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
app.include_router(downloads.router, prefix="/downloads", tags=["downloads"])
app.include_router(worker_api.router, prefix="/worker", tags=["worker"])
