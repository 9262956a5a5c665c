"""Worker control API router: start/stop the extraction loop and run cleanup on demand."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from docbatch.config import Settings
from docbatch.db import get_session
from docbatch.deps import (
    get_extraction_worker,
    get_job_store,
    get_scheduler,
    get_settings,
    get_token_service,
)
from docbatch.schemas.batch import SweepResult, WorkerStatus
from docbatch.services import reaper, worker
from docbatch.services.scheduler import Scheduler
from docbatch.services.store import JobStore
from docbatch.services.tokens import TokenService
from docbatch.services.worker import ExtractionWorker

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/start", status_code=202)
def start_worker(
    extraction_worker: ExtractionWorker = Depends(get_extraction_worker),
    settings: Settings = Depends(get_settings),
) -> dict[str, WorkerStatus]:
    """Start the background extraction loop. No-op if it is already running."""
    status = worker.start_loop(extraction_worker, poll_seconds=settings.worker_poll_seconds)
    return {"worker": status}


@router.post("/stop")
def stop_worker() -> dict[str, WorkerStatus]:
    return {"worker": worker.stop_loop()}


@router.get("/status")
def worker_status() -> dict[str, WorkerStatus | bool]:
    return {"worker": worker.get_status(), "reaper_running": reaper.is_running()}


@router.post("/sweep")
def run_sweep(
    db: Session = Depends(get_session),
    tokens: TokenService = Depends(get_token_service),
    scheduler: Scheduler = Depends(get_scheduler),
    store: JobStore = Depends(get_job_store),
    settings: Settings = Depends(get_settings),
) -> dict[str, SweepResult]:
    """Reap expired outputs and release abandoned claims now."""
    result = reaper.sweep(db, tokens, scheduler, store, settings.claim_timeout_seconds)
    return {"sweep": result}
