"""Process-wide service instances, built lazily from Settings.

FastAPI routes receive these through Depends(); tests swap them with
app.dependency_overrides.
"""

from functools import lru_cache

from docbatch.config import Settings, load_settings
from docbatch.db import get_session_factory
from docbatch.schemas.batch import SweepResult
from docbatch.services.blobs import BlobStore, get_blob_store
from docbatch.services.extraction import ExtractionAdapter, get_extractor
from docbatch.services.merger import OutputMerger
from docbatch.services.quota import QuotaGuard
from docbatch.services.reaper import sweep
from docbatch.services.scheduler import Scheduler
from docbatch.services.store import JobStore
from docbatch.services.tokens import TokenService
from docbatch.services.worker import ExtractionWorker


@lru_cache
def get_settings() -> Settings:
    return load_settings()


@lru_cache
def get_blob_store_instance() -> BlobStore:
    return get_blob_store(get_settings())


@lru_cache
def get_quota_guard() -> QuotaGuard:
    return QuotaGuard()


@lru_cache
def get_job_store() -> JobStore:
    return JobStore(get_blob_store_instance(), get_quota_guard())


@lru_cache
def get_scheduler() -> Scheduler:
    return Scheduler()


@lru_cache
def get_merger() -> OutputMerger:
    return OutputMerger(get_blob_store_instance(), ttl_hours=get_settings().output_ttl_hours)


@lru_cache
def get_token_service() -> TokenService:
    return TokenService(get_blob_store_instance())


@lru_cache
def get_extraction_adapter() -> ExtractionAdapter:
    settings = get_settings()
    return ExtractionAdapter(
        get_extractor(settings),
        get_blob_store_instance(),
        get_job_store(),
        max_attempts=settings.extraction_max_attempts,
    )


@lru_cache
def get_extraction_worker() -> ExtractionWorker:
    return ExtractionWorker(
        get_scheduler(),
        get_extraction_adapter(),
        get_session_factory(),
        concurrency=get_settings().worker_concurrency,
    )


def run_sweep() -> SweepResult:
    """One reaper pass in a fresh session; used by the periodic reaper thread."""
    db = get_session_factory()()
    try:
        return sweep(
            db,
            get_token_service(),
            get_scheduler(),
            get_job_store(),
            get_settings().claim_timeout_seconds,
        )
    finally:
        db.close()
