"""Batch jobs API router."""

import logging
import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import ValidationError
from sqlalchemy.orm import Session

from docbatch.api.owner import get_owner_id
from docbatch.db import get_session
from docbatch.deps import get_job_store, get_merger, get_quota_guard, get_scheduler
from docbatch.models.batch_output import BatchOutput
from docbatch.schemas.batch import (
    AdmissionDecision,
    BatchFileSummary,
    BatchJobDetail,
    EstimateRequest,
    JobSubmitOptions,
    MergeRequest,
    MergeResponse,
    QueueEntry,
)
from docbatch.services.merger import NothingToMergeError, NotReadyError, OutputMerger
from docbatch.services.quota import AdmissionDenied, QuotaGuard, estimate_pages
from docbatch.services.scheduler import Scheduler
from docbatch.services.store import InvalidTransitionError, JobStore, NotFoundError
from docbatch.services.types import UploadedFile

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_merge_response(output: BatchOutput) -> MergeResponse:
    return MergeResponse(
        output_id=output.id,
        format=output.format,  # type: ignore[arg-type]
        filename=output.filename,
        byte_size=output.byte_size,
        download_token=output.download_token,
        download_url=f"/downloads/{output.download_token}",
        expires_at=output.expires_at,
    )


@router.post("", status_code=201)
def submit_job(
    files: list[UploadFile] = File(...),
    name: str = Form(...),
    description: str | None = Form(default=None),
    priority: int = Form(default=5),
    merge_requested: bool = Form(default=False),
    merge_format: str | None = Form(default=None),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, BatchJobDetail]:
    """Upload 1-100 files as one batch job."""
    try:
        options = JobSubmitOptions(
            name=name,
            description=description,
            priority=priority,
            merge_requested=merge_requested,
            merge_format=merge_format or None,  # type: ignore[arg-type]
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=422, detail=exc.errors(include_url=False, include_context=False)
        ) from exc

    uploads = [
        UploadedFile(filename=upload.filename or f"file-{i + 1}", data=upload.file.read())
        for i, upload in enumerate(files)
    ]
    try:
        job = store.create_job(owner_id, options, uploads, db)
    except AdmissionDenied as exc:
        raise HTTPException(
            status_code=403,
            detail={"message": str(exc), "decision": exc.decision.model_dump()},
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"job": BatchJobDetail.model_validate(job)}


@router.get("")
def list_jobs(
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, list[BatchJobDetail]]:
    jobs = store.list_jobs(owner_id, db)
    return {"jobs": [BatchJobDetail.model_validate(j) for j in jobs]}


@router.get("/queue")
def pending_queue(
    limit: int = 10,
    db: Session = Depends(get_session),
    scheduler: Scheduler = Depends(get_scheduler),
) -> dict[str, list[QueueEntry]]:
    """Jobs with unclaimed files, in the order the workers will serve them."""
    return {"queue": scheduler.list_pending_jobs(db, limit=max(1, min(limit, 100)))}


@router.post("/estimate")
def estimate(
    body: EstimateRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    quota: QuotaGuard = Depends(get_quota_guard),
) -> AdmissionDecision:
    """Admission decision for a prospective upload, without creating anything."""
    if any(size < 0 for size in body.file_sizes):
        raise HTTPException(status_code=422, detail="file sizes must be non-negative")
    pages = sum(estimate_pages(size) for size in body.file_sizes)
    return quota.check(owner_id, pages, db)


@router.get("/{job_id}")
def get_job(
    job_id: uuid.UUID,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, BatchJobDetail]:
    try:
        job = store.get_job(job_id, db, owner_id=owner_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"job": BatchJobDetail.model_validate(job)}


@router.get("/{job_id}/files")
def list_files(
    job_id: uuid.UUID,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, list[BatchFileSummary]]:
    try:
        files = store.list_files(job_id, db, owner_id=owner_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"files": [BatchFileSummary.model_validate(f) for f in files]}


@router.post("/{job_id}/files/{file_id}/retry")
def retry_file(
    job_id: uuid.UUID,
    file_id: uuid.UUID,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, BatchFileSummary]:
    """Put a failed file back in the queue."""
    try:
        batch_file = store.retry_file(job_id, file_id, db, owner_id=owner_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"file": BatchFileSummary.model_validate(batch_file)}


@router.post("/{job_id}/cancel")
def cancel_job(
    job_id: uuid.UUID,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, BatchJobDetail]:
    try:
        job = store.cancel_job(job_id, db, owner_id=owner_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"job": BatchJobDetail.model_validate(job)}


@router.delete("/{job_id}", status_code=204)
def delete_job(
    job_id: uuid.UUID,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> None:
    try:
        store.delete_job(job_id, db, owner_id=owner_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{job_id}/merge")
def merge_job(
    job_id: uuid.UUID,
    body: MergeRequest | None = None,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_session),
    merger: OutputMerger = Depends(get_merger),
) -> dict[str, MergeResponse]:
    """Merge the job's completed files and return a time-limited download link."""
    fmt = body.format if body is not None else None
    try:
        output = merger.merge(job_id, fmt, db, owner_id=owner_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (NotReadyError, NothingToMergeError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return {"output": _to_merge_response(output)}
