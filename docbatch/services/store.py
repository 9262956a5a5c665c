"""Job/file store: durable batch job records and every file state transition.

All writes that touch a job's files go through job_lock(), which serialises them per job
and runs the progress recomputation inside the same transaction, so two files finishing
at once can never both recount from a stale sibling snapshot.
"""

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.orm import Session

from docbatch.db import utcnow
from docbatch.models.batch_file import BatchFile
from docbatch.models.batch_job import BatchJob
from docbatch.models.batch_output import BatchOutput
from docbatch.schemas.batch import JobSubmitOptions
from docbatch.services.blobs import BlobStorageError, BlobStore
from docbatch.services.progress import recompute
from docbatch.services.quota import QuotaGuard, estimate_pages
from docbatch.services.types import FileOutcome, UploadedFile

logger = logging.getLogger(__name__)

MAX_FILES_PER_JOB = 100
MAX_FILE_BYTES = 50 * 1024 * 1024


class NotFoundError(Exception):
    """Raised when the requested job or file does not exist (or belongs to someone else)."""


class InvalidTransitionError(Exception):
    """Raised when a requested status change is not allowed from the current state."""


# ── Per-job critical sections ─────────────────────────────────────────────────

# Fixed lock stripes keyed by job id. job_lock() is never nested, so two jobs sharing a
# stripe only wait on each other.
JOB_LOCK_STRIPES = 64
_job_locks = tuple(threading.Lock() for _ in range(JOB_LOCK_STRIPES))


def _lock_for(job_id: uuid.UUID) -> threading.Lock:
    return _job_locks[job_id.int % JOB_LOCK_STRIPES]


@contextmanager
def job_lock(job_id: uuid.UUID, db: Session) -> Iterator[BatchJob]:
    """Serialise writes to one job's files and yield its freshly read, row-locked BatchJob.

    The in-process lock covers threads sharing this engine; SELECT ... FOR UPDATE covers
    other processes on PostgreSQL. Commits on normal exit, rolls back on error.
    """
    with _lock_for(job_id):
        db.expire_all()
        try:
            job = db.query(BatchJob).filter(BatchJob.id == job_id).with_for_update().first()
            if job is None:
                raise NotFoundError(f"Batch job {job_id} not found")
            yield job
            db.commit()
        except BaseException:
            db.rollback()
            raise


def _same_outcome(file: BatchFile, outcome: FileOutcome) -> bool:
    if file.status != outcome.status:
        return False
    if outcome.status == "completed":
        return file.actual_pages == outcome.actual_pages
    return file.error_code == outcome.error_code


def _sibling_files(job_id: uuid.UUID, db: Session) -> list[BatchFile]:
    return (
        db.query(BatchFile)
        .filter(BatchFile.job_id == job_id)
        .order_by(BatchFile.position)
        .populate_existing()
        .all()
    )


class JobStore:
    def __init__(self, blobs: BlobStore, quota: QuotaGuard | None = None) -> None:
        self._blobs = blobs
        self._quota = quota or QuotaGuard()

    # ── Creation ──────────────────────────────────────────────────────────────

    def create_job(
        self,
        owner_id: str,
        options: JobSubmitOptions,
        uploads: list[UploadedFile],
        db: Session,
    ) -> BatchJob:
        """Admit and create a job with one BatchFile per upload.

        The job, its files and the initial aggregate are committed together or not at
        all; stored uploads are removed again if anything fails.
        Raises ValueError on invalid input and AdmissionDenied when over quota.
        """
        if not uploads:
            raise ValueError("a batch job needs at least one file")
        if len(uploads) > MAX_FILES_PER_JOB:
            raise ValueError(f"maximum {MAX_FILES_PER_JOB} files allowed per batch job")
        for upload in uploads:
            if len(upload["data"]) > MAX_FILE_BYTES:
                raise ValueError(
                    f"file too large: {upload['filename']} (maximum {MAX_FILE_BYTES} bytes)"
                )

        estimated = sum(estimate_pages(len(u["data"])) for u in uploads)
        self._quota.admit(owner_id, estimated, db)

        stored_refs: list[str] = []
        try:
            job = BatchJob(
                owner_id=owner_id,
                name=options.name.strip(),
                description=(options.description or "").strip() or None,
                priority=options.priority,
                merge_requested=options.merge_requested,
                merge_format=options.merge_format,
                status="pending",
            )
            db.add(job)
            now = utcnow()
            for position, upload in enumerate(uploads):
                data = upload["data"]
                batch_file = BatchFile(
                    job=job,
                    position=position,
                    original_filename=upload["filename"],
                    file_size=len(data),
                    estimated_pages=estimate_pages(len(data)),
                    status="pending",
                )
                db.add(batch_file)
                if not data:
                    batch_file.status = "skipped"
                    batch_file.error_code = "EMPTY_FILE"
                    batch_file.error_message = "zero-byte upload"
                    batch_file.processing_completed_at = now
                else:
                    ref = self._blobs.put(data, upload["filename"])
                    stored_refs.append(ref)
                    batch_file.source_ref = ref
            db.flush()
            recompute(job, job.files)
            db.commit()
        except Exception:
            db.rollback()
            self._delete_blobs(stored_refs)
            raise
        db.refresh(job)
        logger.info(
            "created job %s for owner %s: %d file(s), %d page(s) estimated, priority %d",
            job.id,
            owner_id,
            job.total_files,
            job.total_pages,
            job.priority,
        )
        return job

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_job(self, job_id: uuid.UUID, db: Session, owner_id: str | None = None) -> BatchJob:
        """Return the job; raise NotFoundError if absent or not owned by *owner_id*."""
        job = db.query(BatchJob).filter(BatchJob.id == job_id).first()
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise NotFoundError(f"Batch job {job_id} not found")
        return job

    def list_jobs(self, owner_id: str, db: Session) -> list[BatchJob]:
        return (
            db.query(BatchJob)
            .filter(BatchJob.owner_id == owner_id)
            .order_by(BatchJob.created_at.desc())
            .all()
        )

    def list_files(
        self, job_id: uuid.UUID, db: Session, owner_id: str | None = None
    ) -> list[BatchFile]:
        self.get_job(job_id, db, owner_id=owner_id)
        return (
            db.query(BatchFile)
            .filter(BatchFile.job_id == job_id)
            .order_by(BatchFile.position)
            .all()
        )

    # ── Transitions ───────────────────────────────────────────────────────────

    def update_file_status(self, file_id: uuid.UUID, outcome: FileOutcome, db: Session) -> BatchFile:
        """Record a terminal processing outcome for *file_id* and recompute its job.

        Re-applying the outcome a file already has is a no-op. A different outcome for a
        file that is already terminal raises InvalidTransitionError.
        """
        if outcome.status not in ("completed", "failed"):
            raise ValueError(f"not a processing outcome: {outcome.status!r}")
        located = db.get(BatchFile, file_id)
        if located is None:
            raise NotFoundError(f"Batch file {file_id} not found")

        with job_lock(located.job_id, db) as job:
            batch_file = db.query(BatchFile).filter(BatchFile.id == file_id).first()
            if batch_file is None:
                raise NotFoundError(f"Batch file {file_id} not found")
            if batch_file.is_terminal:
                if _same_outcome(batch_file, outcome):
                    logger.debug("file %s already %s; ignoring duplicate", file_id, outcome.status)
                    return batch_file
                raise InvalidTransitionError(
                    f"file {file_id} is already {batch_file.status}; cannot mark {outcome.status}"
                )

            now = utcnow()
            batch_file.status = outcome.status
            batch_file.attempts = outcome.attempts
            batch_file.processing_completed_at = now
            if batch_file.processing_started_at is None:
                batch_file.processing_started_at = now
            if outcome.status == "completed":
                batch_file.actual_pages = outcome.actual_pages
                batch_file.text_ref = outcome.text_ref
                batch_file.processing_record_id = outcome.record_id
                batch_file.error_code = None
                batch_file.error_message = None
                if not self._quota.record_usage(job.owner_id, outcome.actual_pages or 0, db):
                    logger.warning(
                        "owner %s over allowance after file %s completed", job.owner_id, file_id
                    )
            else:
                batch_file.error_code = outcome.error_code
                batch_file.error_message = outcome.error_message
            db.flush()
            recompute(job, _sibling_files(job.id, db))
            logger.info(
                "file %s (%s) -> %s", file_id, batch_file.original_filename, outcome.status
            )
        return batch_file

    def retry_file(
        self,
        job_id: uuid.UUID,
        file_id: uuid.UUID,
        db: Session,
        owner_id: str | None = None,
    ) -> BatchFile:
        """Reset a failed file to pending so the scheduler picks it up again."""
        self.get_job(job_id, db, owner_id=owner_id)
        with job_lock(job_id, db) as job:
            batch_file = (
                db.query(BatchFile)
                .filter(BatchFile.id == file_id, BatchFile.job_id == job_id)
                .first()
            )
            if batch_file is None:
                raise NotFoundError(f"Batch file {file_id} not found")
            if job.status == "cancelled":
                raise InvalidTransitionError(f"job {job_id} is cancelled")
            if batch_file.status != "failed":
                raise InvalidTransitionError(
                    f"only failed files can be retried; file {file_id} is {batch_file.status}"
                )
            batch_file.status = "pending"
            batch_file.error_code = None
            batch_file.error_message = None
            batch_file.actual_pages = None
            batch_file.text_ref = None
            batch_file.attempts = 0
            batch_file.processing_started_at = None
            batch_file.processing_completed_at = None
            # Merged outputs no longer match the job; expire them for the reaper.
            now = utcnow()
            retired = (
                db.query(BatchOutput)
                .filter(BatchOutput.job_id == job_id, BatchOutput.expires_at > now)
                .update({BatchOutput.expires_at: now}, synchronize_session=False)
            )
            db.flush()
            recompute(job, _sibling_files(job.id, db))
            logger.info(
                "file %s reset to pending for retry; %d merged output(s) expired", file_id, retired
            )
        return batch_file

    def cancel_job(self, job_id: uuid.UUID, db: Session, owner_id: str | None = None) -> BatchJob:
        """Stop future claims for the job; files still pending become skipped.

        Files already handed to a worker keep running and are recorded when they finish.
        """
        self.get_job(job_id, db, owner_id=owner_id)
        with job_lock(job_id, db) as job:
            if job.status == "cancelled":
                return job
            if job.status in ("completed", "failed"):
                raise InvalidTransitionError(f"job {job_id} has already {job.status}")
            job.status = "cancelled"
            skipped = (
                db.query(BatchFile)
                .filter(BatchFile.job_id == job_id, BatchFile.status == "pending")
                .update(
                    {
                        BatchFile.status: "skipped",
                        BatchFile.error_code: "CANCELLED",
                        BatchFile.error_message: "job cancelled before processing",
                        BatchFile.processing_completed_at: utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            recompute(job, _sibling_files(job.id, db))
            logger.info("job %s cancelled; %d pending file(s) skipped", job_id, skipped)
        return job

    def skip_abandoned_files(self, older_than: datetime, db: Session) -> int:
        """Close out in-flight files of cancelled jobs whose claim is older than *older_than*."""
        job_ids = [
            job_id
            for (job_id,) in db.query(BatchFile.job_id)
            .join(BatchJob, BatchJob.id == BatchFile.job_id)
            .filter(
                BatchJob.status == "cancelled",
                BatchFile.status == "processing",
                BatchFile.processing_started_at < older_than,
            )
            .distinct()
            .all()
        ]
        skipped = 0
        for job_id in job_ids:
            with job_lock(job_id, db) as job:
                stale = (
                    db.query(BatchFile)
                    .filter(
                        BatchFile.job_id == job_id,
                        BatchFile.status == "processing",
                        BatchFile.processing_started_at < older_than,
                    )
                    .all()
                )
                for batch_file in stale:
                    batch_file.status = "skipped"
                    batch_file.error_code = "CANCELLED"
                    batch_file.error_message = "claim abandoned after job was cancelled"
                    batch_file.processing_completed_at = utcnow()
                db.flush()
                recompute(job, _sibling_files(job.id, db))
                skipped += len(stale)
        if skipped:
            logger.warning("skipped %d abandoned file(s) of cancelled jobs", skipped)
        return skipped

    def delete_job(self, job_id: uuid.UUID, db: Session, owner_id: str | None = None) -> None:
        """Delete the job with its files, outputs and every stored blob."""
        self.get_job(job_id, db, owner_id=owner_id)
        refs: list[str] = []
        with job_lock(job_id, db) as job:
            for batch_file in job.files:
                refs.extend(r for r in (batch_file.source_ref, batch_file.text_ref) if r)
            refs.extend(output.storage_ref for output in job.outputs)
            db.delete(job)
        self._delete_blobs(refs)
        logger.info("job %s deleted (%d blob(s) removed)", job_id, len(refs))

    def _delete_blobs(self, refs: list[str]) -> None:
        for ref in refs:
            try:
                self._blobs.delete(ref)
            except BlobStorageError as exc:
                logger.warning("failed to delete blob %s: %s", ref, exc)
