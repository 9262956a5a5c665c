"""Progress aggregator: the only writer of a BatchJob's derived status and counters.

Callers must hold the job's lock (see services.store.job_lock) and pass the complete,
freshly read list of the job's files; recompute() never reads the database itself.
"""

import logging
from collections.abc import Sequence

from docbatch.db import utcnow
from docbatch.models.batch_file import TERMINAL_FILE_STATUSES, BatchFile
from docbatch.models.batch_job import BatchJob

logger = logging.getLogger(__name__)


def derive_status(total: int, processed: int, failed: int) -> str:
    """Job status as a pure function of its file counters."""
    if total <= 0:
        raise ValueError("a job must contain at least one file")
    if processed == 0:
        return "pending"
    if processed < total:
        return "processing"
    if failed == total:
        return "failed"
    return "completed"


def recompute(job: BatchJob, files: Sequence[BatchFile]) -> str:
    """Recount *job*'s counters from *files* and apply the derived status.

    A cancelled job keeps its status; its counters still follow late completions.
    Returns the job's status after the update.
    """
    completed = [f for f in files if f.status == "completed"]
    job.total_files = len(files)
    job.processed_files = sum(1 for f in files if f.status in TERMINAL_FILE_STATUSES)
    job.failed_files = sum(1 for f in files if f.status == "failed")
    job.skipped_files = sum(1 for f in files if f.status == "skipped")
    job.total_pages = sum(f.estimated_pages for f in files)
    job.processed_pages = sum(f.actual_pages or 0 for f in completed)

    now = utcnow()
    if job.status == "cancelled":
        if job.processed_files == job.total_files and job.completed_at is None:
            job.completed_at = now
        return job.status

    previous = job.status
    status = derive_status(job.total_files, job.processed_files, job.failed_files)
    if status != "pending" and job.started_at is None:
        job.started_at = now
    if status in ("completed", "failed"):
        if job.completed_at is None:
            job.completed_at = now
    else:
        # A retry can reopen a finished job.
        job.completed_at = None
    job.status = status
    if status != previous:
        logger.info(
            "job %s: %s -> %s (%d/%d processed, %d failed)",
            job.id,
            previous,
            status,
            job.processed_files,
            job.total_files,
            job.failed_files,
        )
    return status
