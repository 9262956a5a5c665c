"""Scheduler: answers "which file is next" and hands it out exactly once."""

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from docbatch.db import utcnow
from docbatch.models.batch_file import BatchFile
from docbatch.models.batch_job import BatchJob
from docbatch.schemas.batch import QueueEntry
from docbatch.services.types import ClaimedFile

logger = logging.getLogger(__name__)

_MAX_CLAIM_ATTEMPTS = 10
_CANDIDATE_WINDOW = 5


class ConcurrencyConflict(Exception):
    """Raised when another claimer changed a file between selection and claim."""


class Scheduler:
    """Priority scheduler over pending files.

    Order: job priority ascending, then job age, then upload order within the job.
    Claiming is a compare-and-swap on the file's status, so two workers can never
    receive the same file and a claim never waits on extraction.
    """

    def claim_next_file(self, db: Session, capacity: int = 1) -> ClaimedFile | None:
        """Claim the next admissible file, or return None when nothing is pending."""
        if capacity < 1:
            return None
        for attempt in range(_MAX_CLAIM_ATTEMPTS):
            candidates = self._candidates(db)
            if not candidates:
                return None
            for candidate in candidates:
                try:
                    return self._claim(candidate, db)
                except ConcurrencyConflict:
                    logger.debug("claim conflict on file %s (attempt %d)", candidate.id, attempt)
        logger.warning("gave up claiming after %d contended attempts", _MAX_CLAIM_ATTEMPTS)
        return None

    def claim_files(self, db: Session, capacity: int) -> list[ClaimedFile]:
        """Claim up to *capacity* files in scheduling order."""
        claimed: list[ClaimedFile] = []
        while len(claimed) < capacity:
            claim = self.claim_next_file(db)
            if claim is None:
                break
            claimed.append(claim)
        return claimed

    def _candidates(self, db: Session) -> list[BatchFile]:
        return (
            db.query(BatchFile)
            .join(BatchJob, BatchJob.id == BatchFile.job_id)
            .filter(BatchFile.status == "pending", BatchJob.status != "cancelled")
            .order_by(BatchJob.priority.asc(), BatchJob.created_at.asc(), BatchFile.position.asc())
            .limit(_CANDIDATE_WINDOW)
            .all()
        )

    def _claim(self, candidate: BatchFile, db: Session) -> ClaimedFile:
        now = utcnow()
        claimed = (
            db.query(BatchFile)
            .filter(BatchFile.id == candidate.id, BatchFile.status == "pending")
            .update(
                {
                    BatchFile.status: "processing",
                    BatchFile.processing_started_at: now,
                    BatchFile.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if claimed != 1:
            raise ConcurrencyConflict(f"file {candidate.id} was claimed concurrently")
        logger.info("claimed file %s of job %s", candidate.id, candidate.job_id)
        return ClaimedFile(
            job_id=candidate.job_id,
            file_id=candidate.id,
            original_filename=candidate.original_filename,
            source_ref=candidate.source_ref,
        )

    def list_pending_jobs(self, db: Session, limit: int = 10) -> list[QueueEntry]:
        """Jobs that still have unclaimed files, in the order the scheduler will serve them."""
        pending_counts = (
            db.query(BatchFile.job_id, func.count(BatchFile.id).label("pending"))
            .filter(BatchFile.status == "pending")
            .group_by(BatchFile.job_id)
            .subquery()
        )
        rows = (
            db.query(BatchJob, pending_counts.c.pending)
            .join(pending_counts, pending_counts.c.job_id == BatchJob.id)
            .filter(BatchJob.status.in_(("pending", "processing")))
            .order_by(BatchJob.priority.asc(), BatchJob.created_at.asc())
            .limit(limit)
            .all()
        )
        return [
            QueueEntry(
                job_id=job.id,
                owner_id=job.owner_id,
                priority=job.priority,
                total_files=job.total_files,
                pending_files=pending,
                total_pages=job.total_pages,
                created_at=job.created_at,
            )
            for job, pending in rows
        ]

    def release_stale_claims(self, db: Session, older_than: datetime) -> int:
        """Return files claimed before *older_than* and never finished to the queue.

        Cancelled jobs are left alone; JobStore.skip_abandoned_files() closes those out.
        """
        active_jobs = select(BatchJob.id).where(BatchJob.status != "cancelled")
        released = (
            db.query(BatchFile)
            .filter(
                BatchFile.status == "processing",
                BatchFile.processing_started_at < older_than,
                BatchFile.job_id.in_(active_jobs),
            )
            .update(
                {
                    BatchFile.status: "pending",
                    BatchFile.processing_started_at: None,
                    BatchFile.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if released:
            logger.warning("released %d stale claim(s) older than %s", released, older_than)
        return released
