"""Artifact/token service: resolves download tokens and reaps expired artifacts."""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from docbatch.db import utcnow
from docbatch.models.batch_output import BatchOutput
from docbatch.services.blobs import BlobStorageError, BlobStore

logger = logging.getLogger(__name__)


class TokenNotFoundError(Exception):
    """Raised when no artifact exists for a download token."""


class TokenExpiredError(Exception):
    """Raised when the artifact behind a token has passed its expiry."""


class TokenService:
    def __init__(self, blobs: BlobStore) -> None:
        self._blobs = blobs

    def resolve(self, token: str, db: Session, now: datetime | None = None) -> BatchOutput:
        """Return the output behind *token* and count the download.

        An expired token raises TokenExpiredError even before the reaper removes it.
        """
        now = now or utcnow()
        output = db.query(BatchOutput).filter(BatchOutput.download_token == token).first()
        if output is None:
            logger.info("download token not found")
            raise TokenNotFoundError("download link not found")
        if output.expires_at <= now:
            logger.info("download token for output %s expired at %s", output.id, output.expires_at)
            raise TokenExpiredError(f"download link expired at {output.expires_at.isoformat()}Z")

        counted = (
            db.query(BatchOutput)
            .filter(BatchOutput.id == output.id, BatchOutput.expires_at > now)
            .update(
                {BatchOutput.download_count: BatchOutput.download_count + 1},
                synchronize_session=False,
            )
        )
        db.commit()
        if counted != 1:
            # Reaped between the read and the update.
            raise TokenNotFoundError("download link not found")
        db.refresh(output)
        return output

    def read(self, output: BatchOutput) -> bytes:
        return self._blobs.get(output.storage_ref)

    def reap(self, db: Session, now: datetime | None = None) -> int:
        """Delete every expired output and its blob; returns the number of rows removed.

        Safe to run from several processes at once: a blob already gone is a no-op and
        each row is deleted by id, so only one reaper counts it.
        """
        now = now or utcnow()
        expired = (
            db.query(BatchOutput.id, BatchOutput.storage_ref)
            .filter(BatchOutput.expires_at < now)
            .all()
        )
        reaped = 0
        for output_id, storage_ref in expired:
            try:
                self._blobs.delete(storage_ref)
            except BlobStorageError as exc:
                # Keep the row so the next sweep retries the blob.
                logger.warning("could not delete artifact %s: %s", storage_ref, exc)
                continue
            reaped += (
                db.query(BatchOutput)
                .filter(BatchOutput.id == output_id)
                .delete(synchronize_session=False)
            )
            db.commit()
        if reaped:
            logger.info("reaped %d expired output(s)", reaped)
        return reaped
