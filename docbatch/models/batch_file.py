"""BatchFile ORM model: one uploaded document inside a BatchJob."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docbatch.db import Base, utcnow

if TYPE_CHECKING:
    from docbatch.models.batch_job import BatchJob

FILE_STATUSES = ("pending", "processing", "completed", "failed", "skipped")
TERMINAL_FILE_STATUSES = frozenset({"completed", "failed", "skipped"})


class BatchFile(Base):
    __tablename__ = "batch_files"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("batch_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    # Upload order within the job; ties in created_at are broken by this.
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    processing_record_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    original_filename: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    estimated_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    actual_pages: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # status: pending | processing | completed | failed | skipped
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    error_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    text_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processing_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    job: Mapped[BatchJob] = relationship("BatchJob", back_populates="files")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FILE_STATUSES

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'skipped')",
            name="ck_batch_files_status",
        ),
        Index("idx_batch_files_claim", "job_id", "status", "position"),
        Index("idx_batch_files_status", "status"),
    )
