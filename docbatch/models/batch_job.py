"""BatchJob ORM model: one user-submitted batch of files tracked as a single unit."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docbatch.db import Base, utcnow

if TYPE_CHECKING:
    from docbatch.models.batch_file import BatchFile
    from docbatch.models.batch_output import BatchOutput

JOB_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
TERMINAL_JOB_STATUSES = frozenset({"completed", "failed", "cancelled"})
MERGE_FORMATS = ("txt", "md", "docx")


class BatchJob(Base):
    __tablename__ = "batch_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # 1 = most urgent, 10 = least.
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    merge_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    merge_format: Mapped[str | None] = mapped_column(Text, nullable=True)
    # status: pending | processing | completed | failed | cancelled
    # Written only by services.progress.recompute() and JobStore.cancel_job().
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    total_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_pages: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)

    files: Mapped[list[BatchFile]] = relationship(
        "BatchFile",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BatchFile.position",
    )
    outputs: Mapped[list[BatchOutput]] = relationship(
        "BatchOutput",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_batch_jobs_priority"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="ck_batch_jobs_status",
        ),
        CheckConstraint(
            "merge_format IS NULL OR merge_format IN ('txt', 'md', 'docx')",
            name="ck_batch_jobs_merge_format",
        ),
        Index("idx_batch_jobs_schedule", "status", "priority", "created_at"),
    )
