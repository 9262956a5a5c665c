"""Pydantic schemas for batch job endpoints."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

MergeFormat = Literal["txt", "md", "docx"]
JobStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
FileStatus = Literal["pending", "processing", "completed", "failed", "skipped"]


class JobSubmitOptions(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    priority: int = Field(default=5, ge=1, le=10, description="1 = most urgent")
    merge_requested: bool = False
    merge_format: MergeFormat | None = None

    @model_validator(mode="after")
    def merge_format_iff_requested(self) -> "JobSubmitOptions":
        if self.merge_requested and self.merge_format is None:
            raise ValueError("merge_format is required when merge_requested is set")
        if not self.merge_requested and self.merge_format is not None:
            raise ValueError("merge_format is only allowed when merge_requested is set")
        return self


class AdmissionDecision(BaseModel):
    allowed: bool
    pages_remaining: int
    requires_upgrade: bool
    estimated_pages: int
    plan: str
    estimated_cost_usd: float


class EstimateRequest(BaseModel):
    file_sizes: list[int] = Field(..., min_length=1)


class BatchFileSummary(BaseModel):
    id: uuid.UUID
    position: int
    original_filename: str
    file_size: int
    estimated_pages: int
    actual_pages: int | None
    status: FileStatus
    error_code: str | None
    error_message: str | None
    attempts: int
    processing_started_at: datetime | None
    processing_completed_at: datetime | None

    model_config = {"from_attributes": True}


class BatchJobDetail(BaseModel):
    id: uuid.UUID
    owner_id: str
    name: str
    description: str | None
    priority: int
    merge_requested: bool
    merge_format: MergeFormat | None
    status: JobStatus
    total_files: int
    processed_files: int
    failed_files: int
    skipped_files: int
    total_pages: int
    processed_pages: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class MergeRequest(BaseModel):
    format: MergeFormat | None = None


class MergeResponse(BaseModel):
    output_id: uuid.UUID
    format: MergeFormat
    filename: str
    byte_size: int
    download_token: str
    download_url: str
    expires_at: datetime


class QueueEntry(BaseModel):
    job_id: uuid.UUID
    owner_id: str
    priority: int
    total_files: int
    pending_files: int
    total_pages: int
    created_at: datetime


class WorkerStatus(BaseModel):
    running: bool
    files_done: int
    in_flight: int


class SweepResult(BaseModel):
    outputs_reaped: int
    claims_released: int
    swept_at: datetime


class ErrorResponse(BaseModel):
    error: str
    detail: str | None = None
