"""Shared typed values passed between batch services."""

import uuid
from dataclasses import dataclass
from typing import TypedDict


class UploadedFile(TypedDict):
    filename: str
    data: bytes


class ExtractionResult(TypedDict):
    text: str
    page_count: int
    record_id: str | None


class ClaimedFile(TypedDict):
    job_id: uuid.UUID
    file_id: uuid.UUID
    original_filename: str
    source_ref: str | None


@dataclass(frozen=True)
class FileOutcome:
    """Terminal result of processing one file, as recorded by JobStore.update_file_status."""

    status: str
    actual_pages: int | None = None
    text_ref: str | None = None
    record_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempts: int = 1

    @classmethod
    def completed(
        cls, actual_pages: int, text_ref: str, record_id: str | None = None, attempts: int = 1
    ) -> "FileOutcome":
        return cls(
            status="completed",
            actual_pages=actual_pages,
            text_ref=text_ref,
            record_id=record_id,
            attempts=attempts,
        )

    @classmethod
    def failed(cls, error_code: str, error_message: str, attempts: int = 1) -> "FileOutcome":
        return cls(
            status="failed", error_code=error_code, error_message=error_message, attempts=attempts
        )
