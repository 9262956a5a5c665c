"""Extraction worker adapter: runs the extractor for one claimed file and records the outcome.

The extraction algorithm itself is external. This module owns the call-and-record
choreography: transient failures are retried with exponential backoff up to a fixed
bound, permanent ones fail the file at once.
"""

import io
import logging
import os
from typing import Any, Protocol

import httpx
import pdfplumber
from pdfminer.pdfdocument import PDFPasswordIncorrect
from pdfplumber.page import Page
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from docbatch.config import Settings
from docbatch.models.batch_file import BatchFile
from docbatch.services.blobs import BlobStorageError, BlobStore
from docbatch.services.store import InvalidTransitionError, JobStore, NotFoundError
from docbatch.services.types import ClaimedFile, ExtractionResult, FileOutcome

logger = logging.getLogger(__name__)

_PDF_MAGIC = b"%PDF"

# Transient
NETWORK_ERROR = "NETWORK_ERROR"
TIMEOUT = "TIMEOUT"
RATE_LIMITED = "RATE_LIMITED"
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
# Permanent
CORRUPT_FILE = "CORRUPT_FILE"
PASSWORD_PROTECTED = "PASSWORD_PROTECTED"
UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
INVALID_FILE = "INVALID_FILE"
MISSING_SOURCE = "MISSING_SOURCE"
PROCESSING_FAILED = "PROCESSING_FAILED"


class ExtractionError(Exception):
    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class TransientExtractionError(ExtractionError):
    """Network or timeout failure; worth retrying."""


class PermanentExtractionError(ExtractionError):
    """The file itself cannot be converted (corrupt, protected, unsupported)."""


class Extractor(Protocol):
    def extract(self, data: bytes, hints: dict[str, str]) -> ExtractionResult: ...


# ── Extractors ────────────────────────────────────────────────────────────────


class HttpExtractionClient:
    """Client for a remote extraction service exposing POST {base_url}/extract."""

    def __init__(self, base_url: str, timeout: float = 120.0) -> None:
        self._url = base_url.rstrip("/") + "/extract"
        self._timeout = timeout

    def extract(self, data: bytes, hints: dict[str, str]) -> ExtractionResult:
        filename = hints.get("filename", "document.pdf")
        try:
            response = httpx.post(
                self._url,
                files={"file": (filename, data, "application/pdf")},
                data=hints,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientExtractionError(TIMEOUT, str(exc) or "extraction timed out") from exc
        except httpx.TransportError as exc:
            raise TransientExtractionError(NETWORK_ERROR, str(exc)) from exc

        if response.status_code == 429:
            raise TransientExtractionError(RATE_LIMITED, "extraction service rate limited")
        if response.status_code >= 500:
            raise TransientExtractionError(
                SERVICE_UNAVAILABLE, f"extraction service returned {response.status_code}"
            )
        body = _json_body(response)
        if response.status_code >= 400:
            code = str(body.get("code") or INVALID_FILE)
            message = str(body.get("message") or body.get("error") or response.text)
            raise PermanentExtractionError(code, message)

        text = body.get("text")
        pages = body.get("page_count", body.get("pages"))
        if not isinstance(text, str) or not isinstance(pages, int):
            raise PermanentExtractionError(PROCESSING_FAILED, "malformed extraction response")
        record_id = body.get("id")
        return ExtractionResult(
            text=text,
            page_count=pages,
            record_id=str(record_id) if record_id is not None else None,
        )


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body: object = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _page_text(page: Page) -> str:
    """Extract text from a pdfplumber page using word-level joining to preserve spaces."""
    words = page.extract_words(x_tolerance=3, y_tolerance=3, keep_blank_chars=False)
    if not words:
        return ""
    lines: list[str] = []
    current_line: list[str] = []
    prev_bottom: float = words[0]["bottom"]
    for word in words:
        if abs(word["bottom"] - prev_bottom) > 5:
            lines.append(" ".join(current_line))
            current_line = []
        current_line.append(word["text"])
        prev_bottom = word["bottom"]
    if current_line:
        lines.append(" ".join(current_line))
    return "\n".join(lines)


def _is_password_error(exc: BaseException) -> bool:
    seen: BaseException | None = exc
    while seen is not None:
        if isinstance(seen, PDFPasswordIncorrect) or any(
            isinstance(arg, PDFPasswordIncorrect) for arg in seen.args
        ):
            return True
        seen = seen.__cause__ or seen.__context__
    return False


class PdfTextExtractor:
    """Local extractor for text-layer PDFs, used when no extraction service is configured."""

    def extract(self, data: bytes, hints: dict[str, str]) -> ExtractionResult:
        if not data.startswith(_PDF_MAGIC):
            raise PermanentExtractionError(UNSUPPORTED_FORMAT, "file is not a PDF")
        try:
            with pdfplumber.open(io.BytesIO(data), password=hints.get("password", "")) as pdf:
                texts = [_page_text(page) for page in pdf.pages]
        except Exception as exc:
            # pdfplumber wraps pdfminer's parser errors; inspect the chain to classify.
            if _is_password_error(exc):
                raise PermanentExtractionError(
                    PASSWORD_PROTECTED, "PDF is password protected"
                ) from exc
            raise PermanentExtractionError(CORRUPT_FILE, f"cannot parse PDF: {exc}") from exc
        return ExtractionResult(text="\n\n".join(texts), page_count=len(texts), record_id=None)


def get_extractor(settings: Settings) -> Extractor:
    if settings.extraction_service_url:
        return HttpExtractionClient(
            settings.extraction_service_url, timeout=float(settings.extraction_timeout_seconds)
        )
    return PdfTextExtractor()


# ── Adapter ───────────────────────────────────────────────────────────────────


class ExtractionAdapter:
    def __init__(
        self,
        extractor: Extractor,
        blobs: BlobStore,
        store: JobStore,
        max_attempts: int = 3,
        wait: wait_base | None = None,
    ) -> None:
        self._extractor = extractor
        self._blobs = blobs
        self._store = store
        self._max_attempts = max(1, max_attempts)
        self._wait = wait or wait_exponential(multiplier=1, min=1, max=10)

    def process(self, claim: ClaimedFile, db: Session) -> BatchFile | None:
        """Extract one claimed file and record its outcome.

        Returns the updated BatchFile, or None if the outcome could not be recorded
        because the job was deleted or the file was already finished differently.
        Blob and database errors propagate; the claim timeout returns the file to the queue.
        """
        file_id = claim["file_id"]
        filename = claim["original_filename"]
        attempts = 0

        def _attempt(data: bytes) -> ExtractionResult:
            nonlocal attempts
            attempts += 1
            return self._extractor.extract(data, {"filename": filename})

        text_ref: str | None = None
        try:
            if not claim["source_ref"]:
                raise PermanentExtractionError(MISSING_SOURCE, "no stored upload for this file")
            data = self._blobs.get(claim["source_ref"])
            retryer = Retrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=self._wait,
                retry=retry_if_exception_type(TransientExtractionError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )
            result = retryer(_attempt, data)
        except TransientExtractionError as exc:
            logger.warning("file %s failed after %d attempt(s): %s", file_id, attempts, exc)
            outcome = FileOutcome.failed(
                exc.code, f"gave up after {attempts} attempt(s): {exc.message}", attempts
            )
        except PermanentExtractionError as exc:
            logger.info("file %s failed permanently: %s", file_id, exc)
            outcome = FileOutcome.failed(exc.code, exc.message, max(attempts, 1))
        except ExtractionError as exc:
            outcome = FileOutcome.failed(exc.code, exc.message, max(attempts, 1))
        except BlobStorageError:
            raise
        except Exception as exc:
            logger.exception("extractor crashed on file %s", file_id)
            outcome = FileOutcome.failed(PROCESSING_FAILED, str(exc) or type(exc).__name__, attempts)
        else:
            text_ref = self._blobs.put(
                result["text"].encode("utf-8"), f"{os.path.splitext(filename)[0]}.txt"
            )
            outcome = FileOutcome.completed(
                result["page_count"], text_ref, record_id=result["record_id"], attempts=attempts
            )

        try:
            batch_file = self._store.update_file_status(file_id, outcome, db)
        except NotFoundError:
            logger.info("file %s vanished while processing (job deleted)", file_id)
        except InvalidTransitionError as exc:
            logger.warning("discarding outcome for file %s: %s", file_id, exc)
        except Exception:
            self._discard(text_ref)
            raise
        else:
            # A duplicate outcome keeps the text recorded the first time.
            if text_ref is not None and batch_file.text_ref != text_ref:
                self._discard(text_ref)
            return batch_file
        self._discard(text_ref)
        return None

    def _discard(self, text_ref: str | None) -> None:
        if text_ref is None:
            return
        try:
            self._blobs.delete(text_ref)
        except BlobStorageError as exc:
            logger.warning("failed to delete text blob %s: %s", text_ref, exc)
