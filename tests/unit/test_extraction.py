"""Unit tests for the extraction adapter and extractors."""

import uuid
from unittest.mock import MagicMock, patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError
from tenacity import wait_none

from docbatch.services.blobs import BlobStorageError
from docbatch.services.extraction import (
    CORRUPT_FILE,
    MISSING_SOURCE,
    NETWORK_ERROR,
    PROCESSING_FAILED,
    TIMEOUT,
    UNSUPPORTED_FORMAT,
    ExtractionAdapter,
    HttpExtractionClient,
    PdfTextExtractor,
    PermanentExtractionError,
    TransientExtractionError,
)
from docbatch.services.store import InvalidTransitionError, NotFoundError
from docbatch.services.types import ClaimedFile, ExtractionResult, FileOutcome


def _claim(source_ref: str | None = "src/ref.pdf") -> ClaimedFile:
    return ClaimedFile(
        job_id=uuid.uuid4(),
        file_id=uuid.uuid4(),
        original_filename="report.pdf",
        source_ref=source_ref,
    )


def _result(text: str = "hello", pages: int = 3) -> ExtractionResult:
    return ExtractionResult(text=text, page_count=pages, record_id="rec-1")


def _make_adapter(
    extractor: MagicMock, max_attempts: int = 3
) -> tuple[ExtractionAdapter, MagicMock, MagicMock]:
    blobs = MagicMock()
    blobs.get.return_value = b"%PDF data"
    blobs.put.return_value = "text/ref.txt"
    store = MagicMock()
    store.update_file_status.return_value.text_ref = "text/ref.txt"
    adapter = ExtractionAdapter(extractor, blobs, store, max_attempts=max_attempts, wait=wait_none())
    return adapter, blobs, store


def _recorded_outcome(store: MagicMock) -> FileOutcome:
    outcome: FileOutcome = store.update_file_status.call_args.args[1]
    return outcome


class TestExtractionAdapterProcess:
    def test_success_stores_text_and_records_completion(self) -> None:
        extractor = MagicMock()
        extractor.extract.return_value = _result("extracted", pages=7)
        adapter, blobs, store = _make_adapter(extractor)
        claim = _claim()

        adapter.process(claim, MagicMock())

        blobs.put.assert_called_once_with(b"extracted", "report.txt")
        outcome = _recorded_outcome(store)
        assert store.update_file_status.call_args.args[0] == claim["file_id"]
        assert outcome.status == "completed"
        assert outcome.actual_pages == 7
        assert outcome.text_ref == "text/ref.txt"
        assert outcome.record_id == "rec-1"
        assert outcome.attempts == 1

    def test_transient_error_is_retried_until_success(self) -> None:
        extractor = MagicMock()
        extractor.extract.side_effect = [
            TransientExtractionError(NETWORK_ERROR, "reset"),
            TransientExtractionError(TIMEOUT, "slow"),
            _result(),
        ]
        adapter, _, store = _make_adapter(extractor)

        adapter.process(_claim(), MagicMock())

        assert extractor.extract.call_count == 3
        outcome = _recorded_outcome(store)
        assert outcome.status == "completed"
        assert outcome.attempts == 3

    def test_gives_up_after_max_attempts(self) -> None:
        extractor = MagicMock()
        extractor.extract.side_effect = TransientExtractionError(TIMEOUT, "slow")
        adapter, blobs, store = _make_adapter(extractor, max_attempts=2)

        adapter.process(_claim(), MagicMock())

        assert extractor.extract.call_count == 2
        outcome = _recorded_outcome(store)
        assert outcome.status == "failed"
        assert outcome.error_code == TIMEOUT
        assert "2 attempt(s)" in (outcome.error_message or "")
        blobs.put.assert_not_called()

    def test_permanent_error_is_not_retried(self) -> None:
        extractor = MagicMock()
        extractor.extract.side_effect = PermanentExtractionError(CORRUPT_FILE, "bad xref")
        adapter, _, store = _make_adapter(extractor)

        adapter.process(_claim(), MagicMock())

        assert extractor.extract.call_count == 1
        outcome = _recorded_outcome(store)
        assert outcome.error_code == CORRUPT_FILE
        assert outcome.error_message == "bad xref"

    def test_missing_source_fails_without_calling_extractor(self) -> None:
        extractor = MagicMock()
        adapter, _, store = _make_adapter(extractor)

        adapter.process(_claim(source_ref=None), MagicMock())

        extractor.extract.assert_not_called()
        assert _recorded_outcome(store).error_code == MISSING_SOURCE

    def test_unexpected_extractor_error_fails_file(self) -> None:
        extractor = MagicMock()
        extractor.extract.side_effect = KeyError("page")
        adapter, _, store = _make_adapter(extractor)

        adapter.process(_claim(), MagicMock())

        assert extractor.extract.call_count == 1
        assert _recorded_outcome(store).error_code == PROCESSING_FAILED

    def test_blob_read_failure_propagates(self) -> None:
        extractor = MagicMock()
        adapter, blobs, store = _make_adapter(extractor)
        blobs.get.side_effect = BlobStorageError("bucket unreachable")

        with pytest.raises(BlobStorageError):
            adapter.process(_claim(), MagicMock())
        store.update_file_status.assert_not_called()

    def test_outcome_for_deleted_job_is_discarded(self) -> None:
        extractor = MagicMock()
        extractor.extract.return_value = _result()
        adapter, blobs, store = _make_adapter(extractor)
        store.update_file_status.side_effect = NotFoundError("gone")

        assert adapter.process(_claim(), MagicMock()) is None
        blobs.delete.assert_called_once_with("text/ref.txt")

    def test_conflicting_outcome_is_discarded(self) -> None:
        extractor = MagicMock()
        extractor.extract.side_effect = PermanentExtractionError(CORRUPT_FILE, "bad")
        adapter, blobs, store = _make_adapter(extractor)
        store.update_file_status.side_effect = InvalidTransitionError("already completed")

        assert adapter.process(_claim(), MagicMock()) is None
        blobs.delete.assert_not_called()

    def test_database_error_removes_text_and_propagates(self) -> None:
        extractor = MagicMock()
        extractor.extract.return_value = _result()
        adapter, blobs, store = _make_adapter(extractor)
        store.update_file_status.side_effect = OperationalError("UPDATE", {}, Exception("locked"))

        with pytest.raises(OperationalError):
            adapter.process(_claim(), MagicMock())
        blobs.delete.assert_called_once_with("text/ref.txt")

    def test_duplicate_completion_keeps_first_text(self) -> None:
        extractor = MagicMock()
        extractor.extract.return_value = _result()
        adapter, blobs, store = _make_adapter(extractor)
        store.update_file_status.return_value.text_ref = "text/first.txt"

        adapter.process(_claim(), MagicMock())

        blobs.delete.assert_called_once_with("text/ref.txt")


class TestHttpExtractionClient:
    def _response(self, status: int, body: object) -> httpx.Response:
        return httpx.Response(status, json=body, request=httpx.Request("POST", "http://x/extract"))

    def test_returns_result_on_success(self) -> None:
        response = self._response(200, {"text": "abc", "page_count": 4, "id": 99})
        with patch("docbatch.services.extraction.httpx.post", return_value=response) as post:
            result = HttpExtractionClient("http://extractor/").extract(b"%PDF", {"filename": "a.pdf"})

        assert result == {"text": "abc", "page_count": 4, "record_id": "99"}
        assert post.call_args.args[0] == "http://extractor/extract"

    def test_timeout_is_transient(self) -> None:
        with patch(
            "docbatch.services.extraction.httpx.post",
            side_effect=httpx.ReadTimeout("timed out"),
        ):
            with pytest.raises(TransientExtractionError) as excinfo:
                HttpExtractionClient("http://x").extract(b"%PDF", {})
        assert excinfo.value.code == TIMEOUT

    def test_connection_error_is_transient(self) -> None:
        with patch(
            "docbatch.services.extraction.httpx.post",
            side_effect=httpx.ConnectError("refused"),
        ):
            with pytest.raises(TransientExtractionError) as excinfo:
                HttpExtractionClient("http://x").extract(b"%PDF", {})
        assert excinfo.value.code == NETWORK_ERROR

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_overload_and_server_errors_are_transient(self, status: int) -> None:
        with patch(
            "docbatch.services.extraction.httpx.post",
            return_value=self._response(status, {}),
        ):
            with pytest.raises(TransientExtractionError):
                HttpExtractionClient("http://x").extract(b"%PDF", {})

    def test_client_error_is_permanent_with_service_code(self) -> None:
        response = self._response(422, {"code": "PASSWORD_PROTECTED", "message": "locked"})
        with patch("docbatch.services.extraction.httpx.post", return_value=response):
            with pytest.raises(PermanentExtractionError) as excinfo:
                HttpExtractionClient("http://x").extract(b"%PDF", {})
        assert excinfo.value.code == "PASSWORD_PROTECTED"
        assert excinfo.value.message == "locked"

    def test_malformed_body_is_permanent(self) -> None:
        with patch(
            "docbatch.services.extraction.httpx.post",
            return_value=self._response(200, {"text": "abc"}),
        ):
            with pytest.raises(PermanentExtractionError) as excinfo:
                HttpExtractionClient("http://x").extract(b"%PDF", {})
        assert excinfo.value.code == PROCESSING_FAILED


class TestPdfTextExtractor:
    def test_rejects_non_pdf(self) -> None:
        with pytest.raises(PermanentExtractionError) as excinfo:
            PdfTextExtractor().extract(b"PK\x03\x04 zip", {})
        assert excinfo.value.code == UNSUPPORTED_FORMAT

    def test_unparseable_pdf_is_corrupt(self) -> None:
        with patch(
            "docbatch.services.extraction.pdfplumber.open",
            side_effect=Exception("No /Root object!"),
        ):
            with pytest.raises(PermanentExtractionError) as excinfo:
                PdfTextExtractor().extract(b"%PDF-1.4 broken", {})
        assert excinfo.value.code == CORRUPT_FILE

    def test_joins_page_words_and_counts_pages(self) -> None:
        page = MagicMock()
        page.extract_words.return_value = [
            {"text": "Hello", "bottom": 10.0},
            {"text": "world", "bottom": 10.5},
            {"text": "Next", "bottom": 30.0},
        ]
        blank = MagicMock()
        blank.extract_words.return_value = []
        pdf = MagicMock()
        pdf.pages = [page, blank]
        ctx = MagicMock()
        ctx.__enter__ = MagicMock(return_value=pdf)
        ctx.__exit__ = MagicMock(return_value=False)

        with patch("docbatch.services.extraction.pdfplumber.open", return_value=ctx):
            result = PdfTextExtractor().extract(b"%PDF-1.4", {})

        assert result["page_count"] == 2
        assert result["text"] == "Hello world\nNext\n\n"
