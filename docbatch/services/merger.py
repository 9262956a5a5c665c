"""Output merger: combines a job's extracted text into one downloadable artifact."""

import io
import logging
import re
import secrets
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta

from docx import Document
from docx.enum.section import WD_SECTION
from sqlalchemy.orm import Session

from docbatch.db import utcnow
from docbatch.models.batch_file import TERMINAL_FILE_STATUSES, BatchFile
from docbatch.models.batch_job import MERGE_FORMATS, BatchJob
from docbatch.models.batch_output import BatchOutput
from docbatch.services.blobs import BlobStorageError, BlobStore, safe_name
from docbatch.services.store import NotFoundError, job_lock

logger = logging.getLogger(__name__)

_RULE = "=" * 80
_NO_TEXT = "[No text extracted]"
# Characters XML 1.0 cannot carry; python-docx rejects them.
_XML_INVALID_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

_CONTENT_TYPES = {
    "txt": "text/plain; charset=utf-8",
    "md": "text/markdown; charset=utf-8",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


class NotReadyError(Exception):
    """Raised when a merge is requested while files are still pending or processing."""


class NothingToMergeError(Exception):
    """Raised when a job has no completed file to merge."""


def content_type_for(fmt: str) -> str:
    return _CONTENT_TYPES.get(fmt, "application/octet-stream")


class OutputMerger:
    def __init__(self, blobs: BlobStore, ttl_hours: int = 24) -> None:
        self._blobs = blobs
        self._ttl = timedelta(hours=ttl_hours)

    def merge(
        self,
        job_id: uuid.UUID,
        fmt: str | None,
        db: Session,
        owner_id: str | None = None,
    ) -> BatchOutput:
        """Merge *job_id*'s completed files into a *fmt* artifact behind a download token.

        *fmt* falls back to the job's configured merge format. While an unexpired output
        of the same format exists it is returned instead of a new one.

        Raises NotFoundError, ValueError (no or unknown format), NotReadyError and
        NothingToMergeError.
        """
        with job_lock(job_id, db) as job:
            if owner_id is not None and job.owner_id != owner_id:
                raise NotFoundError(f"Batch job {job_id} not found")
            fmt = fmt or job.merge_format
            if fmt is None:
                raise ValueError("no merge format given and none configured on the job")
            if fmt not in MERGE_FORMATS:
                raise ValueError(f"unsupported merge format: {fmt!r}")

            files = (
                db.query(BatchFile)
                .filter(BatchFile.job_id == job_id)
                .order_by(BatchFile.position)
                .all()
            )
            unfinished = [f for f in files if f.status not in TERMINAL_FILE_STATUSES]
            if unfinished:
                raise NotReadyError(
                    f"job {job_id} still has {len(unfinished)} unfinished file(s)"
                )

            now = utcnow()
            existing = (
                db.query(BatchOutput)
                .filter(
                    BatchOutput.job_id == job_id,
                    BatchOutput.format == fmt,
                    BatchOutput.expires_at > now,
                )
                .order_by(BatchOutput.created_at.desc())
                .first()
            )
            if existing is not None:
                logger.info("job %s: reusing %s output %s", job_id, fmt, existing.id)
                return existing

            completed = [f for f in files if f.status == "completed"]
            if not completed:
                raise NothingToMergeError(f"job {job_id} has no completed files to merge")
            incomplete = [f for f in files if f.status != "completed"]

            texts = [self._read_text(f) for f in completed]
            if fmt == "txt":
                data = render_txt(job, completed, texts, incomplete, now).encode("utf-8")
            elif fmt == "md":
                data = render_markdown(job, completed, texts, incomplete, now).encode("utf-8")
            else:
                data = render_docx(job, completed, texts, incomplete, now)

            filename = f"batch_{safe_name(job.name)}_{now:%Y%m%dT%H%M%S}.{fmt}"
            storage_ref = self._blobs.put(data, filename)
            output = BatchOutput(
                job_id=job_id,
                format=fmt,
                storage_ref=storage_ref,
                filename=filename,
                byte_size=len(data),
                download_token=secrets.token_urlsafe(32),
                expires_at=now + self._ttl,
                download_count=0,
            )
            db.add(output)
            try:
                db.flush()
            except Exception:
                self._discard(storage_ref)
                raise
        logger.info(
            "job %s merged %d file(s) into %s (%d bytes), expires %s",
            job_id,
            len(completed),
            filename,
            output.byte_size,
            output.expires_at,
        )
        return output

    def _read_text(self, batch_file: BatchFile) -> str:
        if not batch_file.text_ref:
            return ""
        return self._blobs.get(batch_file.text_ref).decode("utf-8", errors="replace")

    def _discard(self, ref: str) -> None:
        try:
            self._blobs.delete(ref)
        except BlobStorageError as exc:
            logger.warning("could not remove orphaned artifact %s: %s", ref, exc)


# ── Renderers ─────────────────────────────────────────────────────────────────


def _manifest_lines(incomplete: Sequence[BatchFile]) -> list[str]:
    lines = []
    for f in incomplete:
        reason = f.error_message or f.error_code or "no reason recorded"
        lines.append(f"{f.original_filename}: {f.status} ({reason})")
    return lines


def render_txt(
    job: BatchJob,
    files: Sequence[BatchFile],
    texts: Sequence[str],
    incomplete: Sequence[BatchFile],
    generated_at: datetime,
) -> str:
    parts = [
        f"# Batch Processing Results: {job.name}",
        f"Generated: {generated_at.isoformat()}Z",
        f"Total Files: {len(files)}",
        "",
        _RULE,
        "",
    ]
    for index, (f, text) in enumerate(zip(files, texts), start=1):
        parts += [
            f"## File {index}: {f.original_filename}",
            f"Pages: {f.actual_pages if f.actual_pages is not None else 'Unknown'}",
            "",
            "-" * 40,
            "",
            text or _NO_TEXT,
            "",
            _RULE,
            "",
        ]
    if incomplete:
        parts.append("Files not included:")
        parts += [f"- {line}" for line in _manifest_lines(incomplete)]
        parts.append("")
    return "\n".join(parts)


def _anchor(index: int, filename: str) -> str:
    return f"file-{index}-" + re.sub(r"[^a-zA-Z0-9]", "-", filename).lower()


def render_markdown(
    job: BatchJob,
    files: Sequence[BatchFile],
    texts: Sequence[str],
    incomplete: Sequence[BatchFile],
    generated_at: datetime,
) -> str:
    parts = [
        f"# Batch Processing Results: {job.name}",
        "",
        f"**Generated:** {generated_at.isoformat()}Z  ",
        f"**Total Files:** {len(files)}  ",
        f"**Description:** {job.description or 'No description provided'}",
        "",
        "## Table of Contents",
        "",
    ]
    parts += [
        f"{i}. [{f.original_filename}](#{_anchor(i, f.original_filename)})"
        for i, f in enumerate(files, start=1)
    ]
    parts += ["", "---", ""]
    for index, (f, text) in enumerate(zip(files, texts), start=1):
        parts += [
            f'<a id="{_anchor(index, f.original_filename)}"></a>',
            f"## File {index}: {f.original_filename}",
            "",
            f"**Pages:** {f.actual_pages if f.actual_pages is not None else 'Unknown'}  ",
            f"**File Size:** {f.file_size / 1024:.1f} KB",
            "",
            text or _NO_TEXT,
            "",
            "---",
            "",
        ]
    if incomplete:
        parts += ["## Files Not Included", ""]
        parts += [f"- {line}" for line in _manifest_lines(incomplete)]
        parts.append("")
    return "\n".join(parts)


def _docx_text(text: str) -> str:
    return _XML_INVALID_RE.sub("", text)


def render_docx(
    job: BatchJob,
    files: Sequence[BatchFile],
    texts: Sequence[str],
    incomplete: Sequence[BatchFile],
    generated_at: datetime,
) -> bytes:
    """Word document with a title page and one section per merged file."""
    document = Document()
    document.add_heading(_docx_text(f"Batch Processing Results: {job.name}"), level=0)
    document.add_paragraph(f"Generated: {generated_at.isoformat()}Z")
    document.add_paragraph(f"Total Files: {len(files)}")
    if job.description:
        document.add_paragraph(_docx_text(job.description))

    for index, (f, text) in enumerate(zip(files, texts), start=1):
        document.add_section(WD_SECTION.NEW_PAGE)
        document.add_heading(_docx_text(f"File {index}: {f.original_filename}"), level=1)
        pages = f.actual_pages if f.actual_pages is not None else "Unknown"
        document.add_paragraph().add_run(f"Pages: {pages}").italic = True
        body = _docx_text(text) or _NO_TEXT
        for paragraph in body.split("\n\n"):
            document.add_paragraph(paragraph)

    if incomplete:
        document.add_section(WD_SECTION.NEW_PAGE)
        document.add_heading("Files Not Included", level=1)
        for line in _manifest_lines(incomplete):
            document.add_paragraph(_docx_text(line), style="List Bullet")

    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()
