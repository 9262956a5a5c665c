"""Blob storage for uploads, extracted text and merged artifacts."""

import io
import logging
import os
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Protocol

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload

from docbatch.config import Settings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]+")


class BlobStorageError(Exception):
    """Raised when a blob cannot be written, read or deleted."""


class BlobStore(Protocol):
    def put(self, data: bytes, name: str) -> str: ...

    def get(self, ref: str) -> bytes: ...

    def delete(self, ref: str) -> None: ...


def safe_name(name: str) -> str:
    cleaned = _UNSAFE_CHARS_RE.sub("_", name).strip("._")
    return cleaned[:120] or "blob"


class LocalBlobStore:
    """Stores blobs as files under *root*; refs are paths relative to it."""

    def __init__(self, root: Path) -> None:
        self._root = root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, ref: str) -> Path:
        path = (self._root / ref).resolve()
        if self._root not in path.parents:
            raise BlobStorageError(f"blob ref escapes storage root: {ref!r}")
        return path

    def put(self, data: bytes, name: str) -> str:
        ref = f"{uuid.uuid4().hex}/{safe_name(name)}"
        path = self._path(ref)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise BlobStorageError(str(exc)) from exc
        return ref

    def get(self, ref: str) -> bytes:
        try:
            return self._path(ref).read_bytes()
        except OSError as exc:
            raise BlobStorageError(str(exc)) from exc

    def delete(self, ref: str) -> None:
        """Delete *ref*. Deleting a missing blob is a no-op."""
        path = self._path(ref)
        try:
            path.unlink(missing_ok=True)
            if path.parent != self._root and not any(path.parent.iterdir()):
                path.parent.rmdir()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise BlobStorageError(str(exc)) from exc


class DriveBlobStore:
    """Stores blobs in Google Drive using the authenticated account; refs are Drive file ids."""

    def __init__(self, folder_id: str | None = None) -> None:
        self._folder_id = folder_id
        self._service: Any = None
        # googleapiclient service objects are not thread-safe.
        self._lock = threading.Lock()

    def _get_service(self) -> Any:
        if self._service is None:
            token_path = os.environ.get("GOOGLE_TOKEN_PATH", "token.json")
            if not os.path.exists(token_path):
                raise BlobStorageError(
                    f"Google OAuth token not found at {token_path}. "
                    "Complete the OAuth flow first."
                )
            creds = Credentials.from_authorized_user_file(token_path)  # type: ignore[no-untyped-call]
            self._service = build("drive", "v3", credentials=creds)
        return self._service

    def put(self, data: bytes, name: str) -> str:
        try:
            with self._lock:
                service = self._get_service()
                media = MediaIoBaseUpload(
                    io.BytesIO(data),
                    mimetype="application/octet-stream",
                    resumable=False,
                )
                file_metadata: dict[str, object] = {"name": safe_name(name)}
                if self._folder_id:
                    file_metadata["parents"] = [self._folder_id]
                created = (
                    service.files()
                    .create(
                        body=file_metadata,
                        media_body=media,
                        fields="id",
                        supportsAllDrives=True,
                    )
                    .execute()
                )
            file_id: str = created["id"]
            return file_id
        except BlobStorageError:
            raise
        except Exception as exc:
            raise BlobStorageError(str(exc)) from exc

    def get(self, ref: str) -> bytes:
        try:
            with self._lock:
                request = self._get_service().files().get_media(fileId=ref)
                buf = io.BytesIO()
                downloader = MediaIoBaseDownload(buf, request)
                done = False
                while not done:
                    _, done = downloader.next_chunk()
            return buf.getvalue()
        except BlobStorageError:
            raise
        except Exception as exc:
            raise BlobStorageError(str(exc)) from exc

    def delete(self, ref: str) -> None:
        """Delete *ref* from Drive. A file that is already gone is a no-op."""
        try:
            with self._lock:
                self._get_service().files().delete(fileId=ref, supportsAllDrives=True).execute()
        except HttpError as exc:
            if exc.resp.status == 404:
                logger.debug("drive blob %s already deleted", ref)
                return
            raise BlobStorageError(str(exc)) from exc
        except BlobStorageError:
            raise
        except Exception as exc:
            raise BlobStorageError(str(exc)) from exc


def get_blob_store(settings: Settings) -> BlobStore:
    if settings.blob_backend == "drive":
        return DriveBlobStore(folder_id=os.environ.get("DRIVE_FOLDER_ID", "").strip() or None)
    return LocalBlobStore(settings.blob_dir)
