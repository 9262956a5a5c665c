"""Unit tests for the extraction worker and its background loop."""

import threading
import time
from collections.abc import Callable, Iterator
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session, sessionmaker
from tenacity import wait_none

from docbatch.models.batch_file import BatchFile
from docbatch.models.batch_job import BatchJob
from docbatch.services import worker
from docbatch.services.blobs import BlobStorageError, LocalBlobStore
from docbatch.services.extraction import ExtractionAdapter
from docbatch.services.scheduler import Scheduler
from docbatch.services.store import JobStore
from docbatch.services.types import ExtractionResult
from docbatch.services.worker import ExtractionWorker

MakeJob = Callable[..., BatchJob]


def _extractor(pages: int = 2) -> MagicMock:
    extractor = MagicMock()
    extractor.extract.return_value = ExtractionResult(text="text", page_count=pages, record_id=None)
    return extractor


def _make_worker(
    extractor: MagicMock,
    blobs: LocalBlobStore,
    store: JobStore,
    session_factory: sessionmaker[Session],
    concurrency: int = 2,
) -> ExtractionWorker:
    adapter = ExtractionAdapter(extractor, blobs, store, max_attempts=2, wait=wait_none())
    return ExtractionWorker(Scheduler(), adapter, session_factory, concurrency=concurrency)


@pytest.fixture()
def stopped_loop() -> Iterator[None]:
    yield
    worker.stop_loop()
    worker.join(timeout=5)


class TestRunOnce:
    def test_processes_up_to_concurrency_files(
        self,
        db: Session,
        blobs: LocalBlobStore,
        store: JobStore,
        make_job: MakeJob,
        session_factory: sessionmaker[Session],
    ) -> None:
        job = make_job(sizes=[1024, 1024, 1024])
        extraction_worker = _make_worker(_extractor(), blobs, store, session_factory)

        assert extraction_worker.run_once() == 2
        assert extraction_worker.run_once() == 1
        assert extraction_worker.run_once() == 0

        db.refresh(job)
        assert job.status == "completed"
        assert job.processed_pages == 6

    def test_system_error_leaves_file_claimed(
        self,
        db: Session,
        store: JobStore,
        make_job: MakeJob,
        session_factory: sessionmaker[Session],
    ) -> None:
        job = make_job()
        broken_blobs = MagicMock()
        broken_blobs.get.side_effect = BlobStorageError("disk gone")
        extraction_worker = _make_worker(_extractor(), broken_blobs, store, session_factory)

        assert extraction_worker.run_once() == 0

        batch_file = (
            db.query(BatchFile).filter(BatchFile.job_id == job.id).populate_existing().one()
        )
        assert batch_file.status == "processing"


class TestLoop:
    def test_loop_drains_queue_and_reports_status(
        self,
        db: Session,
        blobs: LocalBlobStore,
        store: JobStore,
        make_job: MakeJob,
        session_factory: sessionmaker[Session],
        stopped_loop: None,
    ) -> None:
        job = make_job(sizes=[1024] * 4)
        extraction_worker = _make_worker(_extractor(pages=1), blobs, store, session_factory)

        status = worker.start_loop(extraction_worker, poll_seconds=0.05)
        assert status.running is True
        assert worker.start_loop(extraction_worker, poll_seconds=0.05).running is True

        deadline = time.monotonic() + 10
        while worker.get_status().files_done < 4 and time.monotonic() < deadline:
            time.sleep(0.05)

        stopped = worker.stop_loop()
        worker.join(timeout=5)
        assert stopped.running is False
        assert worker.get_status().files_done == 4
        assert worker.get_status().in_flight == 0
        db.refresh(job)
        assert job.status == "completed"

    def test_restart_while_draining_keeps_one_claiming_loop(
        self,
        db: Session,
        blobs: LocalBlobStore,
        store: JobStore,
        make_job: MakeJob,
        session_factory: sessionmaker[Session],
        stopped_loop: None,
    ) -> None:
        job = make_job(sizes=[1024] * 3)
        started = threading.Event()
        release = threading.Event()

        def _slow_extract(data: bytes, hints: object) -> ExtractionResult:
            started.set()
            release.wait(timeout=5)
            return ExtractionResult(text="text", page_count=1, record_id=None)

        extractor = MagicMock()
        extractor.extract.side_effect = _slow_extract
        extraction_worker = _make_worker(
            extractor, blobs, store, session_factory, concurrency=1
        )

        worker.start_loop(extraction_worker, poll_seconds=0.01)
        assert started.wait(timeout=5)
        worker.stop_loop()
        with worker._lock:
            draining = list(worker._threads)
        worker.start_loop(extraction_worker, poll_seconds=0.01)
        release.set()

        for thread in draining:
            thread.join(timeout=5)
            assert not thread.is_alive()
        assert worker.is_running()
        with worker._lock:
            alive = [t for t in worker._threads if t.is_alive()]
        assert len(alive) == 1

        deadline = time.monotonic() + 10
        while job.status != "completed" and time.monotonic() < deadline:
            time.sleep(0.05)
            db.refresh(job)
        assert job.status == "completed"
