"""Extraction worker: background loop that claims files and runs them through the adapter."""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from sqlalchemy.orm import Session

from docbatch.schemas.batch import WorkerStatus
from docbatch.services.extraction import ExtractionAdapter
from docbatch.services.scheduler import Scheduler
from docbatch.services.types import ClaimedFile

logger = logging.getLogger(__name__)


class ExtractionWorker:
    """Claims files from the scheduler and processes each in its own session."""

    def __init__(
        self,
        scheduler: Scheduler,
        adapter: ExtractionAdapter,
        session_factory: Callable[[], Session],
        concurrency: int = 4,
    ) -> None:
        self.scheduler = scheduler
        self.adapter = adapter
        self.session_factory = session_factory
        self.concurrency = max(1, concurrency)

    def claim(self, capacity: int) -> list[ClaimedFile]:
        db = self.session_factory()
        try:
            return self.scheduler.claim_files(db, capacity)
        finally:
            db.close()

    def process(self, claim: ClaimedFile) -> None:
        db = self.session_factory()
        try:
            self.adapter.process(claim, db)
        finally:
            db.close()

    def run_once(self) -> int:
        """Claim up to `concurrency` files, process them in parallel and wait for all.

        Returns the number of files handled without a system error.
        """
        claims = self.claim(self.concurrency)
        if not claims:
            return 0
        done = 0
        with ThreadPoolExecutor(max_workers=len(claims)) as pool:
            futures = [pool.submit(self.process, claim) for claim in claims]
            for future, claim in zip(futures, claims):
                if _succeeded(future, claim):
                    done += 1
        return done


def _succeeded(future: "Future[None]", claim: ClaimedFile) -> bool:
    exc = future.exception()
    if exc is None:
        return True
    logger.error(
        "worker: file %s of job %s failed with a system error; it will be re-queued "
        "after the claim timeout",
        claim["file_id"],
        claim["job_id"],
        exc_info=exc,
    )
    return False


# ── Module-level loop state ───────────────────────────────────────────────────

_running = False
_files_done = 0
_in_flight = 0
# Stop signal of the current loop. A draining loop keeps its own, already set, event.
_stop: threading.Event | None = None
_threads: list[threading.Thread] = []
_lock = threading.Lock()


def is_running() -> bool:
    with _lock:
        return _running


def get_status() -> WorkerStatus:
    with _lock:
        return WorkerStatus(running=_running, files_done=_files_done, in_flight=_in_flight)


def start_loop(worker: ExtractionWorker, poll_seconds: float = 5.0) -> WorkerStatus:
    """Start the background loop. No-op if already running."""
    global _running, _files_done, _stop
    with _lock:
        if _running:
            return WorkerStatus(running=True, files_done=_files_done, in_flight=_in_flight)
        _running = True
        _files_done = 0
        stop = _stop = threading.Event()
        thread = threading.Thread(target=_loop, args=(worker, poll_seconds, stop), daemon=True)
        _threads[:] = [t for t in _threads if t.is_alive()]
        _threads.append(thread)
        in_flight = _in_flight
    thread.start()
    return WorkerStatus(running=True, files_done=0, in_flight=in_flight)


def join(timeout: float | None = None) -> None:
    """Wait for stopped loops to drain their in-flight files."""
    with _lock:
        threads = list(_threads)
    for thread in threads:
        thread.join(timeout)
    with _lock:
        _threads[:] = [t for t in _threads if t.is_alive()]


def stop_loop() -> WorkerStatus:
    """Ask the loop to stop; files already claimed are finished first."""
    global _running, _stop
    with _lock:
        _running = False
        if _stop is not None:
            _stop.set()
            _stop = None
        return WorkerStatus(running=False, files_done=_files_done, in_flight=_in_flight)


def _adjust_in_flight(delta: int) -> None:
    global _in_flight
    with _lock:
        _in_flight += delta


def _record(futures: dict["Future[None]", ClaimedFile], finished: set["Future[None]"]) -> None:
    global _files_done
    for future in finished:
        claim = futures.pop(future)
        _adjust_in_flight(-1)
        if _succeeded(future, claim):
            with _lock:
                _files_done += 1


def _loop(worker: ExtractionWorker, poll_seconds: float, stop: threading.Event) -> None:
    """Keep every worker slot busy until *stop* is set, sleeping while the queue is empty."""
    logger.info("worker loop started (concurrency %d)", worker.concurrency)
    futures: dict[Future[None], ClaimedFile] = {}
    with ThreadPoolExecutor(max_workers=worker.concurrency) as pool:
        while not stop.is_set():
            free = worker.concurrency - len(futures)
            if free > 0:
                try:
                    claims = worker.claim(free)
                except Exception:
                    logger.exception("worker loop: claiming failed")
                    claims = []
                for claim in claims:
                    futures[pool.submit(worker.process, claim)] = claim
                _adjust_in_flight(len(claims))
            if not futures:
                stop.wait(poll_seconds)
                continue
            finished, _ = wait(list(futures), timeout=poll_seconds, return_when=FIRST_COMPLETED)
            _record(futures, finished)

        if futures:
            logger.info("worker loop: waiting for %d in-flight file(s)", len(futures))
            finished, _ = wait(list(futures))
            _record(futures, finished)
    logger.info("worker loop stopped")
