"""Periodic cleanup: expired artifacts and abandoned claims."""

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from docbatch.db import utcnow
from docbatch.schemas.batch import SweepResult
from docbatch.services.scheduler import Scheduler
from docbatch.services.store import JobStore
from docbatch.services.tokens import TokenService

logger = logging.getLogger(__name__)


def sweep(
    db: Session,
    tokens: TokenService,
    scheduler: Scheduler,
    store: JobStore,
    claim_timeout_seconds: int,
    now: datetime | None = None,
) -> SweepResult:
    """Run one cleanup pass.

    Expired outputs are deleted with their blobs. Files held in `processing` longer than
    the claim timeout go back to `pending`, or to `skipped` if their job was cancelled.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=claim_timeout_seconds)
    reaped = tokens.reap(db, now)
    released = scheduler.release_stale_claims(db, cutoff)
    abandoned = store.skip_abandoned_files(cutoff, db)
    if reaped or released or abandoned:
        logger.info(
            "sweep: %d output(s) reaped, %d claim(s) released, %d abandoned file(s) skipped",
            reaped,
            released,
            abandoned,
        )
    return SweepResult(outputs_reaped=reaped, claims_released=released + abandoned, swept_at=now)


# ── Module-level loop state ───────────────────────────────────────────────────

_stop = threading.Event()
_thread: threading.Thread | None = None
_lock = threading.Lock()


def is_running() -> bool:
    with _lock:
        return _thread is not None and _thread.is_alive()


def start(run_sweep: Callable[[], SweepResult], interval_seconds: float) -> None:
    """Start the periodic sweep thread. No-op if it is already running."""
    global _thread
    with _lock:
        if _thread is not None and _thread.is_alive():
            return
        _stop.clear()
        _thread = threading.Thread(
            target=_loop, args=(run_sweep, interval_seconds), daemon=True, name="reaper"
        )
        _thread.start()


def stop(timeout: float = 5.0) -> None:
    global _thread
    with _lock:
        thread = _thread
        _thread = None
        _stop.set()
    if thread is not None:
        thread.join(timeout)


def _loop(run_sweep: Callable[[], SweepResult], interval_seconds: float) -> None:
    logger.info("reaper started (every %ss)", interval_seconds)
    while not _stop.wait(interval_seconds):
        try:
            run_sweep()
        except Exception:
            logger.exception("reaper: sweep failed")
    logger.info("reaper stopped")
