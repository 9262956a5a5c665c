"""Run the extraction worker (and optionally the reaper) as a standalone process.

Usage:
    python scripts/run_worker.py [--db-url URL] [--concurrency N] [--once] [--no-reaper]

--once claims one round of files, processes them and exits; useful from cron.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

_ROOT_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT_DIR))

load_dotenv(_ROOT_DIR / ".env")

# Parse --db-url early so DATABASE_URL is set before the db module builds its engine.
_pre = argparse.ArgumentParser(add_help=False)
_pre.add_argument("--db-url", default=os.environ.get("DATABASE_URL"))
_pre_args, _ = _pre.parse_known_args()
if _pre_args.db_url:
    os.environ["DATABASE_URL"] = _pre_args.db_url

from docbatch.db import create_tables, get_session_factory  # noqa: E402
from docbatch.deps import (  # noqa: E402
    get_extraction_adapter,
    get_scheduler,
    get_settings,
    run_sweep,
)
from docbatch.services import reaper, worker  # noqa: E402
from docbatch.services.worker import ExtractionWorker  # noqa: E402

logger = logging.getLogger("run_worker")


def main() -> None:
    parser = argparse.ArgumentParser(description="Process queued batch files.")
    parser.add_argument("--db-url", help="Database URL (defaults to $DATABASE_URL)")
    parser.add_argument("--concurrency", type=int, help="Files processed in parallel")
    parser.add_argument("--once", action="store_true", help="Process one round and exit")
    parser.add_argument("--no-reaper", action="store_true", help="Do not run periodic cleanup")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    settings = get_settings()
    create_tables()
    extraction_worker = ExtractionWorker(
        get_scheduler(),
        get_extraction_adapter(),
        get_session_factory(),
        concurrency=args.concurrency or settings.worker_concurrency,
    )

    if args.once:
        done = extraction_worker.run_once()
        print(f"Processed {done} file(s).")
        return

    stopped = threading.Event()

    def _shutdown(signum: int, _frame: object) -> None:
        logger.info("received signal %d, shutting down", signum)
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    if settings.reaper_enabled and not args.no_reaper:
        reaper.start(run_sweep, settings.reaper_interval_seconds)
    worker.start_loop(extraction_worker, poll_seconds=settings.worker_poll_seconds)
    stopped.wait()
    worker.stop_loop()
    worker.join()
    reaper.stop()
    status = worker.get_status()
    print(f"Stopped after {status.files_done} file(s).")


if __name__ == "__main__":
    main()
