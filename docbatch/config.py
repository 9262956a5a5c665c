"""Runtime settings read from environment variables."""

import os
from dataclasses import dataclass
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    blob_backend: str
    blob_dir: Path
    extraction_service_url: str | None
    extraction_timeout_seconds: int
    extraction_max_attempts: int
    output_ttl_hours: int
    claim_timeout_seconds: int
    worker_concurrency: int
    worker_poll_seconds: int
    reaper_interval_seconds: int
    reaper_enabled: bool


def load_settings() -> Settings:
    """Build Settings from the current environment.

    Raises ValueError if a numeric variable is malformed or the blob backend is unknown.
    """
    blob_backend = os.environ.get("BLOB_BACKEND", "local").strip() or "local"
    if blob_backend not in ("local", "drive"):
        raise ValueError(f"BLOB_BACKEND must be 'local' or 'drive', got {blob_backend!r}")
    return Settings(
        blob_backend=blob_backend,
        blob_dir=Path(os.environ.get("BLOB_DIR", "blobs")),
        extraction_service_url=os.environ.get("EXTRACTION_SERVICE_URL", "").strip() or None,
        extraction_timeout_seconds=_int_env("EXTRACTION_TIMEOUT_SECONDS", 120),
        extraction_max_attempts=max(1, _int_env("EXTRACTION_MAX_ATTEMPTS", 3)),
        output_ttl_hours=_int_env("OUTPUT_TTL_HOURS", 24),
        claim_timeout_seconds=_int_env("CLAIM_TIMEOUT_SECONDS", 900),
        worker_concurrency=max(1, _int_env("WORKER_CONCURRENCY", 4)),
        worker_poll_seconds=_int_env("WORKER_POLL_SECONDS", 5),
        reaper_interval_seconds=_int_env("REAPER_INTERVAL_SECONDS", 300),
        reaper_enabled=os.environ.get("REAPER_ENABLED", "1").strip() not in ("0", "false", "no"),
    )
