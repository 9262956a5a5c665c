"""Shared pytest fixtures."""

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from docbatch.db import create_tables, make_engine
from docbatch.models.batch_job import BatchJob
from docbatch.schemas.batch import JobSubmitOptions
from docbatch.services.blobs import LocalBlobStore
from docbatch.services.store import JobStore
from tests.factories import upload


@pytest.fixture()
def engine(tmp_path: Path) -> Iterator[Engine]:
    """File-backed SQLite engine, so worker threads can share it."""
    eng = make_engine(f"sqlite:///{tmp_path / 'docbatch.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def blobs(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture()
def store(blobs: LocalBlobStore) -> JobStore:
    return JobStore(blobs)


@pytest.fixture()
def make_job(db: Session, store: JobStore) -> Callable[..., BatchJob]:
    """Factory creating a job with one file per entry in *sizes* (bytes)."""

    def _make(
        sizes: list[int] | None = None,
        owner_id: str = "owner-1",
        priority: int = 5,
        name: str = "Quarterly reports",
        merge_format: str | None = None,
    ) -> BatchJob:
        options = JobSubmitOptions(
            name=name,
            priority=priority,
            merge_requested=merge_format is not None,
            merge_format=merge_format,  # type: ignore[arg-type]
        )
        uploads = [upload(f"file-{i + 1}.pdf", size) for i, size in enumerate(sizes or [1024])]
        return store.create_job(owner_id, options, uploads, db)

    return _make
