"""HTTP surface tests using FastAPI's TestClient with overridden dependencies."""

import uuid
from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from docbatch.db import get_session
from docbatch.deps import get_job_store, get_merger, get_token_service
from docbatch.main import app
from docbatch.models.batch_file import BatchFile
from docbatch.services.blobs import LocalBlobStore
from docbatch.services.merger import OutputMerger
from docbatch.services.scheduler import Scheduler
from docbatch.services.store import JobStore
from docbatch.services.tokens import TokenService
from docbatch.services.types import FileOutcome

OWNER = {"X-Owner-Id": "owner-1"}


@pytest.fixture()
def client(
    session_factory: sessionmaker[Session], blobs: LocalBlobStore, store: JobStore
) -> Iterator[TestClient]:
    def _session() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_job_store] = lambda: store
    app.dependency_overrides[get_merger] = lambda: OutputMerger(blobs)
    app.dependency_overrides[get_token_service] = lambda: TokenService(blobs)
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def _submit(client: TestClient, n_files: int = 2, **form: str) -> dict[str, object]:
    files = [
        ("files", (f"doc-{i}.pdf", b"%PDF" + b"x" * 1000, "application/pdf"))
        for i in range(n_files)
    ]
    response = client.post(
        "/jobs", data={"name": "Contracts", **form}, files=files, headers=OWNER
    )
    assert response.status_code == 201, response.text
    job: dict[str, object] = response.json()["job"]
    return job


def _complete_all(db: Session, store: JobStore, blobs: LocalBlobStore) -> None:
    while (claim := Scheduler().claim_next_file(db)) is not None:
        ref = blobs.put(b"extracted words", "out.txt")
        store.update_file_status(claim["file_id"], FileOutcome.completed(1, ref), db)


class TestSubmitAndRead:
    def test_submit_creates_job(self, client: TestClient) -> None:
        job = _submit(client, n_files=2, priority="3")

        assert job["status"] == "pending"
        assert job["total_files"] == 2
        assert job["priority"] == 3
        assert job["owner_id"] == "owner-1"

    def test_owner_header_is_required(self, client: TestClient) -> None:
        assert client.get("/jobs").status_code == 401

    def test_merge_format_without_merge_is_rejected(self, client: TestClient) -> None:
        response = client.post(
            "/jobs",
            data={"name": "x", "merge_format": "md"},
            files=[("files", ("a.pdf", b"%PDF", "application/pdf"))],
            headers=OWNER,
        )
        assert response.status_code == 422

    def test_over_quota_submission_is_forbidden(self, client: TestClient) -> None:
        big = b"%PDF" + b"x" * (11 * 50 * 1024)
        response = client.post(
            "/jobs",
            data={"name": "huge"},
            files=[("files", ("big.pdf", big, "application/pdf"))],
            headers=OWNER,
        )

        assert response.status_code == 403
        decision = response.json()["detail"]["decision"]
        assert decision["requires_upgrade"] is True
        assert decision["allowed"] is False

    def test_list_get_and_files(self, client: TestClient) -> None:
        job = _submit(client, n_files=3)

        listed = client.get("/jobs", headers=OWNER).json()["jobs"]
        fetched = client.get(f"/jobs/{job['id']}", headers=OWNER).json()["job"]
        files = client.get(f"/jobs/{job['id']}/files", headers=OWNER).json()["files"]

        assert [j["id"] for j in listed] == [job["id"]]
        assert fetched["name"] == "Contracts"
        assert [f["original_filename"] for f in files] == ["doc-0.pdf", "doc-1.pdf", "doc-2.pdf"]

    def test_other_owners_job_is_not_found(self, client: TestClient) -> None:
        job = _submit(client)
        response = client.get(f"/jobs/{job['id']}", headers={"X-Owner-Id": "mallory"})
        assert response.status_code == 404

    def test_queue_and_estimate(self, client: TestClient) -> None:
        job = _submit(client)

        queue = client.get("/jobs/queue").json()["queue"]
        estimate = client.post(
            "/jobs/estimate", json={"file_sizes": [0, 1, 200 * 1024]}, headers=OWNER
        ).json()

        assert queue[0]["job_id"] == job["id"]
        assert queue[0]["pending_files"] == 2
        assert estimate["estimated_pages"] == 5
        assert estimate["allowed"] is True
        assert estimate["estimated_cost_usd"] == pytest.approx(0.05)


class TestTransitions:
    def test_cancel_then_cancel_again(self, client: TestClient) -> None:
        job = _submit(client)

        first = client.post(f"/jobs/{job['id']}/cancel", headers=OWNER)
        second = client.post(f"/jobs/{job['id']}/cancel", headers=OWNER)

        assert first.status_code == 200
        assert first.json()["job"]["status"] == "cancelled"
        assert first.json()["job"]["skipped_files"] == 2
        assert second.status_code == 200

    def test_retry_of_pending_file_conflicts(self, client: TestClient, db: Session) -> None:
        job = _submit(client)
        job_id = uuid.UUID(str(job["id"]))
        batch_file = db.query(BatchFile).filter(BatchFile.job_id == job_id).first()
        assert batch_file is not None
        file_id = batch_file.id

        response = client.post(f"/jobs/{job['id']}/files/{file_id}/retry", headers=OWNER)

        assert response.status_code == 409

    def test_delete_job(self, client: TestClient) -> None:
        job = _submit(client)

        assert client.delete(f"/jobs/{job['id']}", headers=OWNER).status_code == 204
        assert client.get(f"/jobs/{job['id']}", headers=OWNER).status_code == 404


class TestMergeAndDownload:
    def test_merge_before_completion_conflicts(self, client: TestClient) -> None:
        job = _submit(client)
        response = client.post(f"/jobs/{job['id']}/merge", json={"format": "txt"}, headers=OWNER)
        assert response.status_code == 409

    def test_merge_then_download(
        self, client: TestClient, db: Session, store: JobStore, blobs: LocalBlobStore
    ) -> None:
        job = _submit(client, merge_requested="true", merge_format="md")
        _complete_all(db, store, blobs)

        merged = client.post(f"/jobs/{job['id']}/merge", headers=OWNER)
        assert merged.status_code == 200, merged.text
        output = merged.json()["output"]
        assert output["format"] == "md"

        download = client.get(output["download_url"])

        assert download.status_code == 200
        assert download.headers["content-type"].startswith("text/markdown")
        assert "extracted words" in download.text
        assert output["filename"] in download.headers["content-disposition"]

    def test_unknown_token_is_404(self, client: TestClient) -> None:
        assert client.get("/downloads/not-a-token").status_code == 404


class TestWorkerControl:
    def test_status_reports_idle_worker(self, client: TestClient) -> None:
        body = client.get("/worker/status").json()
        assert body["worker"]["running"] is False

    def test_sweep_endpoint(self, client: TestClient) -> None:
        body = client.post("/worker/sweep").json()
        assert body["sweep"]["outputs_reaped"] == 0
        assert body["sweep"]["claims_released"] == 0
