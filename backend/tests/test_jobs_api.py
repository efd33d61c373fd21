"""Job API tests: uploads are stored and enqueued, then processed by the worker pool."""

import json

import pytest

from app.config import settings
from app.services.job_queue import EVALUATE_ACCOUNT, EVALUATE_TRANSACTION, IMPORT_TRANSACTIONS
from app.services.jobs import build_worker_pool

CSV = b"Date,Description,Amount\n2024-01-01,Salary,2500.00\n2024-01-02,Coffee,-3.50\n"


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    directory = tmp_path / "uploads"
    monkeypatch.setattr(settings, "upload_dir", str(directory))
    monkeypatch.setattr(settings, "evaluate_after_import", False)
    return directory


@pytest.mark.asyncio
async def test_upload_enqueues_import_job(client, job_queue, account, upload_dir):
    response = await client.post(
        "/api/v1/jobs/import",
        data={"account_id": str(account.id)},
        files={"file": ("feed.csv", CSV, "text/csv")},
    )

    assert response.status_code == 202
    handle = response.json()
    assert handle["type"] == IMPORT_TRANSACTIONS
    assert handle["status"] == "waiting"

    state = await client.get(f"/api/v1/jobs/{handle['job_id']}")
    assert state.status_code == 200
    assert state.json()["status"] == "waiting"
    assert len(list(upload_dir.iterdir())) == 1


@pytest.mark.asyncio
async def test_uploaded_import_is_processed(client, session_factory, job_queue, account, upload_dir):
    response = await client.post(
        "/api/v1/jobs/import",
        data={
            "account_id": str(account.id),
            "column_mapping": json.dumps({"date": "Date", "description": "Description", "amount": "Amount"}),
        },
        files={"file": ("feed.csv", CSV, "text/csv")},
    )
    job_id = response.json()["job_id"]

    pool = build_worker_pool(session_factory, job_queue, concurrency=1)
    await pool.start(recover=False)
    try:
        await pool.join()
    finally:
        await pool.stop()

    state = (await client.get(f"/api/v1/jobs/{job_id}")).json()
    assert state["status"] == "completed"
    assert state["result"]["successful"] == 2
    assert state["progress"]["processed"] == 2
    assert list(upload_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_extension(client, account):
    response = await client.post(
        "/api/v1/jobs/import",
        data={"account_id": str(account.id)},
        files={"file": ("feed.xlsx", b"not csv", "application/octet-stream")},
    )
    assert response.status_code == 422
    assert "Unsupported format" in response.json()["detail"]


@pytest.mark.asyncio
async def test_upload_rejects_bad_column_mapping(client, account):
    response = await client.post(
        "/api/v1/jobs/import",
        data={"account_id": str(account.id), "column_mapping": "[1, 2]"},
        files={"file": ("feed.csv", CSV, "text/csv")},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_upload_into_missing_account(client):
    response = await client.post(
        "/api/v1/jobs/import",
        data={"account_id": "999"},
        files={"file": ("feed.csv", CSV, "text/csv")},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_upload_into_someone_elses_account(client, account, analyst):
    response = await client.post(
        "/api/v1/jobs/import",
        data={"account_id": str(account.id), "user_id": str(analyst.id)},
        files={"file": ("feed.csv", CSV, "text/csv")},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_enqueue_rule_evaluation(client, account):
    response = await client.post("/api/v1/jobs/evaluate/42")
    assert response.status_code == 202
    assert response.json()["type"] == EVALUATE_TRANSACTION

    response = await client.post(f"/api/v1/jobs/evaluate-account/{account.id}")
    assert response.status_code == 202
    assert response.json()["type"] == EVALUATE_ACCOUNT


@pytest.mark.asyncio
async def test_evaluate_missing_account(client):
    response = await client.post("/api/v1/jobs/evaluate-account/999")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_unknown_job(client):
    response = await client.get("/api/v1/jobs/does-not-exist")
    assert response.status_code == 404
