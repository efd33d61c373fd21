"""Background job API routes: enqueue imports and rule runs, poll their state."""

import json
import uuid
from pathlib import Path

import structlog
from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db, get_job_queue
from app.config import settings
from app.core.exceptions import ValidationError
from app.schemas.job import JobHandle, JobState
from app.services.account_service import AccountService
from app.services.job_queue import EVALUATE_ACCOUNT, EVALUATE_TRANSACTION, IMPORT_TRANSACTIONS, JobQueue

logger = structlog.get_logger()

router = APIRouter()

SUPPORTED_EXTENSIONS = ("csv", "txt", "tsv")
_CHUNK_SIZE = 1024 * 1024


async def _save_upload(file: UploadFile) -> Path:
    """Stream the upload to ``upload_dir`` without holding it in memory."""
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / f"{uuid.uuid4().hex}.csv"
    limit = settings.max_upload_size_mb * 1024 * 1024

    size = 0
    with path.open("wb") as out:
        while chunk := await file.read(_CHUNK_SIZE):
            size += len(chunk)
            if size > limit:
                out.close()
                path.unlink(missing_ok=True)
                raise ValidationError(f"File exceeds {settings.max_upload_size_mb} MB")
            out.write(chunk)
    return path


@router.post("/import", response_model=JobHandle, status_code=202)
async def import_transactions(
    account_id: int = Form(...),
    user_id: int | None = Form(None),
    column_mapping: str | None = Form(None, description="JSON object: field -> header name"),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
):
    """Upload a CSV feed and enqueue its import. Returns immediately with a job handle."""
    await AccountService(db).get_account(account_id, user_id)

    filename = file.filename or "upload.csv"
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext not in SUPPORTED_EXTENSIONS:
        supported = ", ".join(f".{e}" for e in SUPPORTED_EXTENSIONS)
        raise ValidationError(f"Unsupported format: .{ext}. Accepted formats: {supported}")

    mapping = None
    if column_mapping:
        try:
            mapping = json.loads(column_mapping)
        except json.JSONDecodeError as e:
            raise ValidationError(f"column_mapping is not valid JSON: {e}") from e
        if not isinstance(mapping, dict):
            raise ValidationError("column_mapping must be a JSON object")

    path = await _save_upload(file)
    payload = {"account_id": account_id, "user_id": user_id, "file_path": str(path)}
    if mapping:
        payload["column_mapping"] = mapping
    job_id = await queue.enqueue(IMPORT_TRANSACTIONS, payload)
    logger.info("import_upload_received", job_id=job_id, account_id=account_id, filename=filename)
    return JobHandle(job_id=job_id, type=IMPORT_TRANSACTIONS, status="waiting")


@router.post("/evaluate/{transaction_id}", response_model=JobHandle, status_code=202)
async def evaluate_transaction(transaction_id: int, queue: JobQueue = Depends(get_job_queue)):
    job_id = await queue.enqueue(EVALUATE_TRANSACTION, {"transaction_id": transaction_id})
    return JobHandle(job_id=job_id, type=EVALUATE_TRANSACTION, status="waiting")


@router.post("/evaluate-account/{account_id}", response_model=JobHandle, status_code=202)
async def evaluate_account(
    account_id: int,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
):
    await AccountService(db).get_account(account_id)
    job_id = await queue.enqueue(EVALUATE_ACCOUNT, {"account_id": account_id})
    return JobHandle(job_id=job_id, type=EVALUATE_ACCOUNT, status="waiting")


@router.get("/{job_id}", response_model=JobState)
async def get_job(job_id: str, queue: JobQueue = Depends(get_job_queue)):
    """State, progress and result of a job."""
    return await queue.get_state(job_id)
