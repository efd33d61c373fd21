"""Handlers for the background job types."""

from pathlib import Path
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.schemas.transaction import ImportProgress
from app.services.account_service import AccountLocks
from app.services.alert_service import AlertService
from app.services.audit_service import AuditService
from app.services.import_service import ImportService
from app.services.job_queue import (
    EVALUATE_ACCOUNT,
    EVALUATE_TRANSACTION,
    IMPORT_TRANSACTIONS,
    JobHandler,
    JobQueue,
    WorkerPool,
)
from app.services.rule_engine import RuleEngine

logger = structlog.get_logger()


class JobHandlers:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        locks: AccountLocks | None = None,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.locks = locks or AccountLocks()
        self.audit = AuditService(session_factory)

    def as_mapping(self) -> dict[str, JobHandler]:
        return {
            IMPORT_TRANSACTIONS: self.import_transactions,
            EVALUATE_TRANSACTION: self.evaluate_transaction,
            EVALUATE_ACCOUNT: self.evaluate_account,
        }

    async def import_transactions(self, job_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Import an uploaded file. Imports into the same account run one at a time."""
        account_id = payload["account_id"]
        path = Path(payload["file_path"])

        async def report(processed: int, successful: int, failed: int) -> None:
            progress = ImportProgress(processed=processed, successful=successful, failed=failed)
            await self.queue.update_progress(job_id, progress.model_dump())

        async with self.locks.for_account(account_id):
            with path.open("rb") as stream:
                result = await ImportService(self.session_factory, audit=self.audit).import_stream(
                    stream,
                    account_id,
                    column_mapping=payload.get("column_mapping"),
                    job_id=job_id,
                    progress=report,
                    user_id=payload.get("user_id"),
                )

        path.unlink(missing_ok=True)
        output = result.model_dump()
        if settings.evaluate_after_import and result.successful > result.duplicates:
            output["evaluation_job_id"] = await self.queue.enqueue(
                EVALUATE_ACCOUNT, {"account_id": account_id}
            )
        return output

    async def evaluate_transaction(self, job_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with self.session_factory() as db:
            engine = RuleEngine(db, AlertService(db, self.audit))
            alerts = await engine.evaluate_transaction(payload["transaction_id"])
        return {"alerts_created": len(alerts), "alert_ids": [a.id for a in alerts]}

    async def evaluate_account(self, job_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with self.session_factory() as db:
            engine = RuleEngine(db, AlertService(db, self.audit))
            created = await engine.run_rules_for_account(payload["account_id"], payload.get("since_days"))
        return {"alerts_created": created}


def build_worker_pool(
    session_factory: async_sessionmaker[AsyncSession],
    queue: JobQueue | None = None,
    concurrency: int | None = None,
) -> WorkerPool:
    queue = queue or JobQueue(session_factory)
    handlers = JobHandlers(session_factory, queue)
    return WorkerPool(queue, handlers.as_mapping(), concurrency=concurrency)
