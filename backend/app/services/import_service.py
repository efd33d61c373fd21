"""Streaming CSV import into the transaction store."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from decimal import Decimal
from typing import BinaryIO, TextIO

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.job import Job
from app.schemas.transaction import ImportResult, ImportRowError
from app.services import audit_service
from app.services.account_service import AccountService
from app.services.audit_service import AuditService
from app.services.categorization_service import CategorizationService
from app.services.transaction_store import TransactionStore
from app.utils import money
from app.utils.file_parsers import (
    ColumnMapping,
    RawRow,
    compute_idempotency_key,
    detect_column_mapping,
    iter_csv_rows,
    parse_row,
)

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, int], Awaitable[None]]


def _batches(rows: Iterable[RawRow], size: int) -> Iterable[list[RawRow]]:
    batch: list[RawRow] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class ImportService:
    """Imports a delimited feed in fixed-size batches.

    Each batch is inserted with conflict-ignore semantics and committed
    before the next one is read; categorization of the new rows runs as a
    background task on its own session. The account balance is adjusted
    once, by the sum of the newly inserted amounts, after the last batch.
    For a job-driven import that sum is kept on the job row and committed
    with each batch, so a retry after a partial failure still applies the
    amounts of the rows the failed attempt inserted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        batch_size: int | None = None,
        audit: AuditService | None = None,
    ):
        self.session_factory = session_factory
        self.batch_size = batch_size or settings.import_batch_size
        self.audit = audit or AuditService(session_factory)

    async def import_stream(
        self,
        stream: BinaryIO | TextIO,
        account_id: int,
        column_mapping: dict[str, str] | None = None,
        job_id: str | None = None,
        progress: ProgressCallback | None = None,
        user_id: int | None = None,
    ) -> ImportResult:
        async with self.session_factory() as db:
            account = await AccountService(db).get_account(account_id, user_id)
            currency = account.currency or settings.default_currency

        headers, rows = iter_csv_rows(stream)
        if column_mapping:
            mapping = ColumnMapping.from_dict(column_mapping)
        else:
            mapping = detect_column_mapping(headers)
        logger.info("import_started", account_id=account_id, job_id=job_id, mapping=mapping.to_dict())

        result = ImportResult()
        delta = Decimal("0")
        occurrences: dict[tuple, int] = {}
        categorization_tasks: list[asyncio.Task] = []

        try:
            async with self.session_factory() as db:
                store = TransactionStore(db)
                batches = _batches(rows, self.batch_size)
                while True:
                    # Reading the feed is blocking file I/O
                    batch = await asyncio.to_thread(next, batches, None)
                    if batch is None:
                        break
                    inserted_ids, batch_delta = await self._import_batch(
                        store, batch, account_id, mapping, currency, occurrences, result
                    )
                    if job_id is not None and batch_delta != 0:
                        await db.execute(
                            update(Job)
                            .where(Job.id == job_id)
                            .values(balance_delta=Job.balance_delta + batch_delta)
                        )
                    await db.commit()
                    delta = money.add(delta, batch_delta)
                    logger.info(
                        "import_batch_committed",
                        account_id=account_id,
                        job_id=job_id,
                        rows=len(batch),
                        inserted=len(inserted_ids),
                    )
                    if inserted_ids:
                        categorization_tasks.append(asyncio.create_task(self._categorize(inserted_ids)))
                    if progress is not None:
                        await progress(result.total, result.successful, result.failed)
        finally:
            await self._drain(categorization_tasks)

        async with self.session_factory() as db:
            if job_id is not None:
                job = await db.get(Job, job_id)
                if job is not None:
                    # Includes rows committed by earlier attempts of the same job
                    delta = money.round(job.balance_delta)
            await AccountService(db).apply_balance_delta(account_id, delta, job_id)

        logger.info(
            "import_completed",
            account_id=account_id,
            job_id=job_id,
            total=result.total,
            successful=result.successful,
            failed=result.failed,
            duplicates=result.duplicates,
            balance_delta=money.to_json(delta),
        )
        await self.audit.log(
            audit_service.TRANSACTION_IMPORTED,
            user_id=user_id,
            resource_type="account",
            resource_id=account_id,
            metadata={
                "job_id": job_id,
                "total": result.total,
                "successful": result.successful,
                "failed": result.failed,
                "duplicates": result.duplicates,
            },
        )
        return result

    async def _import_batch(
        self,
        store: TransactionStore,
        batch: list[RawRow],
        account_id: int,
        mapping: ColumnMapping,
        currency: str,
        occurrences: dict[tuple, int],
        result: ImportResult,
    ) -> tuple[list[int], Decimal]:
        values = []
        for raw in batch:
            result.total += 1
            try:
                pt = parse_row(raw.data, mapping, currency)
            except ValueError as e:
                result.failed += 1
                result.errors.append(ImportRowError(row=raw.number, error=str(e)))
                continue

            # Order of this row among identical rows of the same file (1, 2, ...)
            key = (pt.timestamp, pt.amount, pt.description.strip().lower(), (pt.merchant or "").strip().lower())
            occurrences[key] = occurrences.get(key, 0) + 1

            values.append(
                {
                    "account_id": account_id,
                    "timestamp": pt.timestamp,
                    "description": pt.description,
                    "amount": pt.amount,
                    "currency": pt.currency,
                    "merchant": pt.merchant,
                    "reference_number": pt.reference_number,
                    "idempotency_key": compute_idempotency_key(account_id, pt, occurrences[key]),
                    "source": "upload",
                }
            )

        inserted = await store.insert_ignore_conflicts(values)
        result.successful += len(values)
        result.duplicates += len(values) - len(inserted)
        return [r.id for r in inserted], money.sum_amounts(r.amount for r in inserted)

    async def _categorize(self, transaction_ids: list[int]) -> None:
        async with self.session_factory() as db:
            await CategorizationService(db).categorize_transactions(transaction_ids)

    async def _drain(self, tasks: list[asyncio.Task]) -> None:
        """Wait for every categorization task; failures are logged, never raised."""
        if not tasks:
            return
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                logger.warning("categorization_failed", error=str(outcome))