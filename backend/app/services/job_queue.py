"""Durable background job queue and the asyncio worker pool that drains it.

Jobs are rows of the ``jobs`` table, so a restarted process picks up work
left ``waiting`` or ``active`` by its predecessor. Within a process, job ids
travel through an ``asyncio.Queue`` to a fixed number of worker tasks, each
running one job at a time.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.exceptions import NotFoundError
from app.models.base import utcnow
from app.models.job import Job
from app.schemas.job import JobState

logger = structlog.get_logger()

IMPORT_TRANSACTIONS = "import-transactions"
EVALUATE_TRANSACTION = "evaluate-transaction"
EVALUATE_ACCOUNT = "evaluate-account"

# handler(job_id, payload) -> result
JobHandler = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any] | None]]


class JobQueue:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.ready: asyncio.Queue[str] = asyncio.Queue()

    async def enqueue(self, job_type: str, payload: dict[str, Any]) -> str:
        async with self.session_factory() as db:
            job = Job(type=job_type, payload=payload, status="waiting", progress={})
            db.add(job)
            await db.commit()
            job_id = job.id
        self.ready.put_nowait(job_id)
        logger.info("job_enqueued", job_id=job_id, job_type=job_type)
        return job_id

    async def get_state(self, job_id: str) -> JobState:
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if not job:
                raise NotFoundError("Job", job_id)
            return JobState(
                job_id=job.id,
                type=job.type,
                status=job.status,
                progress=job.progress,
                result=job.result,
                error=job.error,
                attempts=job.attempts,
                created_at=job.created_at,
                started_at=job.started_at,
                finished_at=job.finished_at,
            )

    async def get_progress(self, job_id: str) -> dict[str, Any] | None:
        return (await self.get_state(job_id)).progress

    async def get_result(self, job_id: str) -> dict[str, Any] | None:
        return (await self.get_state(job_id)).result

    async def update_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job:
                job.progress = progress
                await db.commit()

    async def mark_active(self, job_id: str) -> Job | None:
        """Claim a job for a worker. Returns None when it is missing or already finished."""
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None or job.status in ("completed", "failed"):
                return None
            job.status = "active"
            job.attempts += 1
            job.started_at = utcnow()
            job.error = None
            await db.commit()
            return job

    async def mark_completed(self, job_id: str, result: dict[str, Any] | None) -> None:
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job:
                job.status = "completed"
                job.result = result
                job.finished_at = utcnow()
                await db.commit()

    async def mark_failed(self, job_id: str, error: str, retry: bool = False) -> None:
        """Record a failure; with ``retry`` the job goes back to ``waiting``."""
        async with self.session_factory() as db:
            job = await db.get(Job, job_id)
            if job is None:
                return
            job.error = error
            if retry:
                job.status = "waiting"
            else:
                job.status = "failed"
                job.finished_at = utcnow()
            await db.commit()
        if retry:
            self.ready.put_nowait(job_id)

    async def pending_job_ids(self) -> list[str]:
        """Jobs a previous process left unfinished, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.id)
                .where(Job.status.in_(("waiting", "active")))
                .order_by(Job.created_at, Job.id)
            )
            return list(result.scalars().all())


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, JobHandler],
        concurrency: int | None = None,
        max_attempts: int | None = None,
    ):
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency or settings.worker_concurrency
        self.max_attempts = max_attempts or settings.job_max_attempts
        self._workers: list[asyncio.Task] = []

    async def start(self, recover: bool = True) -> None:
        if recover:
            pending = await self.queue.pending_job_ids()
            for job_id in pending:
                self.queue.ready.put_nowait(job_id)
            if pending:
                logger.info("jobs_recovered", count=len(pending))
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"job-worker-{n}") for n in range(self.concurrency)
        ]
        logger.info("worker_pool_started", concurrency=self.concurrency)

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("worker_pool_stopped")

    async def join(self) -> None:
        """Wait until every queued job (including retries) has been processed."""
        await self.queue.ready.join()

    async def _worker(self, number: int) -> None:
        while True:
            job_id = await self.queue.ready.get()
            try:
                await self.run_job(job_id)
            finally:
                self.queue.ready.task_done()

    async def run_job(self, job_id: str) -> None:
        job = await self.queue.mark_active(job_id)
        if job is None:
            return
        log = logger.bind(job_id=job_id, job_type=job.type, attempt=job.attempts)

        handler = self.handlers.get(job.type)
        if handler is None:
            log.error("job_type_unknown")
            await self.queue.mark_failed(job_id, f"Unknown job type: {job.type}")
            return

        log.info("job_started")
        try:
            result = await handler(job_id, job.payload)
        except Exception as e:
            retry = job.attempts < self.max_attempts
            log.exception("job_failed", retry=retry)
            await self.queue.mark_failed(job_id, str(e) or type(e).__name__, retry=retry)
            return
        await self.queue.mark_completed(job_id, result)
        log.info("job_completed")
