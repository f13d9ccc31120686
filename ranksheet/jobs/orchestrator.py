"""
Job Orchestrator

Runs keyword refreshes as background jobs:

    QUEUED -> RUNNING -> SUCCEEDED | PARTIAL | FAILED

Each job is an asyncio task that refreshes its keywords with at most
`concurrency` in flight. A keyword whose lock is held elsewhere is
skipped; a keyword that fails is recorded and the batch continues. Only
an unreachable store fails the whole job.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ranksheet.errors import LockNotAcquired, PersistenceError, ValidationError
from ranksheet.jobs.state import JobState, JobStatus, JobStore, JobType
from ranksheet.persistence.locks import LockProvider
from ranksheet.persistence.store import KeywordStore
from ranksheet.pipeline.refresh import FAILED, REFRESHED, KeywordRefresher, RefreshOutcome

logger = logging.getLogger(__name__)

MAX_REFRESH_LIMIT = 2000


def clamp(n: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(n)))


def lock_key(slug: str) -> str:
    return f"refresh:keyword:{slug}"


class JobOrchestrator:
    """
    Submits and runs refresh jobs.

    Usage:
        orchestrator = JobOrchestrator(refresher, keywords, locks)
        submitted = await orchestrator.enqueue_refresh_all(concurrency=3)
        state = await orchestrator.get_job_state(submitted["jobId"])
    """

    def __init__(
        self,
        refresher: KeywordRefresher,
        keywords: KeywordStore,
        locks: LockProvider,
        jobs: Optional[JobStore] = None,
        default_concurrency: int = 3,
        max_concurrency: int = 10,
        default_limit: int = 500,
    ):
        self.refresher = refresher
        self.keywords = keywords
        self.locks = locks
        self.jobs = jobs or JobStore()
        self.default_concurrency = default_concurrency
        self.max_concurrency = max_concurrency
        self.default_limit = default_limit
        self._tasks: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Submission
    # =========================================================================

    async def enqueue_refresh_all(
        self,
        concurrency: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Refresh every active keyword, highest priority first."""
        if concurrency is None:
            concurrency = self.default_concurrency
        if limit is None:
            limit = self.default_limit
        concurrency = clamp(concurrency, 1, self.max_concurrency)
        limit = clamp(limit, 1, MAX_REFRESH_LIMIT)

        async def select_keywords() -> List[str]:
            return [k.slug for k in await self.keywords.list_active(limit)]

        return await self._submit(
            JobType.REFRESH_ALL,
            select_keywords,
            concurrency,
            {"concurrency": concurrency, "limit": limit},
        )

    async def enqueue_refresh_one(self, slug: str, report_date: Optional[str] = None) -> Dict[str, Any]:
        """
        Refresh a single keyword, optionally for an explicit report date.

        Raises:
            ValidationError: Blank slug
        """
        slug = (slug or "").strip()
        if not slug:
            raise ValidationError("slug is required")

        async def select_keywords() -> List[str]:
            return [slug]

        params: Dict[str, Any] = {"slug": slug}
        if report_date:
            params["reportDate"] = report_date
        return await self._submit(
            JobType.REFRESH_ONE, select_keywords, 1, params, report_date=report_date
        )

    async def enqueue_retry_failed(self, limit: int = 10, max_retries: int = 3) -> Dict[str, Any]:
        """Refresh active ERROR keywords that have not used up their retries."""
        limit = clamp(limit, 1, MAX_REFRESH_LIMIT)
        max_retries = max(1, int(max_retries))

        async def select_keywords() -> List[str]:
            return [k.slug for k in await self.keywords.list_failed(limit, max_retries)]

        return await self._submit(
            JobType.RETRY_FAILED,
            select_keywords,
            1,
            {"limit": limit, "maxRetries": max_retries},
        )

    async def _submit(
        self,
        job_type: JobType,
        select_keywords,
        concurrency: int,
        params: Dict[str, Any],
        report_date: Optional[str] = None,
    ):
        job = await self.jobs.create(job_type, params)
        task = asyncio.create_task(self._run(job.id, select_keywords, concurrency, report_date))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))
        return {"jobId": job.id, "status": job.status.value}

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_job_state(self, job_id: str) -> Optional[JobState]:
        return await self.jobs.get(job_id)

    async def wait(self, job_id: str) -> Optional[JobState]:
        """Wait for a job to finish and return its final state."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.jobs.get(job_id)

    async def shutdown(self):
        """Wait for every in-flight job."""
        tasks = list(self._tasks.values())
        if tasks:
            logger.info(f"Waiting for {len(tasks)} running jobs")
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _run(self, job_id: str, select_keywords, concurrency: int, report_date: Optional[str]):
        """Execute a job; every exit leaves it in a terminal state."""
        try:
            await self._execute(job_id, select_keywords, concurrency, report_date)
        except Exception as e:
            logger.exception(f"Job {job_id} crashed")
            await self._finish(job_id, systemic=f"Job crashed: {str(e) or type(e).__name__}")

    async def _execute(self, job_id: str, select_keywords, concurrency: int, report_date: Optional[str]):
        def start(job: JobState):
            job.status = JobStatus.RUNNING
            job.started_at = datetime.utcnow()

        await self.jobs.update(job_id, start)

        try:
            slugs = await select_keywords()
        except PersistenceError as e:
            await self._finish(job_id, systemic=f"Cannot list keywords: {e}")
            return

        def set_total(job: JobState):
            job.keywords_total = len(slugs)

        await self.jobs.update(job_id, set_total)
        logger.info(f"Job {job_id}: refreshing {len(slugs)} keywords (concurrency={concurrency})")

        semaphore = asyncio.Semaphore(concurrency)
        abort = asyncio.Event()
        results = await asyncio.gather(
            *(self._refresh_keyword(job_id, slug, semaphore, abort, report_date) for slug in slugs),
            return_exceptions=True,
        )

        systemic = None
        for result in results:
            if isinstance(result, PersistenceError) and result.unreachable:
                systemic = f"Store unreachable: {result}"
                break
            if isinstance(result, BaseException):
                logger.error(f"Job {job_id}: unexpected failure: {result!r}")
        await self._finish(job_id, systemic=systemic)

    async def _refresh_keyword(
        self,
        job_id: str,
        slug: str,
        semaphore: asyncio.Semaphore,
        abort: asyncio.Event,
        report_date: Optional[str] = None,
    ):
        async with semaphore:
            if abort.is_set():
                return
            try:
                async with self.locks.hold(lock_key(slug)):
                    outcome = await self.refresher.refresh(slug, report_date=report_date)
            except LockNotAcquired:
                logger.warning(f"Job {job_id}: {slug} is already being refreshed, skipping")
                await self._record(job_id, slug, skipped=True)
                return
            except PersistenceError as e:
                if e.unreachable:
                    abort.set()
                    raise
                outcome = RefreshOutcome(ok=False, slug=slug, status=FAILED, error=str(e))
            except Exception as e:
                logger.exception(f"Job {job_id}: refresh of {slug} raised")
                outcome = RefreshOutcome(ok=False, slug=slug, status=FAILED, error=str(e) or type(e).__name__)

            await self._record(job_id, slug, outcome=outcome)

    async def _record(
        self,
        job_id: str,
        slug: str,
        outcome: Optional[RefreshOutcome] = None,
        skipped: bool = False,
    ):
        def apply(job: JobState):
            job.keywords_done += 1
            if skipped or outcome is None or outcome.status not in (REFRESHED, FAILED):
                job.skipped.append(slug)
            elif outcome.status == REFRESHED:
                job.succeeded += 1
            else:
                job.errors.append({"slug": slug, "error": outcome.error or "refresh_failed"})

        await self.jobs.update(job_id, apply)

    async def _finish(self, job_id: str, systemic: Optional[str] = None):
        def finish(job: JobState):
            if systemic:
                job.status = JobStatus.FAILED
                job.error_message = systemic
            elif job.errors or job.skipped:
                job.status = JobStatus.PARTIAL
            else:
                job.status = JobStatus.SUCCEEDED
            job.finished_at = datetime.utcnow()
            if job.started_at:
                job.duration_seconds = (job.finished_at - job.started_at).total_seconds()

        job = await self.jobs.update(job_id, finish)
        if job.status == JobStatus.FAILED:
            logger.error(f"Job {job_id} failed: {job.error_message}")
        else:
            logger.info(
                f"Job {job_id} {job.status.value}: {job.succeeded} succeeded, "
                f"{len(job.errors)} failed, {len(job.skipped)} skipped"
            )
