"""
In-process job queue for PR analysis.

Jobs live in memory only and are lost on restart. A single worker loop
dispatches due jobs up to ``max_concurrent`` at a time; failed runs are
rescheduled with exponential backoff until ``max_retries`` is used up.
Finished jobs stay visible for ``retention`` and are then dropped by the
worker loop.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from app.config import Settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.job_domain import AnalysisJob, JobStatus

logger = get_logger(__name__)

JobHandler = Callable[[AnalysisJob], Awaitable[Any]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobQueue:
    def __init__(
        self,
        max_concurrent: int = 3,
        max_retries: int = 2,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 300.0,
        poll_interval: float = 1.0,
        job_timeout: float = 600.0,
        retention: timedelta = timedelta(hours=24),
        cleanup_interval: float = 300.0,
        clock: Clock = _utcnow,
    ):
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.retention = retention
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._last_cleanup = clock()

        self._jobs: dict[str, AnalysisJob] = {}
        self._handlers: dict[str, JobHandler] = {}
        self._dedupe_index: dict[str, str] = {}
        self._running: set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._loop_task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobQueue":
        return cls(
            max_concurrent=settings.JOB_QUEUE_MAX_CONCURRENT,
            max_retries=settings.JOB_QUEUE_MAX_RETRIES,
            retry_base_seconds=settings.JOB_QUEUE_RETRY_BASE_SECONDS,
            retry_max_seconds=settings.JOB_QUEUE_RETRY_MAX_SECONDS,
            poll_interval=settings.JOB_QUEUE_POLL_INTERVAL_SECONDS,
            job_timeout=settings.JOB_TIMEOUT_SECONDS,
            retention=timedelta(seconds=settings.JOB_RETENTION_SECONDS),
            cleanup_interval=settings.JOB_CLEANUP_INTERVAL_SECONDS,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def enqueue(
        self,
        job_type: str,
        data: dict[str, Any],
        *,
        dedupe_key: str | None = None,
        max_retries: int | None = None,
    ) -> str:
        """
        Add a job and return its id.

        When ``dedupe_key`` matches a job that is still pending or active, the
        existing job's id is returned and nothing new is queued.
        """
        if dedupe_key is not None:
            existing_id = self._dedupe_index.get(dedupe_key)
            existing = self._jobs.get(existing_id) if existing_id else None
            if existing is not None and not existing.status.is_terminal:
                logger.info("Job already queued", job_id=existing.id, job_type=job_type, dedupe_key=dedupe_key)
                return existing.id

        job = AnalysisJob(
            id=f"{job_type}-{uuid.uuid4().hex}",
            type=job_type,
            data=dict(data),
            created_at=self._clock(),
            max_retries=self.max_retries if max_retries is None else max_retries,
            dedupe_key=dedupe_key,
        )
        self._jobs[job.id] = job
        if dedupe_key is not None:
            self._dedupe_index[dedupe_key] = job.id

        logger.info("Job enqueued", job_id=job.id, job_type=job_type)
        self._wakeup.set()
        return job.id

    def get_job_data(self, job_id: Any) -> AnalysisJob | None:
        if not isinstance(job_id, str):
            return None
        return self._jobs.get(job_id)

    def get_queue_stats(self) -> dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            stats[job.status.value] += 1
        return stats

    def get_active_jobs_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status is JobStatus.ACTIVE)

    def get_jobs_for_pr(self, installation_id: str, repository_name: str, pr_number: int) -> list[AnalysisJob]:
        """All jobs for one PR, newest first."""
        matches = [
            job
            for job in self._jobs.values()
            if str(job.data.get("installation_id")) == str(installation_id)
            and job.data.get("repository_name") == repository_name
            and job.data.get("pr_number") == pr_number
        ]
        return sorted(matches, key=lambda job: job.created_at, reverse=True)

    def cleanup_finished(self, older_than: timedelta | None = None) -> int:
        """Drop completed and failed jobs that finished more than ``older_than`` ago."""
        cutoff = self._clock() - (self.retention if older_than is None else older_than)
        stale = [
            job_id
            for job_id, job in self._jobs.items()
            if job.status.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in stale:
            job = self._jobs.pop(job_id)
            if job.dedupe_key and self._dedupe_index.get(job.dedupe_key) == job_id:
                del self._dedupe_index[job.dedupe_key]

        if stale:
            logger.info("Cleaned up finished jobs", removed=len(stale))
        return len(stale)

    def reset(self) -> None:
        """Forget every job. Running handlers are not cancelled."""
        self._jobs.clear()
        self._dedupe_index.clear()

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = asyncio.create_task(self._run_loop(), name="job-queue-worker")
        logger.info("Job queue worker started", max_concurrent=self.max_concurrent)

    async def stop(self, timeout: float = 10.0) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._running:
            done, pending = await asyncio.wait(self._running, timeout=timeout)
            for task in pending:
                task.cancel()
            logger.info("Job queue worker stopped", finished=len(done), cancelled=len(pending))

    async def _run_loop(self) -> None:
        while True:
            self._wakeup.clear()
            self._maybe_cleanup()
            self.dispatch_due_jobs()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass

    def _maybe_cleanup(self) -> None:
        now = self._clock()
        if (now - self._last_cleanup).total_seconds() < self.cleanup_interval:
            return
        self._last_cleanup = now
        self.cleanup_finished()

    def dispatch_due_jobs(self) -> int:
        """Start due pending jobs while concurrency allows; returns how many started."""
        now = self._clock()
        started = 0
        for job in sorted(self._jobs.values(), key=lambda j: j.created_at):
            if self.get_active_jobs_count() >= self.max_concurrent:
                break
            if job.status is not JobStatus.PENDING:
                continue
            if job.next_run_at is not None and job.next_run_at > now:
                continue

            job.status = JobStatus.ACTIVE
            job.started_at = now
            job.history.append(JobStatus.ACTIVE.value)
            task = asyncio.create_task(self._execute(job), name=f"job-{job.id}")
            self._running.add(task)
            task.add_done_callback(self._running.discard)
            started += 1
        return started

    async def drain(self) -> None:
        """Run until no job is pending or active. Used at shutdown and in tests."""
        while True:
            self.dispatch_due_jobs()
            if self._running:
                await asyncio.wait(set(self._running))
                continue

            pending = [job for job in self._jobs.values() if job.status is JobStatus.PENDING]
            if not pending:
                return
            next_run = min(job.next_run_at or self._clock() for job in pending)
            await asyncio.sleep(max(0.0, (next_run - self._clock()).total_seconds()))

    async def _execute(self, job: AnalysisJob) -> None:
        handler = self._handlers.get(job.type)
        log = logger.bind(job_id=job.id, job_type=job.type, attempt=job.retry_count + 1)

        if handler is None:
            self._record_failure(job, f"No handler registered for job type: {job.type}", retryable=False)
            log.error("Job has no handler")
            self._wakeup.set()
            return

        try:
            result = await asyncio.wait_for(handler(job), timeout=self.job_timeout)
        except TimeoutError:
            self._record_failure(job, f"Job timed out after {self.job_timeout}s", retryable=True)
            log.warning("Job timed out", timeout_seconds=self.job_timeout)
        except Exception as e:
            self._record_failure(job, str(e) or type(e).__name__, retryable=getattr(e, "retryable", True))
            log.warning("Job run failed", error=str(e), error_type=type(e).__name__, status=job.status.value)
        else:
            job.status = JobStatus.COMPLETED
            job.completed_at = self._clock()
            job.result = result
            job.error = None
            job.history.append(JobStatus.COMPLETED.value)
            log.info("Job completed")
        finally:
            self._wakeup.set()

    def _record_failure(self, job: AnalysisJob, error: str, retryable: bool) -> None:
        job.error = error
        if retryable and job.retry_count < job.max_retries:
            delay = min(self.retry_base_seconds * (2**job.retry_count), self.retry_max_seconds)
            job.retry_count += 1
            job.status = JobStatus.PENDING
            job.next_run_at = self._clock() + timedelta(seconds=delay)
            job.history.append(JobStatus.PENDING.value)
            logger.info("Job scheduled for retry", job_id=job.id, retry_count=job.retry_count, delay_seconds=delay)
            return

        job.status = JobStatus.FAILED
        job.completed_at = self._clock()
        job.history.append(JobStatus.FAILED.value)
        logger.error("Job failed permanently", job_id=job.id, retry_count=job.retry_count, error=error)
