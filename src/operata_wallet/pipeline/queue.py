"""Durable delayed job queue backed by the SQLite ``jobs`` table.

Jobs become eligible at ``available_at``. A fixed pool of asyncio workers
claims eligible jobs under a lock lease that is renewed while the processor
runs. Jobs whose lease expires (crashed or hung worker) are put back to
``waiting`` by the stall checker and delivered again, so processors must be
idempotent.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from operata_wallet.config import BackoffConfig, QueueConfig
from operata_wallet.pipeline.executor import ExecutionOutcome, ExecutionResult
from operata_wallet.storage.database import Database
from operata_wallet.storage.models import JobRecord, JobState, utcnow

logger = logging.getLogger("operata_wallet.pipeline.queue")

SCHEDULED_TRANSACTION = "SCHEDULED_TRANSACTION"

JobProcessor = Callable[[JobRecord], Awaitable[ExecutionResult]]
ExhaustedHook = Callable[[JobRecord, str], Awaitable[None]]


def compute_delay_ms(schedule_date: datetime, now: datetime | None = None) -> int:
    """Milliseconds until *schedule_date*, never negative."""
    now = now or utcnow()
    return max(0, int((schedule_date - now).total_seconds() * 1000))


def backoff_delay_ms(job: JobRecord, attempts_made: int) -> int:
    """Delay before the next attempt after *attempts_made* failed attempts."""
    if job.backoff_type == "exponential":
        return job.backoff_delay_ms * 2 ** (attempts_made - 1)
    return job.backoff_delay_ms


class JobQueue:
    """A named delayed-job broker with bounded retries.

    Parameters
    ----------
    db:
        Connected database holding the ``jobs`` table.
    config:
        Queue name, concurrency, attempt budget, backoff and lease timings.
    clock:
        Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        db: Database,
        config: QueueConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.config = config or QueueConfig()
        self.name = self.config.name
        self._clock = clock
        self._claim_lock = asyncio.Lock()
        self._running = asyncio.Event()
        self._running.set()
        self._closing = False
        self._workers: list[asyncio.Task] = []
        self._stall_task: Optional[asyncio.Task] = None
        self._processor: Optional[JobProcessor] = None
        self._on_exhausted: Optional[ExhaustedHook] = None

    # ------------------------------------------------------------------
    # Producing
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: str,
        data: dict[str, Any],
        delay_ms: int = 0,
        attempts: int | None = None,
        backoff: BackoffConfig | None = None,
    ) -> JobRecord:
        """Persist a job that becomes eligible *delay_ms* from now."""
        now = self._clock()
        delay_ms = max(0, int(delay_ms))
        backoff = backoff or self.config.backoff
        job = JobRecord(
            queue=self.name,
            type=job_type,
            payload_json=json.dumps(data),
            state=JobState.DELAYED if delay_ms > 0 else JobState.WAITING,
            max_attempts=attempts or self.config.attempts,
            backoff_type=backoff.type,
            backoff_delay_ms=backoff.delay_ms,
            available_at=now + delay_ms / 1000,
            created_at=now,
        )
        await self.db.execute(
            "INSERT INTO jobs (id, queue, type, payload_json, state, attempts_made, "
            "max_attempts, backoff_type, backoff_delay_ms, available_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                job.id,
                job.queue,
                job.type,
                job.payload_json,
                job.state.value,
                job.attempts_made,
                job.max_attempts,
                job.backoff_type,
                job.backoff_delay_ms,
                job.available_at,
                job.created_at,
            ),
        )
        logger.info(f"Enqueued {job_type} job {job.id} on '{self.name}' (delay {delay_ms} ms)")
        return job

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        row = await self.db.fetch_one("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return JobRecord.model_validate(row) if row else None

    async def list_jobs(self, state: JobState | None = None) -> list[JobRecord]:
        if state:
            rows = await self.db.fetch_all(
                "SELECT * FROM jobs WHERE queue = ? AND state = ? ORDER BY available_at",
                (self.name, state.value),
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM jobs WHERE queue = ? ORDER BY available_at", (self.name,)
            )
        return [JobRecord.model_validate(r) for r in rows]

    async def status(self) -> dict[str, int]:
        """Job counts per state."""
        rows = await self.db.fetch_all(
            "SELECT state, COUNT(*) AS n FROM jobs WHERE queue = ? GROUP BY state",
            (self.name,),
        )
        counts = {state.value: 0 for state in JobState}
        for row in rows:
            counts[row["state"]] = row["n"]
        return counts

    # ------------------------------------------------------------------
    # Consuming
    # ------------------------------------------------------------------

    def bind(self, processor: JobProcessor, on_exhausted: ExhaustedHook | None = None) -> None:
        """Set the callback that processes jobs and the exhaustion hook."""
        self._processor = processor
        self._on_exhausted = on_exhausted

    async def claim(self) -> Optional[JobRecord]:
        """Take the next eligible job under a fresh lock lease.

        The claiming update only succeeds while the job is still delayed or
        waiting, so another process sharing the database cannot take the
        same job; a lost race moves on to the next candidate.
        """
        async with self._claim_lock:
            while True:
                now = self._clock()
                row = await self.db.fetch_one(
                    "SELECT * FROM jobs WHERE queue = ? AND state IN (?, ?) AND available_at <= ? "
                    "ORDER BY available_at, created_at LIMIT 1",
                    (self.name, JobState.DELAYED.value, JobState.WAITING.value, now),
                )
                if row is None:
                    return None
                job = JobRecord.model_validate(row)
                job.state = JobState.ACTIVE
                job.locked_by = uuid.uuid4().hex
                job.lock_expires_at = now + self.config.lock_duration_seconds
                cursor = await self.db.execute(
                    "UPDATE jobs SET state = ?, locked_by = ?, lock_expires_at = ? "
                    "WHERE id = ? AND state IN (?, ?)",
                    (
                        job.state.value,
                        job.locked_by,
                        job.lock_expires_at,
                        job.id,
                        JobState.DELAYED.value,
                        JobState.WAITING.value,
                    ),
                )
                if cursor.rowcount > 0:
                    return job
                logger.debug(f"Job {job.id} was claimed elsewhere")

    async def process_next(self) -> Optional[JobRecord]:
        """Claim and process one eligible job; return its settled record."""
        job = await self.claim()
        if job is None:
            return None
        await self._run(job)
        return await self.get_job(job.id)

    async def _run(self, job: JobRecord) -> None:
        if self._processor is None:
            raise RuntimeError("No processor bound to the queue. Call bind() first.")
        renewer = asyncio.create_task(self._renew_lease(job))
        try:
            try:
                result = await self._processor(job)
            except Exception as exc:
                logger.exception(f"Job {job.id} raised an unexpected error")
                result = ExecutionResult.retryable(f"{type(exc).__name__}: {exc}")
        finally:
            renewer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewer
        await self._settle(job, result)

    async def _renew_lease(self, job: JobRecord) -> None:
        interval = self.config.lock_duration_seconds / 2
        while True:
            await asyncio.sleep(interval)
            await self.db.execute(
                "UPDATE jobs SET lock_expires_at = ? WHERE id = ? AND locked_by = ?",
                (self._clock() + self.config.lock_duration_seconds, job.id, job.locked_by),
            )

    async def _settle(self, job: JobRecord, result: ExecutionResult) -> None:
        now = self._clock()

        if result.outcome is ExecutionOutcome.SUCCESS:
            cursor = await self.db.execute(
                "UPDATE jobs SET state = ?, finished_at = ?, locked_by = NULL, "
                "lock_expires_at = NULL WHERE id = ? AND locked_by = ?",
                (JobState.COMPLETED.value, now, job.id, job.locked_by),
            )
            if cursor.rowcount == 0:
                logger.warning(f"Job {job.id} lost its lease before completing")
            return

        attempts = job.attempts_made + 1
        if result.outcome is ExecutionOutcome.RETRYABLE and attempts < job.max_attempts:
            delay = backoff_delay_ms(job, attempts)
            cursor = await self.db.execute(
                "UPDATE jobs SET state = ?, attempts_made = ?, available_at = ?, last_error = ?, "
                "locked_by = NULL, lock_expires_at = NULL WHERE id = ? AND locked_by = ?",
                (JobState.DELAYED.value, attempts, now + delay / 1000, result.error,
                 job.id, job.locked_by),
            )
            if cursor.rowcount == 0:
                logger.warning(f"Job {job.id} lost its lease before retry was scheduled")
                return
            logger.warning(
                f"Job {job.id} attempt {attempts}/{job.max_attempts} failed; "
                f"retrying in {delay} ms: {result.error}"
            )
            return

        cursor = await self.db.execute(
            "UPDATE jobs SET state = ?, attempts_made = ?, finished_at = ?, last_error = ?, "
            "locked_by = NULL, lock_expires_at = NULL WHERE id = ? AND locked_by = ?",
            (JobState.FAILED.value, attempts, now, result.error, job.id, job.locked_by),
        )
        if cursor.rowcount == 0:
            logger.warning(f"Job {job.id} lost its lease before failing")
            return
        logger.error(f"Job {job.id} failed after {attempts} attempt(s): {result.error}")
        if self._on_exhausted is not None:
            try:
                await self._on_exhausted(job, result.error or "")
            except Exception:
                logger.exception(f"Exhaustion hook for job {job.id} failed")

    async def recover_stalled(self) -> int:
        """Return active jobs with an expired lease to ``waiting``."""
        cursor = await self.db.execute(
            "UPDATE jobs SET state = ?, locked_by = NULL, lock_expires_at = NULL "
            "WHERE queue = ? AND state = ? AND lock_expires_at < ?",
            (JobState.WAITING.value, self.name, JobState.ACTIVE.value, self._clock()),
        )
        if cursor.rowcount:
            logger.warning(f"Recovered {cursor.rowcount} stalled job(s) on '{self.name}'")
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Worker pool lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Recover stalled jobs, then start the workers and the stall checker."""
        if self._processor is None:
            raise RuntimeError("No processor bound to the queue. Call bind() first.")
        self._closing = False
        await self.recover_stalled()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"{self.name}-worker-{i}")
            for i in range(self.config.concurrency)
        ]
        self._stall_task = asyncio.create_task(self._stall_loop(), name=f"{self.name}-stalls")
        logger.info(f"Queue '{self.name}' started with {self.config.concurrency} worker(s)")

    async def _worker_loop(self, index: int) -> None:
        while not self._closing:
            await self._running.wait()
            if self._closing:
                break
            try:
                job = await self.claim()
                if job is None:
                    await asyncio.sleep(self.config.poll_interval_seconds)
                    continue
                await self._run(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Worker {index} on '{self.name}' hit an error")
                await asyncio.sleep(self.config.poll_interval_seconds)

    async def _stall_loop(self) -> None:
        while not self._closing:
            await asyncio.sleep(self.config.stalled_interval_seconds)
            try:
                await self.recover_stalled()
            except Exception:
                logger.exception(f"Stall check on '{self.name}' failed")

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def pause(self) -> None:
        """Stop claiming new jobs. Jobs already running finish."""
        self._running.clear()
        logger.info(f"Queue '{self.name}' paused")

    def resume(self) -> None:
        self._running.set()
        logger.info(f"Queue '{self.name}' resumed")

    async def close(self) -> None:
        """Stop the workers after their current job and cancel the stall checker."""
        self._closing = True
        self._running.set()
        if self._stall_task is not None:
            self._stall_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stall_task
            self._stall_task = None
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []
        logger.info(f"Queue '{self.name}' closed")
