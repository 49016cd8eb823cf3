import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.core.errors import to_safe_failed_reason

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# JOB ORCHESTRATOR
# Purpose: find-or-create jobs by deterministic identity, run registered
# handlers with bounded parallelism per job type, emit terminal events.
# The substrate is process-local: terminal jobs live in memory until they
# outlive the retention window or clean() runs.
# -----------------------------------------------------------------------------


class JobStatus(str, Enum):
    """Coarse job status, derived from timestamps."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobEvent(str, Enum):
    COMPLETED = "job:completed"
    FAILED = "job:failed"


@dataclass
class Job:
    id: str
    job_type: str
    fingerprint: str
    seq: int
    payload: Dict[str, Any]
    created_at: str
    # Annotations written by the handler (title, sql hash, deduplicated flag)
    meta: Dict[str, Any] = field(default_factory=dict)
    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    failed_reason: Optional[str] = None
    return_value: Any = None

    @property
    def status(self) -> JobStatus:
        return derive_status(self)

    @property
    def is_terminal(self) -> bool:
        return self.finished_on is not None


def derive_status(job: Job) -> JobStatus:
    if job.finished_on is not None:
        return JobStatus.FAILED if job.failed_reason else JobStatus.COMPLETED
    if job.processed_on is not None:
        return JobStatus.PROCESSING
    return JobStatus.PENDING


Handler = Callable[[Job], Awaitable[Any]]
Listener = Callable[[Job], Awaitable[None]]


class JobOrchestrator:
    """
    Process-local job substrate.

    Terminal jobs are dropped once they are older than `retention_seconds`
    (checked on every create_or_find), matching the lifetime of the cache
    entries that point at them. None keeps them until clean().

    Note: create_or_find is check-then-create, not atomic. Two callers racing
    on the same fingerprint can both enqueue a job.
    """

    def __init__(self, retention_seconds: Optional[float] = None):
        self.retention_seconds = retention_seconds
        self.jobs: Dict[str, List[Job]] = {}
        self.queues: Dict[str, asyncio.Queue] = {}
        self.workers: Dict[str, List[asyncio.Task]] = {}
        self.listeners: Dict[JobEvent, List[Listener]] = {event: [] for event in JobEvent}
        self._seq = itertools.count(1)

    @staticmethod
    def job_id(job_type: str, fingerprint: str) -> str:
        return f"{job_type}:{fingerprint}"

    def init_queue(self, job_type: str) -> asyncio.Queue:
        if job_type not in self.queues:
            self.queues[job_type] = asyncio.Queue()
            self.jobs[job_type] = []
        return self.queues[job_type]

    def register_processor(self, job_type: str, handler: Handler, concurrency: int = 1) -> None:
        """
        Attach an async handler to a job type.

        Must be called from a running event loop; spawns `concurrency` workers.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.workers.get(job_type):
            raise RuntimeError(f"Processor already registered for job type {job_type}")

        self.init_queue(job_type)
        self.workers[job_type] = [
            asyncio.create_task(self._worker(job_type, handler), name=f"{job_type}-worker-{n}")
            for n in range(concurrency)
        ]
        logger.info(f"Registered processor for job type {job_type} with concurrency {concurrency}")

    def subscribe(self, event: JobEvent, listener: Listener) -> None:
        self.listeners[event].append(listener)

    # =========================================================================
    # FIND / CREATE
    # =========================================================================

    async def find_existing(self, job_type: str, fingerprint: str) -> Optional[Job]:
        """
        Search every state for a job with the deterministic id.

        Live and completed jobs win over failed ones; the newest wins within a state.
        """
        job_id = self.job_id(job_type, fingerprint)
        candidates = [job for job in self.jobs.get(job_type, []) if job.id == job_id]
        if not candidates:
            return None

        state_order = (
            JobStatus.PROCESSING,
            JobStatus.PENDING,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
        )
        for state in state_order:
            in_state = [job for job in candidates if job.status == state]
            if in_state:
                return max(in_state, key=lambda job: job.seq)
        return None

    async def create_or_find(
        self,
        job_type: str,
        fingerprint: str,
        payload: Dict[str, Any],
        skip_existing_check: bool = False,
    ) -> Job:
        job_id = self.job_id(job_type, fingerprint)
        if self.retention_seconds is not None:
            self._prune(job_type, time.time() - self.retention_seconds)

        if not skip_existing_check:
            existing = await self.find_existing(job_type, fingerprint)
            if existing and existing.status != JobStatus.FAILED:
                logger.info(f"Job {job_id} already exists (seq {existing.seq})")
                return existing

        queue = self.init_queue(job_type)
        job = Job(
            id=job_id,
            job_type=job_type,
            fingerprint=fingerprint,
            seq=next(self._seq),
            payload=payload,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self.jobs[job_type].append(job)
        queue.put_nowait(job)
        logger.info(f"Created job {job_id} (seq {job.seq})")
        return job

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _worker(self, job_type: str, handler: Handler) -> None:
        queue = self.queues[job_type]
        while True:
            job = await queue.get()
            try:
                await self._run(job, handler)
            finally:
                queue.task_done()

    async def _run(self, job: Job, handler: Handler) -> None:
        job.processed_on = time.time()
        logger.info(f"Processing job {job.id} (seq {job.seq})")

        try:
            result = await handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            # Full error goes to the logs only; the job keeps a safe reason
            logger.exception(f"Job {job.id} in queue {job.job_type} failed: {error}")
            job.failed_reason = to_safe_failed_reason(error)
            job.finished_on = time.time()
            await self._emit(JobEvent.FAILED, job)
            return

        job.return_value = result
        job.finished_on = time.time()
        logger.info(f"Job {job.id} in queue {job.job_type} completed")
        await self._emit(JobEvent.COMPLETED, job)

    async def _emit(self, event: JobEvent, job: Job) -> None:
        for listener in self.listeners[event]:
            try:
                await listener(job)
            except Exception as error:
                logger.error(f"Listener for {event.value} failed on job {job.id}: {error}")

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    async def join(self, job_type: str) -> None:
        """Wait until every queued job of this type has finished (listeners included)."""
        queue = self.queues.get(job_type)
        if queue is not None:
            await queue.join()

    async def clean(self, older_than: Optional[float] = None) -> int:
        """
        Purge terminal jobs from every queue.

        Args:
            older_than: Only purge jobs finished at least this many seconds ago.

        Returns:
            Number of removed jobs.
        """
        cutoff = None if older_than is None else time.time() - older_than
        removed = 0
        for job_type in self.jobs:
            pruned = self._prune(job_type, cutoff)
            logger.info(f"Cleaned {pruned} terminal jobs from queue {job_type}")
            removed += pruned
        return removed

    def _prune(self, job_type: str, cutoff: Optional[float]) -> int:
        jobs = self.jobs.get(job_type)
        if not jobs:
            return 0
        keep = [
            job
            for job in jobs
            if not job.is_terminal or (cutoff is not None and job.finished_on > cutoff)
        ]
        self.jobs[job_type] = keep
        return len(jobs) - len(keep)

    async def close(self) -> None:
        tasks = [task for workers in self.workers.values() for task in workers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.workers.clear()
