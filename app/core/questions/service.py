import logging
import uuid
from typing import Optional, Tuple

from app.core.cache.dedup import DedupCache
from app.core.cache.fingerprint import prompt_fingerprint
from app.core.jobs.orchestrator import Job, JobEvent, JobOrchestrator, JobStatus
from app.core.jobs.relay import Sink, UpdateRelay
from app.core.questions.pipeline import QuestionPipeline
from app.core.questions.repository import QuestionRepository
from app.core.schemas import (
    JobState,
    QuestionDetailResponse,
    QuestionListResponse,
    QuestionResponse,
)

logger = logging.getLogger(__name__)

QUESTION_JOB_TYPE = "question-processing"

# Persisted job statuses that still count as running
IN_PROGRESS_STATUSES = ("pending", "processing")


class QuestionsService:
    """
    Entry point for everything question related.

    Wires scheduling (prompt dedup + job creation), the job processor,
    terminal-event persistence and push updates together.
    """

    def __init__(
        self,
        repository: QuestionRepository,
        dedup: DedupCache,
        orchestrator: JobOrchestrator,
        relay: UpdateRelay,
        pipeline: QuestionPipeline,
    ):
        self.repository = repository
        self.dedup = dedup
        self.orchestrator = orchestrator
        self.relay = relay
        self.pipeline = pipeline

    def init_job_processor(self, concurrency: int = 1) -> None:
        """Register the question handler and terminal listeners. Call once, inside the loop."""
        self.orchestrator.register_processor(
            QUESTION_JOB_TYPE, self.pipeline.process, concurrency=concurrency
        )
        self.orchestrator.subscribe(JobEvent.COMPLETED, self.on_job_completed)
        self.orchestrator.subscribe(JobEvent.FAILED, self.on_job_failed)

    # =========================
    # Scheduling
    # =========================
    async def schedule_question(self, user_prompt: str) -> Tuple[Job, str]:
        """
        Reuse the live job for this prompt or provision a new question and job.

        Returns:
            (job, question_id)
        """
        fingerprint = prompt_fingerprint(user_prompt)

        cached = await self.dedup.get_by_prompt(fingerprint)
        if cached is not None:
            existing = await self.orchestrator.find_existing(QUESTION_JOB_TYPE, cached.question_id)
            if existing is not None and existing.status != JobStatus.FAILED:
                logger.info(f"Reusing job {existing.id} for question {cached.question_id}")
                return existing, cached.question_id

        question_id = str(uuid.uuid4())
        await self.repository.create_question(question_id, user_prompt)

        job = await self.orchestrator.create_or_find(
            QUESTION_JOB_TYPE,
            question_id,
            {"question_id": question_id, "user_prompt": user_prompt},
            skip_existing_check=True,
        )
        await self.repository.create_job_metadata(question_id, job.id)
        await self.dedup.set_by_prompt(fingerprint, job.id, question_id)

        return job, question_id

    async def log_question_request(self, question_id: str, source: Optional[str] = None) -> None:
        await self.repository.log_question_request(question_id, source=source)

    # =========================
    # Terminal events
    # =========================
    async def on_job_completed(self, job: Job) -> None:
        if job.job_type != QUESTION_JOB_TYPE:
            return
        try:
            if job.meta.get("deduplicated"):
                # The duplicate question record is gone; nothing to persist
                logger.info(f"Job {job.id} was deduplicated, skipping completion update")
            else:
                await self.repository.complete_job_with_result(job.id, job.return_value)
        finally:
            self.relay.send_update(job.id, self.build_job_state(job))

    async def on_job_failed(self, job: Job) -> None:
        if job.job_type != QUESTION_JOB_TYPE:
            return
        try:
            await self.repository.update_job_metadata(
                job.id, status="failed", failed_reason=job.failed_reason
            )
        finally:
            self.relay.send_update(job.id, self.build_job_state(job))

    def build_job_state(self, job: Job) -> JobState:
        status = job.status
        state = JobState(
            job_id=job.id,
            status=status.value,
            title=job.meta.get("title"),
            error=job.failed_reason,
            created_at=job.created_at,
        )

        result = (job.return_value or {}).get("result") or {}
        rows = result.get("rows")
        if status == JobStatus.COMPLETED and rows is not None:
            execution_metadata = result.get("execution_metadata") or {}
            state.question_content = job.payload.get("user_prompt")
            state.result = {
                "data": rows,
                "metadata": {
                    "totalRows": len(rows),
                    "bytesProcessed": execution_metadata.get("total_bytes_processed"),
                    "sqlHash": job.meta.get("sql_hash"),
                },
            }
        return state

    # =========================
    # Push updates
    # =========================
    async def subscribe_to_updates(self, question_id: str, sink: Sink) -> Optional[str]:
        """
        Attach a sink to the question's job, primed with its current state.

        Returns:
            The job key, or None when no job exists for the question.
        """
        job = await self.orchestrator.find_existing(QUESTION_JOB_TYPE, question_id)
        if job is None:
            return None

        self.relay.setup_connection(job.id, sink, self.build_job_state(job))
        return job.id

    def unsubscribe(self, job_key: str, sink: Sink) -> None:
        # Tears down the channel only; the job keeps running
        self.relay.close_if_current(job_key, sink)
        sink.close()

    # =========================
    # Reads
    # =========================
    async def list_questions(self) -> QuestionListResponse:
        suggested = await self.repository.get_suggested_questions()
        answered = await self.repository.get_user_questions()
        return QuestionListResponse(
            suggested_questions=[QuestionResponse.model_validate(q) for q in suggested],
            user_questions=[QuestionResponse.model_validate(q) for q in answered],
        )

    async def get_question_detail(self, question_id: str) -> Optional[QuestionDetailResponse]:
        question = await self.repository.get_question(question_id)
        if question is None:
            return None

        latest = question.job_metadata[0] if question.job_metadata else None
        status = "done"
        result = None

        if latest is not None:
            if latest.status == "completed" and question.result is not None:
                result = question.result.result
            elif latest.status in IN_PROGRESS_STATUSES:
                status = "in_progress"

        return QuestionDetailResponse(
            id=question.id, title=question.title, status=status, result=result
        )
