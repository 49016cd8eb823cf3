import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.core import models
from app.core.errors import PersistenceError
from app.core.schemas import QuestionType

logger = logging.getLogger(__name__)

PROCESSING_TITLE = "Processing..."


# -----------------------------------------------------------------------------
# QUESTION REPOSITORY
# Purpose: persist questions, job metadata, results and request logs.
# Every SQLAlchemy failure is rolled back and re-raised as PersistenceError.
# -----------------------------------------------------------------------------


class QuestionRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _fail(self, db: AsyncSession, action: str, error: Exception):
        await db.rollback()
        logger.error(f"Failed to {action}: {error}")
        raise PersistenceError(f"Failed to {action}") from error

    # =========================
    # Questions
    # =========================
    async def create_question(
        self,
        question_id: str,
        question_content: str,
        title: str = PROCESSING_TITLE,
        sql_text: str = "",
        sql_hash: str = "",
        plan: Optional[Dict[str, Any]] = None,
    ) -> models.Question:
        async with self.session_factory() as db:
            try:
                question = models.Question(
                    id=question_id,
                    question_content=question_content,
                    title=title,
                    sql_text=sql_text,
                    sql_hash=sql_hash,
                    plan=plan,
                )
                db.add(question)
                await db.commit()
                await db.refresh(question)
                return question
            except SQLAlchemyError as error:
                await self._fail(db, f"create question {question_id}", error)

    async def update_question(self, question_id: str, **updates: Any) -> models.Question:
        async with self.session_factory() as db:
            try:
                question = await db.get(models.Question, question_id)
                if question is None:
                    raise PersistenceError(f"Question {question_id} does not exist")

                for field_name, value in updates.items():
                    setattr(question, field_name, value)

                await db.commit()
                await db.refresh(question)
                return question
            except SQLAlchemyError as error:
                await self._fail(db, f"update question {question_id}", error)

    async def delete_question(self, question_id: str) -> None:
        async with self.session_factory() as db:
            try:
                query = (
                    select(models.Question)
                    .where(models.Question.id == question_id)
                    .options(
                        selectinload(models.Question.job_metadata),
                        selectinload(models.Question.result),
                        selectinload(models.Question.requests),
                    )
                )
                question = (await db.execute(query)).scalars().first()
                if question is None:
                    return

                await db.delete(question)
                await db.commit()
            except SQLAlchemyError as error:
                await self._fail(db, f"delete question {question_id}", error)

    async def get_question(self, question_id: str) -> Optional[models.Question]:
        """Question with its job metadata (newest first) and result."""
        async with self.session_factory() as db:
            try:
                query = (
                    select(models.Question)
                    .where(models.Question.id == question_id)
                    .options(
                        selectinload(models.Question.job_metadata),
                        selectinload(models.Question.result),
                    )
                )
                return (await db.execute(query)).scalars().first()
            except SQLAlchemyError as error:
                await self._fail(db, f"load question {question_id}", error)

    async def get_suggested_questions(self) -> List[models.Question]:
        async with self.session_factory() as db:
            try:
                query = (
                    select(models.Question)
                    .where(models.Question.type == QuestionType.SUGGESTED.value)
                    .order_by(models.Question.created_at.desc())
                )
                return list((await db.execute(query)).scalars().all())
            except SQLAlchemyError as error:
                await self._fail(db, "list suggested questions", error)

    async def get_user_questions(self) -> List[models.Question]:
        """User questions that have at least one completed job."""
        async with self.session_factory() as db:
            try:
                query = (
                    select(models.Question)
                    .where(
                        models.Question.type == QuestionType.USER.value,
                        models.Question.job_metadata.any(
                            models.JobMetadata.status == "completed"
                        ),
                    )
                    .order_by(models.Question.created_at.desc())
                )
                return list((await db.execute(query)).scalars().all())
            except SQLAlchemyError as error:
                await self._fail(db, "list user questions", error)

    # =========================
    # Job metadata + results
    # =========================
    async def create_job_metadata(
        self,
        question_id: str,
        job_id: str,
        status: str = "pending",
        failed_reason: Optional[str] = None,
    ) -> models.JobMetadata:
        async with self.session_factory() as db:
            try:
                metadata = models.JobMetadata(
                    question_id=question_id,
                    job_id=job_id,
                    status=status,
                    failed_reason=failed_reason,
                )
                db.add(metadata)
                await db.commit()
                await db.refresh(metadata)
                return metadata
            except SQLAlchemyError as error:
                await self._fail(db, f"create job metadata for {job_id}", error)

    async def update_job_metadata(self, job_id: str, **updates: Any) -> Optional[models.JobMetadata]:
        async with self.session_factory() as db:
            try:
                query = select(models.JobMetadata).where(models.JobMetadata.job_id == job_id)
                metadata = (await db.execute(query)).scalars().first()
                if metadata is None:
                    logger.warning(f"No job metadata for job {job_id}")
                    return None

                for field_name, value in updates.items():
                    setattr(metadata, field_name, value)

                await db.commit()
                return metadata
            except SQLAlchemyError as error:
                await self._fail(db, f"update job metadata for {job_id}", error)

    async def complete_job_with_result(
        self, job_id: str, return_value: Dict[str, Any]
    ) -> models.QuestionResult:
        """
        Mark the job completed and upsert its result in one transaction.

        Args:
            job_id: Deterministic job id stored on the job metadata.
            return_value: Handler output: {"result": {"rows": ...}, "chart_config": ...}

        Returns:
            The stored QuestionResult.
        """
        async with self.session_factory() as db:
            try:
                query = select(models.JobMetadata).where(models.JobMetadata.job_id == job_id)
                metadata = (await db.execute(query)).scalars().first()
                if metadata is None:
                    raise PersistenceError(f"No job metadata for job {job_id}")

                metadata.status = "completed"

                payload = {
                    "rows": (return_value.get("result") or {}).get("rows", []),
                    "chart_config": return_value.get("chart_config"),
                }

                result_query = select(models.QuestionResult).where(
                    models.QuestionResult.question_id == metadata.question_id
                )
                stored = (await db.execute(result_query)).scalars().first()
                if stored is None:
                    stored = models.QuestionResult(
                        question_id=metadata.question_id, result=payload
                    )
                    db.add(stored)
                else:
                    stored.result = payload

                # Both rows commit together or not at all
                await db.commit()
                return stored
            except SQLAlchemyError as error:
                await self._fail(db, f"complete job {job_id}", error)

    # =========================
    # Requests + suggestions
    # =========================
    async def log_question_request(
        self, question_id: str, source: Optional[str] = None
    ) -> models.QuestionRequest:
        async with self.session_factory() as db:
            try:
                request = models.QuestionRequest(question_id=question_id, source=source)
                db.add(request)
                await db.commit()
                return request
            except SQLAlchemyError as error:
                await self._fail(db, f"log request for question {question_id}", error)

    async def promote_popular_questions(self, threshold: int, window_hours: int) -> int:
        """
        Promote user questions asked at least `threshold` times in the last
        `window_hours` (and answered at least once) to suggested questions.

        Returns:
            Number of promoted questions.
        """
        since = datetime.now(timezone.utc) - timedelta(hours=window_hours)

        popular = (
            select(models.QuestionRequest.question_id)
            .where(models.QuestionRequest.created_at >= since)
            .group_by(models.QuestionRequest.question_id)
            .having(func.count(models.QuestionRequest.id) >= threshold)
        )
        answered = select(models.JobMetadata.question_id).where(
            models.JobMetadata.status == "completed"
        )

        async with self.session_factory() as db:
            try:
                stmt = (
                    update(models.Question)
                    .where(
                        models.Question.type == QuestionType.USER.value,
                        models.Question.id.in_(popular),
                        models.Question.id.in_(answered),
                    )
                    .values(type=QuestionType.SUGGESTED.value)
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)
                await db.commit()
                return result.rowcount or 0
            except SQLAlchemyError as error:
                await self._fail(db, "promote popular questions", error)
