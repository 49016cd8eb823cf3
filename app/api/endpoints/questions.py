import logging

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import StreamingResponse

from app.api.deps import questions_service_dep
from app.core import schemas
from app.core.errors import AppError
from app.core.jobs.relay import PushChannel

router = APIRouter(prefix="/questions", tags=["Questions"])

REQUEST_SOURCE = "api"


# Suggested + answered user questions
@router.get(
    "",
    response_model=schemas.QuestionListResponse,
    status_code=status.HTTP_200_OK,
)
async def list_questions(service: questions_service_dep):
    return await service.list_questions()


# Ask a question
@router.post(
    "",
    response_model=schemas.QuestionScheduled,
    status_code=status.HTTP_202_ACCEPTED,
)
async def create_question(question: schemas.QuestionCreate, service: questions_service_dep):
    user_prompt = (question.user_prompt or "").strip()
    if not user_prompt:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "User prompt missing")

    try:
        job, question_id = await service.schedule_question(user_prompt)
    except AppError as error:
        logging.error(f"Failed to schedule question: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create question",
        )

    # Popularity tracking only; the question is already scheduled
    try:
        await service.log_question_request(question_id, source=REQUEST_SOURCE)
    except AppError as error:
        logging.warning(f"Failed to log request for question {question_id}: {error}")

    return schemas.QuestionScheduled(question_id=question_id, job_id=job.id)


@router.get(
    "/{question_id}",
    response_model=schemas.QuestionDetailResponse,
    status_code=status.HTTP_200_OK,
)
async def get_question(question_id: str, service: questions_service_dep):
    question = await service.get_question_detail(question_id)
    if question is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Question not found")
    return question


# Server-sent events for the question's job
@router.get("/{question_id}/updates")
async def question_updates(question_id: str, service: questions_service_dep):
    channel = PushChannel()
    job_key = await service.subscribe_to_updates(question_id, channel)
    if job_key is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Job not found")

    async def event_stream():
        try:
            async for frame in channel.stream():
                yield frame
        finally:
            # Client went away or the relay closed the channel
            service.unsubscribe(job_key, channel)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
