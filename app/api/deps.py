from typing import Annotated

from fastapi import Depends, Request

from app.core.questions.service import QuestionsService


def get_questions_service(request: Request) -> QuestionsService:
    """Service built once in the app lifespan."""
    return request.app.state.questions_service


questions_service_dep = Annotated[QuestionsService, Depends(get_questions_service)]
