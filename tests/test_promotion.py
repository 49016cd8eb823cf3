import asyncio

import pytest

from app.core.errors import PersistenceError
from app.core.questions.promotion import SuggestedQuestionPromoter


async def answered_question(repository, question_id, asks):
    await repository.create_question(question_id, f"{question_id}?")
    await repository.create_job_metadata(question_id, f"job-{question_id}")
    await repository.complete_job_with_result(f"job-{question_id}", {"result": {"rows": []}})
    for _ in range(asks):
        await repository.log_question_request(question_id, source="api")


@pytest.mark.asyncio
async def test_run_once_promotes(repository):
    await answered_question(repository, "q1", asks=2)
    promoter = SuggestedQuestionPromoter(repository, threshold=2, window_hours=1)

    assert await promoter.run_once() == 1
    assert [q.type for q in await repository.get_suggested_questions()] == ["suggested"]


@pytest.mark.asyncio
async def test_background_task_runs_periodically(repository):
    await answered_question(repository, "q1", asks=1)
    promoter = SuggestedQuestionPromoter(repository, interval_seconds=0.01, threshold=1)

    promoter.start()
    await asyncio.sleep(0.2)
    await promoter.stop()

    assert [q.id for q in await repository.get_suggested_questions()] == ["q1"]


class FlakyRepository:
    def __init__(self):
        self.calls = 0

    async def promote_popular_questions(self, threshold, window_hours):
        self.calls += 1
        if self.calls == 1:
            raise PersistenceError("database unavailable")
        return 0


@pytest.mark.asyncio
async def test_store_errors_do_not_stop_the_task():
    repository = FlakyRepository()
    promoter = SuggestedQuestionPromoter(repository, interval_seconds=0.01)

    promoter.start()
    await asyncio.sleep(0.1)
    await promoter.stop()

    assert repository.calls > 1
