import asyncio
import json

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.core import models
from app.core.errors import GENERIC_FAILURE_MESSAGE, PersistenceError
from app.core.questions.service import QUESTION_JOB_TYPE


async def settle(orchestrator):
    await asyncio.wait_for(orchestrator.join(QUESTION_JOB_TYPE), timeout=2)


@pytest.mark.asyncio
async def test_root(client: AsyncClient):
    response = await client.get("/")

    assert response.status_code == 200
    assert "Welcome" in response.json()["message"]


@pytest.mark.asyncio
async def test_create_question_accepted(client: AsyncClient, orchestrator, repository, session_factory):
    """Accepted questions return 202 with ids and are logged as requests"""
    response = await client.post("/api/questions", json={"user_prompt": "Top repos"})

    assert response.status_code == 202
    data = response.json()
    assert data["job_id"] == f"{QUESTION_JOB_TYPE}:{data['question_id']}"

    await settle(orchestrator)
    question = await repository.get_question(data["question_id"])
    assert question is not None

    async with session_factory() as db:
        sources = (await db.execute(select(models.QuestionRequest.source))).scalars().all()
    assert sources == ["api"]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"user_prompt": "   "}, {"user_prompt": ""}, {}])
async def test_create_question_requires_prompt(client: AsyncClient, payload):
    response = await client.post("/api/questions", json=payload)

    assert response.status_code == 400
    assert response.json() == {"error": "User prompt missing"}


@pytest.mark.asyncio
async def test_create_question_store_failure_is_generic(client: AsyncClient, questions_service, monkeypatch):
    async def broken(user_prompt):
        raise PersistenceError("connection to 10.0.0.7:5432 refused")

    monkeypatch.setattr(questions_service, "schedule_question", broken)

    response = await client.post("/api/questions", json={"user_prompt": "Top repos"})

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to create question"}


@pytest.mark.asyncio
async def test_repeated_prompt_returns_same_ids(client: AsyncClient, orchestrator):
    first = (await client.post("/api/questions", json={"user_prompt": "Top repos"})).json()
    second = (await client.post("/api/questions", json={"user_prompt": "top repos "})).json()
    await settle(orchestrator)

    assert first == second


@pytest.mark.asyncio
async def test_get_question_lifecycle(client: AsyncClient, orchestrator, executor):
    created = (await client.post("/api/questions", json={"user_prompt": "Top repos"})).json()
    await settle(orchestrator)

    response = await client.get(f"/api/questions/{created['question_id']}")

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == created["question_id"]
    assert data["title"] == "Most starred repos"
    assert data["status"] == "done"
    assert data["result"]["rows"] == executor.rows


@pytest.mark.asyncio
async def test_get_unknown_question(client: AsyncClient):
    response = await client.get("/api/questions/does-not-exist")

    assert response.status_code == 404
    assert response.json() == {"error": "Question not found"}


@pytest.mark.asyncio
async def test_internal_errors_are_not_leaked(client: AsyncClient, questions_service, monkeypatch):
    async def broken(question_id):
        raise PersistenceError("relation questions does not exist at 10.0.0.7")

    monkeypatch.setattr(questions_service, "get_question_detail", broken)

    response = await client.get("/api/questions/q1")

    assert response.status_code == 500
    assert response.json() == {"error": GENERIC_FAILURE_MESSAGE}


@pytest.mark.asyncio
async def test_list_questions(client: AsyncClient, orchestrator, repository):
    created = (await client.post("/api/questions", json={"user_prompt": "Top repos"})).json()
    await settle(orchestrator)
    await repository.create_question("s1", "Suggested?", title="Suggested")
    await repository.update_question("s1", type="suggested")

    response = await client.get("/api/questions")

    assert response.status_code == 200
    data = response.json()
    assert [q["id"] for q in data["user_questions"]] == [created["question_id"]]
    assert [q["id"] for q in data["suggested_questions"]] == ["s1"]
    assert data["suggested_questions"][0]["type"] == "suggested"


@pytest.mark.asyncio
async def test_updates_stream_for_finished_job(client: AsyncClient, orchestrator):
    created = (await client.post("/api/questions", json={"user_prompt": "Top repos"})).json()
    await settle(orchestrator)

    response = await client.get(f"/api/questions/{created['question_id']}/updates")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [chunk for chunk in response.text.split("\n\n") if chunk]
    assert len(frames) == 1
    state = json.loads(frames[0][len("data: "):])
    assert state["jobId"] == created["job_id"]
    assert state["status"] == "completed"
    assert state["result"]["metadata"]["totalRows"] == 2


@pytest.mark.asyncio
async def test_updates_for_unknown_question(client: AsyncClient):
    response = await client.get("/api/questions/does-not-exist/updates")

    assert response.status_code == 404
    assert response.json() == {"error": "Job not found"}
