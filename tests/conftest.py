import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event

from app.api.deps import get_questions_service
from app.core.cache.dedup import DedupCache
from app.core.cache.store import RedisStore
from app.core.database import Base, build_engine, build_session_factory
from app.core.jobs.orchestrator import JobOrchestrator
from app.core.jobs.relay import UpdateRelay
from app.core.questions.pipeline import QuestionPipeline
from app.core.questions.repository import QuestionRepository
from app.core.questions.service import QuestionsService
from app.core.sql.compiler import PlanCompiler
from app.core.sql.validator import SafetyValidator
from app.main import app
from tests.fakes import FakeExecutor, FakePlanner


# =========================
# Stores
# =========================
# Throwaway SQLite file per test; foreign keys on so cascades behave like Postgres
@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'questions.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def repository(session_factory):
    return QuestionRepository(session_factory)


@pytest_asyncio.fixture(scope="function")
async def store():
    redis_store = RedisStore(fake_aioredis.FakeRedis(decode_responses=True))
    yield redis_store
    await redis_store.flush()
    await redis_store.close()


@pytest_asyncio.fixture(scope="function")
async def dedup(store):
    return DedupCache(store)


# =========================
# Jobs + service
# =========================
@pytest_asyncio.fixture(scope="function")
async def orchestrator():
    jobs = JobOrchestrator()
    yield jobs
    await jobs.close()


@pytest_asyncio.fixture(scope="function")
async def relay():
    return UpdateRelay(close_delay=0.05)


@pytest_asyncio.fixture(scope="function")
async def planner():
    return FakePlanner()


@pytest_asyncio.fixture(scope="function")
async def executor():
    return FakeExecutor()


@pytest_asyncio.fixture(scope="function")
async def questions_service(repository, dedup, orchestrator, relay, planner, executor):
    pipeline = QuestionPipeline(
        planner=planner,
        executor=executor,
        compiler=PlanCompiler(),
        validator=SafetyValidator(),
        dedup=dedup,
        repository=repository,
    )
    service = QuestionsService(repository, dedup, orchestrator, relay, pipeline)
    service.init_job_processor(concurrency=1)
    return service


# Client
@pytest_asyncio.fixture(scope="function")
async def client(questions_service: QuestionsService):
    app.dependency_overrides[get_questions_service] = lambda: questions_service

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
