import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
import alembic.config
import alembic.command

from app.api.errors import register_exception_handlers
from app.api.router import api_router
from app.core.cache.dedup import DedupCache
from app.core.cache.store import RedisStore
from app.core.clients.executor import HttpExecutor
from app.core.clients.planner import HttpPlanner
from app.core.config import settings
from app.core.database import build_engine, build_session_factory
from app.core.jobs.orchestrator import JobOrchestrator
from app.core.jobs.relay import UpdateRelay
from app.core.questions.pipeline import QuestionPipeline
from app.core.questions.promotion import SuggestedQuestionPromoter
from app.core.questions.repository import QuestionRepository
from app.core.questions.service import QuestionsService
from app.core.sql.compiler import PlanCompiler
from app.core.sql.validator import SafetyValidator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")


# Build every service once and tear them down in reverse order
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Apply any pending migrations automatically when the app starts
    if settings.RUN_MIGRATIONS:
        try:
            await asyncio.to_thread(run_migrations)
            logger.info("Migrations applied successfully (or already up-to-date)")
        except Exception as e:
            logger.error(f"Migration error during startup: {e}")

    engine = build_engine(settings.DATABASE_URL)
    repository = QuestionRepository(build_session_factory(engine))
    store = RedisStore.from_url(settings.REDIS_URL)
    dedup = DedupCache(store, ttl=settings.CACHE_TTL_SECONDS)
    orchestrator = JobOrchestrator(retention_seconds=settings.CACHE_TTL_SECONDS)
    relay = UpdateRelay(close_delay=settings.SSE_CLOSE_DELAY_SECONDS)

    planner = HttpPlanner(settings.PLANNER_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)
    pipeline = QuestionPipeline(
        planner=planner,
        executor=HttpExecutor(settings.EXECUTOR_URL, timeout=settings.HTTP_TIMEOUT_SECONDS),
        compiler=PlanCompiler(),
        validator=SafetyValidator(fidelity_threshold=settings.FIDELITY_THRESHOLD),
        dedup=dedup,
        repository=repository,
    )

    questions_service = QuestionsService(repository, dedup, orchestrator, relay, pipeline)
    questions_service.init_job_processor(concurrency=settings.QUESTION_JOB_CONCURRENCY)

    promoter = SuggestedQuestionPromoter(
        repository,
        interval_seconds=settings.SUGGESTED_PROMOTION_INTERVAL_SECONDS,
        threshold=settings.SUGGESTED_PROMOTION_THRESHOLD,
        window_hours=settings.SUGGESTED_PROMOTION_WINDOW_HOURS,
    )
    promoter.start()

    app.state.questions_service = questions_service

    yield

    await promoter.stop()
    await orchestrator.close()
    await orchestrator.clean()
    await store.close()
    await engine.dispose()


app = FastAPI(title="GitHub Trends Questions API", lifespan=lifespan)

register_exception_handlers(app)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the GitHub Trends Questions API"}
