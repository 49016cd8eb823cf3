import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List

from app.core.cache.dedup import DedupCache
from app.core.cache.fingerprint import prompt_fingerprint, sql_fingerprint
from app.core.clients.executor import Executor
from app.core.clients.planner import Planner
from app.core.errors import AbstentionError
from app.core.jobs.orchestrator import Job
from app.core.questions.repository import QuestionRepository
from app.core.sql.compiler import PlanCompiler, parse_plan
from app.core.sql.validator import SafetyValidator

logger = logging.getLogger(__name__)

ABSTENTION_MESSAGE = (
    "Could not generate a safe SQL for this question. Please try refining your prompt."
)


class PipelineStep(str, Enum):
    """Stages of the question handler, in execution order."""

    PLAN = "plan"
    VALIDATE = "validate"
    COMPILE = "compile"
    DEDUP = "dedup"
    PERSIST = "persist"
    EXECUTE = "execute"
    CHART = "chart"
    CACHE = "cache"


class PipelineLogger:
    """Per-job stage log, mirrored to the module logger."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.start_time = datetime.now()
        self.logs: List[Dict[str, Any]] = []

    def log(self, step: PipelineStep, message: str, level: str = "info"):
        self.logs.append(
            {
                "timestamp": datetime.now().isoformat(),
                "step": step.value,
                "message": message,
                "level": level,
                "elapsed_seconds": (datetime.now() - self.start_time).total_seconds(),
            }
        )

        if level == "error":
            logger.error(f"[Job {self.job_id}] {step.value}: {message}")
        elif level == "warning":
            logger.warning(f"[Job {self.job_id}] {step.value}: {message}")
        else:
            logger.info(f"[Job {self.job_id}] {step.value}: {message}")

    def get_summary(self) -> Dict[str, Any]:
        end_time = datetime.now()
        return {
            "job_id": self.job_id,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
            "steps": [entry["step"] for entry in self.logs],
            "errors": [entry for entry in self.logs if entry["level"] == "error"],
        }


# -----------------------------------------------------------------------------
# QUESTION PIPELINE
# Purpose: the registered handler for question jobs.
# plan -> validate -> compile -> SQL dedup -> persist -> execute -> chart -> cache
# -----------------------------------------------------------------------------


class QuestionPipeline:
    """
    Turn one question job into rows and a chart config.

    The executor is only reached on a SQL-fingerprint cache miss. Jobs that
    compile to the same SQL in this process queue behind one another, so the
    later ones find the cached result instead of executing again. Whatever
    the persist stage wrote survives a later failure.
    """

    def __init__(
        self,
        planner: Planner,
        executor: Executor,
        compiler: PlanCompiler,
        validator: SafetyValidator,
        dedup: DedupCache,
        repository: QuestionRepository,
    ):
        self.planner = planner
        self.executor = executor
        self.compiler = compiler
        self.validator = validator
        self.dedup = dedup
        self.repository = repository
        # sql_hash -> [lock, holders + waiters]
        self._sql_locks: Dict[str, List[Any]] = {}

    @asynccontextmanager
    async def _sql_in_flight(self, sql_hash: str) -> AsyncIterator[None]:
        entry = self._sql_locks.setdefault(sql_hash, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._sql_locks[sql_hash]

    async def process(self, job: Job) -> Dict[str, Any]:
        """
        Run every stage for a question job.

        Args:
            job: Job whose payload carries question_id and user_prompt.

        Returns:
            {"result": {"rows": [...], "execution_metadata": {...}}, "chart_config": {...}}

        Raises:
            AbstentionError: planner or validator refused the plan.
            ValidationError: the plan could not be parsed or compiled.
            Anything raised by the executor or the stores.
        """
        run_log = PipelineLogger(job.id)
        step = PipelineStep.PLAN
        try:
            question_id = job.payload["question_id"]
            user_prompt = job.payload["user_prompt"]

            planned = await self.planner.plan(user_prompt)
            title = planned.title or user_prompt
            job.meta["title"] = title
            run_log.log(step, f"Plan received, fidelity {planned.fidelity:.2f}")

            step = PipelineStep.VALIDATE
            verdict = self.validator.validate(
                planned.plan, {"fidelity": planned.fidelity, "abstain": planned.abstain}
            )
            if not verdict.ok:
                run_log.log(step, f"Plan rejected: {verdict.reason}", level="warning")
                raise AbstentionError(ABSTENTION_MESSAGE, reason=verdict.reason)

            step = PipelineStep.COMPILE
            sql = self.compiler.compile(parse_plan(planned.plan))
            sql_hash = sql_fingerprint(sql)
            job.meta["sql_hash"] = sql_hash
            run_log.log(step, f"Compiled SQL {sql_hash[:12]}")

            # Held from the cache lookup until the result is cached
            async with self._sql_in_flight(sql_hash):
                step = PipelineStep.DEDUP
                cached = await self.dedup.get_by_sql(sql_hash)
                if cached is not None:
                    run_log.log(step, f"SQL already answered by question {cached.question_id}")
                    if cached.question_id != question_id:
                        await self.repository.delete_question(question_id)
                    await self.dedup.set_by_prompt(
                        prompt_fingerprint(user_prompt), cached.job_id, cached.question_id
                    )
                    job.meta["deduplicated"] = True
                    return {"result": cached.result, "chart_config": cached.chart_config}

                step = PipelineStep.PERSIST
                await self.repository.update_question(
                    question_id,
                    sql_text=sql,
                    sql_hash=sql_hash,
                    plan=planned.plan,
                    title=title,
                )
                run_log.log(step, f"Saved SQL for question {question_id}")

                step = PipelineStep.EXECUTE
                execution = await self.executor.execute(sql)
                run_log.log(step, f"Executor returned {len(execution.rows)} rows")

                step = PipelineStep.CHART
                chart_config = await self.planner.infer_chart_config(execution.rows)
                run_log.log(step, f"Chart type {chart_config.get('chartType')}")

                step = PipelineStep.CACHE
                result = execution.model_dump()
                await self.dedup.set_by_sql(sql_hash, question_id, result, chart_config, job.id)
                run_log.log(step, f"Cached result for SQL {sql_hash[:12]}")

            return {"result": result, "chart_config": chart_config}
        except Exception as error:
            run_log.log(step, f"Failed: {error}", level="error")
            raise
        finally:
            job.meta["pipeline"] = run_log.get_summary()
