import asyncio

import pytest

from app.core.errors import GENERIC_FAILURE_MESSAGE, ExecutorError, ValidationError
from app.core.jobs.orchestrator import Job, JobEvent, JobOrchestrator, JobStatus, derive_status

JOB_TYPE = "test-jobs"


def collect(orchestrator: JobOrchestrator, event: JobEvent):
    seen = []

    async def listener(job):
        seen.append(job)

    orchestrator.subscribe(event, listener)
    return seen


def test_status_is_derived_from_timestamps():
    job = Job(id="t:fp", job_type="t", fingerprint="fp", seq=1, payload={}, created_at="now")
    assert derive_status(job) == JobStatus.PENDING

    job.processed_on = 1.0
    assert derive_status(job) == JobStatus.PROCESSING

    job.finished_on = 2.0
    assert derive_status(job) == JobStatus.COMPLETED

    job.failed_reason = "boom"
    assert derive_status(job) == JobStatus.FAILED


def test_job_id_is_deterministic():
    assert JobOrchestrator.job_id("question-processing", "abc") == "question-processing:abc"


@pytest.mark.asyncio
async def test_job_walks_the_state_machine(orchestrator):
    started = asyncio.Event()
    release = asyncio.Event()
    completed = collect(orchestrator, JobEvent.COMPLETED)

    async def handler(job):
        started.set()
        await release.wait()
        return {"answer": 42}

    job = await orchestrator.create_or_find(JOB_TYPE, "fp", {"n": 1})
    assert job.status == JobStatus.PENDING

    orchestrator.register_processor(JOB_TYPE, handler)
    await started.wait()
    assert job.status == JobStatus.PROCESSING

    release.set()
    await orchestrator.join(JOB_TYPE)

    assert job.status == JobStatus.COMPLETED
    assert job.return_value == {"answer": 42}
    assert job.failed_reason is None
    assert completed == [job]


@pytest.mark.asyncio
async def test_internal_failures_get_a_generic_reason(orchestrator):
    failed = collect(orchestrator, JobEvent.FAILED)

    async def handler(job):
        raise ExecutorError("quota exceeded for project secret-project-123")

    orchestrator.register_processor(JOB_TYPE, handler)
    job = await orchestrator.create_or_find(JOB_TYPE, "fp", {})
    await orchestrator.join(JOB_TYPE)

    assert job.status == JobStatus.FAILED
    assert job.failed_reason == GENERIC_FAILURE_MESSAGE
    assert "secret-project" not in job.failed_reason
    assert job.return_value is None
    assert failed == [job]


@pytest.mark.asyncio
async def test_user_facing_failures_keep_their_message(orchestrator):
    async def handler(job):
        raise ValidationError("Operator not allowed: LIKE")

    orchestrator.register_processor(JOB_TYPE, handler)
    job = await orchestrator.create_or_find(JOB_TYPE, "fp", {})
    await orchestrator.join(JOB_TYPE)

    assert job.failed_reason == "Operator not allowed: LIKE"


@pytest.mark.asyncio
async def test_create_or_find_reuses_live_and_completed_jobs(orchestrator):
    async def handler(job):
        return "ok"

    first = await orchestrator.create_or_find(JOB_TYPE, "fp", {})
    again = await orchestrator.create_or_find(JOB_TYPE, "fp", {})
    assert again is first

    orchestrator.register_processor(JOB_TYPE, handler)
    await orchestrator.join(JOB_TYPE)

    assert await orchestrator.create_or_find(JOB_TYPE, "fp", {}) is first
    assert await orchestrator.find_existing(JOB_TYPE, "fp") is first


@pytest.mark.asyncio
async def test_failed_jobs_are_not_reused(orchestrator):
    calls = []

    async def handler(job):
        calls.append(job.seq)
        if len(calls) == 1:
            raise RuntimeError("first attempt fails")
        return "ok"

    orchestrator.register_processor(JOB_TYPE, handler)
    failed = await orchestrator.create_or_find(JOB_TYPE, "fp", {})
    await orchestrator.join(JOB_TYPE)
    assert failed.status == JobStatus.FAILED

    retried = await orchestrator.create_or_find(JOB_TYPE, "fp", {})
    await orchestrator.join(JOB_TYPE)

    assert retried is not failed
    assert retried.id == failed.id
    assert retried.status == JobStatus.COMPLETED
    # The completed job wins over the failed one with the same id
    assert await orchestrator.find_existing(JOB_TYPE, "fp") is retried


@pytest.mark.asyncio
async def test_skip_existing_check_always_enqueues(orchestrator):
    first = await orchestrator.create_or_find(JOB_TYPE, "fp", {})
    second = await orchestrator.create_or_find(JOB_TYPE, "fp", {}, skip_existing_check=True)

    assert second is not first
    assert second.seq > first.seq


@pytest.mark.asyncio
async def test_concurrency_bounds_parallel_handlers(orchestrator):
    running = 0
    peak = 0

    async def handler(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    orchestrator.register_processor(JOB_TYPE, handler, concurrency=2)
    for n in range(6):
        await orchestrator.create_or_find(JOB_TYPE, f"fp-{n}", {})
    await orchestrator.join(JOB_TYPE)

    assert peak == 2


@pytest.mark.asyncio
async def test_job_types_are_independent(orchestrator):
    release = asyncio.Event()
    order = []

    async def slow(job):
        await release.wait()
        order.append("slow")

    async def fast(job):
        order.append("fast")
        release.set()

    orchestrator.register_processor("slow", slow)
    orchestrator.register_processor("fast", fast)
    await orchestrator.create_or_find("slow", "a", {})
    await orchestrator.create_or_find("fast", "b", {})

    await asyncio.wait_for(
        asyncio.gather(orchestrator.join("slow"), orchestrator.join("fast")), timeout=1
    )

    assert order == ["fast", "slow"]


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_the_worker(orchestrator):
    async def bad_listener(job):
        raise RuntimeError("listener down")

    async def handler(job):
        return job.payload["n"]

    orchestrator.subscribe(JobEvent.COMPLETED, bad_listener)
    completed = collect(orchestrator, JobEvent.COMPLETED)
    orchestrator.register_processor(JOB_TYPE, handler)

    await orchestrator.create_or_find(JOB_TYPE, "a", {"n": 1})
    await orchestrator.create_or_find(JOB_TYPE, "b", {"n": 2})
    await orchestrator.join(JOB_TYPE)

    assert [job.return_value for job in completed] == [1, 2]


@pytest.mark.asyncio
async def test_clean_purges_terminal_jobs(orchestrator):
    async def handler(job):
        return None

    orchestrator.register_processor(JOB_TYPE, handler)
    await orchestrator.create_or_find(JOB_TYPE, "a", {})
    await orchestrator.join(JOB_TYPE)

    assert await orchestrator.clean() == 1
    assert await orchestrator.find_existing(JOB_TYPE, "a") is None


@pytest.mark.asyncio
async def test_register_processor_rejects_bad_concurrency(orchestrator):
    async def handler(job):
        return None

    with pytest.raises(ValueError):
        orchestrator.register_processor(JOB_TYPE, handler, concurrency=0)


@pytest.mark.asyncio
async def test_clean_older_than_keeps_recent_jobs(orchestrator):
    async def handler(job):
        return None

    orchestrator.register_processor(JOB_TYPE, handler)
    old = await orchestrator.create_or_find(JOB_TYPE, "old", {})
    await orchestrator.create_or_find(JOB_TYPE, "recent", {})
    await orchestrator.join(JOB_TYPE)
    old.finished_on -= 120

    assert await orchestrator.clean(older_than=60) == 1
    assert await orchestrator.find_existing(JOB_TYPE, "old") is None
    assert await orchestrator.find_existing(JOB_TYPE, "recent") is not None


@pytest.mark.asyncio
async def test_expired_terminal_jobs_are_dropped_on_create(orchestrator):
    """Jobs past the retention window are forgotten and run again when requested"""
    calls = []

    async def handler(job):
        calls.append(job.fingerprint)
        return job.fingerprint

    orchestrator.retention_seconds = 60
    orchestrator.register_processor(JOB_TYPE, handler)
    first = await orchestrator.create_or_find(JOB_TYPE, "a", {})
    await orchestrator.create_or_find(JOB_TYPE, "b", {})
    await orchestrator.join(JOB_TYPE)
    first.finished_on -= 120

    again = await orchestrator.create_or_find(JOB_TYPE, "a", {})
    await orchestrator.join(JOB_TYPE)

    assert again is not first
    assert calls == ["a", "b", "a"]
    assert [job.fingerprint for job in orchestrator.jobs[JOB_TYPE]] == ["b", "a"]
