"""
Generation orchestrator end to end with a scripted provider

Covers the submission path (cache hit / miss), the worker pipeline and the
caller-facing views.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeGateway, done, running
from forge3d.exceptions import GatewaySubmitError, JobNotFound, PersistenceError, ValidationError
from forge3d.jobs.orchestrator import CACHE_HIT_MESSAGE, GenerationOrchestrator
from forge3d.jobs.types import GenerationOptions, InputKind, JobStatus


@pytest.fixture
async def orchestrator(config, fake_gateway):
    orch = GenerationOrchestrator(config, gateway=fake_gateway)
    await orch.start()
    yield orch
    await orch.close()


async def settle(orch):
    assert await orch.pool.drain(timeout=5)


@pytest.mark.asyncio
async def test_red_cube_scenario(orchestrator, fake_gateway):
    result = await orchestrator.submit_text("alice", "a red cube")

    assert result.status is JobStatus.PENDING
    assert result.cached is False
    assert result.estimated_seconds == 300

    await settle(orchestrator)

    job = await orchestrator.get_job(result.job_id)
    assert job.status is JobStatus.COMPLETED
    assert [f.to_dict() for f in job.result_files] == [
        {"type": "obj", "url": "https://cdn.test/model.obj", "preview_image_url": "https://cdn.test/preview.png"}
    ]
    assert job.provider_job_id == "prov-1"

    again = await orchestrator.submit_text("bob", "  a red   cube ")
    assert again.cached is True
    assert again.status is JobStatus.COMPLETED
    assert again.message == CACHE_HIT_MESSAGE
    assert again.estimated_seconds == 0
    assert len(fake_gateway.submit_calls) == 1


@pytest.mark.asyncio
async def test_cache_hit_makes_no_gateway_calls(orchestrator, fake_gateway):
    first = await orchestrator.submit_text("alice", "a red cube")
    await settle(orchestrator)
    submits, queries = len(fake_gateway.submit_calls), len(fake_gateway.query_calls)

    hit = await orchestrator.submit_text("alice", "a red cube")
    await settle(orchestrator)

    assert len(fake_gateway.submit_calls) == submits
    assert len(fake_gateway.query_calls) == queries
    hit_job = await orchestrator.get_job(hit.job_id)
    assert hit_job.job_id != first.job_id
    assert hit_job.status is JobStatus.COMPLETED
    assert hit_job.completed_at is not None
    assert hit_job.result_files == (await orchestrator.get_job(first.job_id)).result_files


@pytest.mark.asyncio
async def test_cache_miss_creates_once_and_enqueues_once(config, fake_gateway):
    orch = GenerationOrchestrator(config, gateway=fake_gateway)
    with patch.object(orch.store, "create", wraps=orch.store.create) as create, \
            patch.object(orch.pool, "enqueue", wraps=orch.pool.enqueue) as enqueue:
        await orch.submit_image("alice", "https://img.test/chair.png")

    assert create.await_count == 1
    assert enqueue.call_count == 1


@pytest.mark.asyncio
async def test_duplicate_before_completion_is_independent(config):
    gateway = FakeGateway([running(), running(), done()])
    gateway.submit_delay = 0.05
    orch = GenerationOrchestrator(config, gateway=gateway)
    await orch.start()
    try:
        first = await orch.submit_text("alice", "a red cube")
        second = await orch.submit_text("alice", "a red cube")
        await settle(orch)
    finally:
        await orch.close()

    assert first.job_id != second.job_id
    assert not first.cached and not second.cached
    assert len(gateway.submit_calls) == 2


@pytest.mark.asyncio
async def test_submit_error_goes_pending_to_failed(config):
    gateway = FakeGateway()
    gateway.submit_error = GatewaySubmitError("HTTP 400: bad prompt", status=400)
    orch = GenerationOrchestrator(config, gateway=gateway)

    seen = []
    real_update_status = orch.store.update_status

    async def recording_update_status(job_id, status):
        seen.append(status)
        return await real_update_status(job_id, status)

    orch.store.update_status = recording_update_status
    await orch.start()
    try:
        result = await orch.submit_text("alice", "a red cube")
        await settle(orch)
    finally:
        await orch.close()

    job = await orch.get_job(result.job_id)
    assert job.status is JobStatus.FAILED
    assert "bad prompt" in job.error_message
    assert seen == [JobStatus.FAILED]
    assert job.provider_job_id is None


@pytest.mark.asyncio
async def test_submit_timeout_fails_job(config):
    config["FORGE_SUBMIT_TIMEOUT_S"] = 0.01
    gateway = FakeGateway()
    gateway.submit_delay = 1
    orch = GenerationOrchestrator(config, gateway=gateway)
    await orch.start()
    try:
        result = await orch.submit_text("alice", "slow cube")
        await settle(orch)
    finally:
        await orch.close()

    job = await orch.get_job(result.job_id)
    assert job.status is JobStatus.FAILED
    assert "did not respond" in job.error_message


@pytest.mark.asyncio
async def test_worker_count_bounds_provider_concurrency(config):
    config["FORGE_WORKERS"] = 2
    gateway = FakeGateway([done()])
    gateway.submit_delay = 0.02
    orch = GenerationOrchestrator(config, gateway=gateway)
    for i in range(6):
        await orch.submit_text("alice", f"shape {i}")

    await orch.start()
    try:
        await settle(orch)
    finally:
        await orch.close()

    assert gateway.peak_in_flight == 2
    assert orch.pool.peak_active == 2


@pytest.mark.asyncio
async def test_full_queue_leaves_job_pending_and_sweep_recovers(config, fake_gateway):
    config["FORGE_QUEUE_SIZE"] = 1
    orch = GenerationOrchestrator(config, gateway=fake_gateway)

    # workers not started yet: the second submission finds the queue full
    first = await orch.submit_text("alice", "one")
    second = await orch.submit_text("alice", "two")
    assert "queue is full" in second.message
    assert (await orch.get_job(second.job_id)).status is JobStatus.PENDING

    await orch.start()
    try:
        await settle(orch)
        assert await orch.resubmit_pending(limit=10) == 1
        await settle(orch)
    finally:
        await orch.close()

    assert (await orch.get_job(first.job_id)).status is JobStatus.COMPLETED
    assert (await orch.get_job(second.job_id)).status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_processing_after_restart(config):
    gateway = FakeGateway([done()])
    first_run = GenerationOrchestrator(config, gateway=gateway)
    result = await first_run.submit_text("alice", "a red cube")
    await first_run.store.update_provider_id(result.job_id, "prov-left-behind")
    await first_run.store.update_status(result.job_id, JobStatus.PROCESSING)

    # a new process: fresh pool, same durable store on disk
    orch = GenerationOrchestrator(config, gateway=gateway)

    await orch.start()
    try:
        assert await orch.resume_processing() == 1
        await settle(orch)
    finally:
        await orch.close()

    assert (await orch.get_job(result.job_id)).status is JobStatus.COMPLETED
    assert gateway.submit_calls == []
    assert gateway.query_calls == ["prov-left-behind"]


@pytest.mark.asyncio
async def test_unexpected_error_marks_job_failed(orchestrator):
    with patch.object(orchestrator.poller, "poll_until_terminal", AsyncMock(side_effect=KeyError("boom"))):
        result = await orchestrator.submit_text("alice", "a red cube")
        await settle(orchestrator)

    job = await orchestrator.get_job(result.job_id)
    assert job.status is JobStatus.FAILED
    assert job.error_message.startswith("internal error:")


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["", "   ", "\n\t"])
async def test_empty_input_is_rejected_before_persisting(orchestrator, content):
    with pytest.raises(ValidationError):
        await orchestrator.submit_text("alice", content)
    with pytest.raises(ValidationError):
        await orchestrator.submit_image("alice", content)
    assert (await orchestrator.store.stats())["total_jobs"] == 0


@pytest.mark.asyncio
async def test_persistence_failure_enqueues_nothing(orchestrator):
    with patch.object(orchestrator.store, "create", AsyncMock(side_effect=PersistenceError("disk full"))):
        with pytest.raises(PersistenceError):
            await orchestrator.submit_text("alice", "a red cube")
    assert orchestrator.pool.get_stats()["jobs_enqueued"] == 0


@pytest.mark.asyncio
async def test_get_job_unknown_raises(orchestrator):
    with pytest.raises(JobNotFound) as exc_info:
        await orchestrator.get_job("missing")
    assert exc_info.value.job_id == "missing"


@pytest.mark.asyncio
async def test_status_view_and_listing(orchestrator):
    first = await orchestrator.submit_image("alice", "https://img.test/chair.png")
    assert first.estimated_seconds == 240
    await settle(orchestrator)
    await asyncio.sleep(0.005)
    second = await orchestrator.submit_text("alice", "a red cube")
    await settle(orchestrator)

    view = await orchestrator.get_job_status(first.job_id)
    assert view.status is JobStatus.COMPLETED
    assert view.progress == 100
    assert view.to_dict()["status"] == "completed"

    jobs = await orchestrator.list_jobs("alice")
    assert [j.job_id for j in jobs] == [second.job_id, first.job_id]
    assert await orchestrator.list_jobs("nobody") == []


@pytest.mark.asyncio
async def test_stats_shape(orchestrator):
    await orchestrator.submit_text("alice", "a red cube")
    await settle(orchestrator)

    stats = await orchestrator.stats()
    assert stats["jobs"]["status_counts"]["completed"] == 1
    assert stats["cache"]["misses"] == 1
    assert stats["pool"]["jobs_processed"] == 1
    assert stats["gateway"] == "FakeGateway"


@pytest.mark.asyncio
async def test_lifecycle_starts_and_stops_gateway(config, fake_gateway):
    orch = GenerationOrchestrator(config, gateway=fake_gateway)
    await orch.start()
    assert fake_gateway.started
    await orch.close()
    assert fake_gateway.stopped


@pytest.mark.asyncio
async def test_sweep_does_not_double_dispatch_queued_job(config, fake_gateway):
    orch = GenerationOrchestrator(config, gateway=fake_gateway)
    result = await orch.submit_text("alice", "a red cube")

    # still queued from the submission: a sweep must not add a second envelope
    assert await orch.resubmit_pending() == 0

    await orch.start()
    try:
        await settle(orch)
    finally:
        await orch.close()

    assert fake_gateway.submit_calls == [(InputKind.TEXT, "a red cube")]
    assert (await orch.get_job(result.job_id)).provider_job_id == "prov-1"


@pytest.mark.asyncio
async def test_resume_skips_job_already_being_polled(config):
    gateway = FakeGateway([running()] * 50 + [done()])
    orch = GenerationOrchestrator(config, gateway=gateway)
    result = await orch.submit_text("alice", "a red cube")
    await orch.start()
    try:
        while (await orch.get_job(result.job_id)).status is JobStatus.PENDING:
            await asyncio.sleep(0)
        assert await orch.resume_processing() == 0
        await settle(orch)
    finally:
        await orch.close()

    assert len(gateway.submit_calls) == 1
    assert (await orch.get_job(result.job_id)).status is JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_options_reach_the_provider_and_split_the_cache(orchestrator, fake_gateway):
    glb = GenerationOptions(result_format="glb", face_count=20000)
    first = await orchestrator.submit_text("alice", "a red cube", glb)
    await settle(orchestrator)

    sent = fake_gateway.submit_options[0]
    assert sent.result_format == "GLB"
    assert sent.face_count == 20000
    # unset PBR is filled from config
    assert sent.enable_pbr is False
    assert (await orchestrator.get_job(first.job_id)).options == sent

    assert (await orchestrator.submit_text("bob", "a red cube", GenerationOptions(result_format="GLB", face_count=20000))).cached
    other_format = await orchestrator.submit_text("bob", "a red cube")
    assert other_format.cached is False
    await settle(orchestrator)
    assert fake_gateway.submit_options[1].result_format == "OBJ"


@pytest.mark.asyncio
async def test_invalid_face_count_is_rejected(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.submit_text("alice", "a red cube", GenerationOptions(face_count=0))
    assert (await orchestrator.store.stats())["total_jobs"] == 0
