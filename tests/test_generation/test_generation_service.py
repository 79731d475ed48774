"""
Tests for the generation job lifecycle: completion, retries, failure
payloads, the deadline and the stale-job reaper.
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from aves.config import settings
from aves.engines.stub_engine import StubVisionEngine
from aves.errors import GenerationError, NotFoundError
from aves.generation.generator import AnnotationGenerator
from aves.generation.service import GenerationService
from aves.store import annotation_store as store


class FlakyEngine(StubVisionEngine):
    """Fails the first `failures` calls."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures

    async def detect_features(self, image_url, prompt):
        if self.failures > 0:
            self.failures -= 1
            raise GenerationError("rate limited")
        return await super().detect_features(image_url, prompt)


class SlowEngine(StubVisionEngine):

    async def detect_features(self, image_url, prompt):
        await asyncio.sleep(10)
        return []


def _service(session_factory, runner, engine):
    return GenerationService(session_factory, AnnotationGenerator(engine), runner)


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "GENERATION_RETRY_BASE_DELAY", 0.0)
    monkeypatch.setattr(settings, "PERSISTENCE_RETRY_BASE_DELAY", 0.0)


async def _load(session_factory, job_id):
    async with session_factory() as session:
        return await store.get_job(session, job_id)


class TestGenerationService:

    async def test_start_returns_processing(self, generation_service, runner, session_factory):
        job = await generation_service.start_generation("img-1", "https://images.test/1.jpg", "Pica pica")
        assert job.status == "processing"
        assert job.job_id.startswith("job_")

        await runner.wait(job.job_id)
        loaded = await _load(session_factory, job.job_id)
        assert loaded.status == "pending"
        assert loaded.species == "Pica pica"
        assert len(loaded.items) == 3
        assert all(item.status == "pending" for item in loaded.items)
        assert loaded.confidence_score == pytest.approx((0.95 + 0.88 + 0.82) / 3, abs=1e-4)

    async def test_retry_then_success(self, session_factory, runner):
        service = _service(session_factory, runner, FlakyEngine(failures=1))
        job = await service.start_generation("img-2", "https://images.test/2.jpg")
        await runner.wait(job.job_id)

        loaded = await _load(session_factory, job.job_id)
        assert loaded.status == "pending"
        assert loaded.attempts == 2

    async def test_exhausted_retries_fail_job(self, session_factory, runner):
        service = _service(session_factory, runner, FlakyEngine(failures=10))
        job = await service.start_generation("img-3", "https://images.test/3.jpg")
        await runner.wait(job.job_id)

        loaded = await _load(session_factory, job.job_id)
        assert loaded.status == "failed"
        assert loaded.error_message == "rate limited"
        assert loaded.error_payload["retriesAttempted"] == settings.GENERATION_MAX_ATTEMPTS
        assert loaded.items == []

    async def test_retry_budget_caps_attempts(self, session_factory, runner, monkeypatch):
        monkeypatch.setattr(settings, "GENERATION_RETRY_BASE_DELAY", 1.0)
        monkeypatch.setattr(settings, "GENERATION_RETRY_MAX_TOTAL_SECONDS", 0.5)
        service = _service(session_factory, runner, FlakyEngine(failures=10))
        job = await service.start_generation("img-4", "https://images.test/4.jpg")
        await runner.wait(job.job_id)

        loaded = await _load(session_factory, job.job_id)
        assert loaded.status == "failed"
        assert loaded.error_payload["retriesAttempted"] == 1

    async def test_timeout_marks_failed(self, session_factory, runner, monkeypatch):
        monkeypatch.setattr(settings, "JOB_TIMEOUT_SECONDS", 0.2)
        service = _service(session_factory, runner, SlowEngine())
        job = await service.start_generation("img-5", "https://images.test/5.jpg")
        await runner.wait(job.job_id)

        loaded = await _load(session_factory, job.job_id)
        assert loaded.status == "failed"
        assert "timeout" in loaded.error_message.lower()
        assert loaded.error_payload["timeout"] is True

    async def test_persistence_retried(self, session_factory, runner, monkeypatch):
        real_complete = store.complete_job
        calls = []

        async def flaky_complete(session, *args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("UPDATE annotation_jobs", {}, Exception("database is locked"))
            return await real_complete(session, *args, **kwargs)

        monkeypatch.setattr(store, "complete_job", flaky_complete)
        service = _service(session_factory, runner, StubVisionEngine())
        job = await service.start_generation("img-6", "https://images.test/6.jpg")
        await runner.wait(job.job_id)

        assert len(calls) == 2
        assert (await _load(session_factory, job.job_id)).status == "pending"

    async def test_reaper_fails_expired_jobs(self, session_factory, generation_service):
        async with session_factory() as session:
            async with session.begin():
                expired = await store.create_job(session, "img-7", "https://images.test/7.jpg", None, -1)
                live = await store.create_job(session, "img-8", "https://images.test/8.jpg", None, 300)

        assert await generation_service.reap_stale_jobs() == [expired.job_id]

        assert (await _load(session_factory, expired.job_id)).status == "failed"
        assert (await _load(session_factory, live.job_id)).status == "processing"
        payload = (await _load(session_factory, expired.job_id)).error_payload
        assert payload["timeout"] is True

    async def test_job_detail_missing(self, generation_service):
        with pytest.raises(NotFoundError):
            await generation_service.get_job_detail("job_0_missing")


class TestCompleteJobGuard:

    async def test_late_completion_ignored(self, session_factory, sample_items):
        async with session_factory() as session:
            async with session.begin():
                job = await store.create_job(session, "img-9", "https://images.test/9.jpg", None, 300)
                assert await store.fail_job(session, job.job_id, "Processing timeout after 300 seconds")
                assert not await store.complete_job(session, job.job_id, "img-9", sample_items)

        loaded = await _load(session_factory, job.job_id)
        assert loaded.status == "failed"
        assert loaded.items == []
