"""
Generation job lifecycle.

start_generation() records the job and returns at once; the vision call and
the persistence of its results run on the task runner under the job's
deadline. Whatever happens, the job ends 'pending' or 'failed': the runner's
timeout handler covers slow jobs and reap_stale_jobs() covers jobs whose
process died.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aves.config import settings
from aves.errors import GenerationError, NotFoundError, PersistenceError
from aves.generation.generator import AnnotationGenerator, GeneratedAnnotation
from aves.generation.task_runner import GenerationTaskRunner
from aves.models.tables import AnnotationJob, CanonicalAnnotation
from aves.observability.metrics import (
    annotations_generated_total,
    generation_duration_seconds,
    generation_jobs_completed_total,
    generation_jobs_failed_total,
    generation_jobs_started_total,
)
from aves.store import annotation_store as store

logger = structlog.get_logger(__name__)


class GenerationService:

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        generator: AnnotationGenerator,
        runner: GenerationTaskRunner,
    ):
        self._session_factory = session_factory
        self.generator = generator
        self.runner = runner

    async def start_generation(
        self, image_id: str, image_url: str, species: Optional[str] = None
    ) -> AnnotationJob:
        """Create the job and hand the work to the runner. Does not wait for it."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    job = await store.create_job(
                        session, image_id, image_url, species, settings.JOB_TIMEOUT_SECONDS
                    )
        except SQLAlchemyError as e:
            logger.error("job_create_failed", image_id=image_id, error=str(e)[:300])
            raise PersistenceError("Failed to create annotation job") from e

        generation_jobs_started_total.inc()
        self.runner.submit(
            job.job_id,
            self._run(job.job_id, image_id, image_url, species),
            timeout=settings.JOB_TIMEOUT_SECONDS,
            on_timeout=self._on_timeout,
        )
        return job

    async def get_job_detail(
        self, job_id: str
    ) -> tuple[AnnotationJob, list[CanonicalAnnotation]]:
        """Job with its items and canonical annotations, after reaping expired jobs."""
        await self.reap_stale_jobs()
        async with self._session_factory() as session:
            job = await store.get_job(session, job_id)
            if job is None:
                raise NotFoundError("Job not found")
            canonical = await store.list_canonical_for_items(
                session, [item.id for item in job.items]
            )
        return job, canonical

    async def reap_stale_jobs(self) -> list[str]:
        """Fail every job left 'processing' past its deadline."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    reaped = await store.fail_expired_jobs(session)
        except SQLAlchemyError as e:
            logger.error("stale_job_reap_failed", error=str(e)[:300])
            return []
        if reaped:
            generation_jobs_failed_total.labels(reason="timeout").inc(len(reaped))
        return reaped

    # ── Background work ──────────────────────────────────────

    async def _run(
        self, job_id: str, image_id: str, image_url: str, species: Optional[str]
    ) -> None:
        start = time.perf_counter()
        # Runs in its own task context, so the binding covers only this job
        structlog.contextvars.bind_contextvars(job_id=job_id, image_id=image_id)
        logger.info("generation_started", species=species)

        try:
            annotations, attempts = await self._generate_with_retry(
                job_id, image_url, image_id, species
            )
        except GenerationError as e:
            payload = {
                "message": e.message,
                "retriesAttempted": e.attempts,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            await self._record_failure(job_id, e.message, payload, "generation", e.attempts)
            return
        except Exception as e:
            message = f"Unexpected generation failure: {e}"
            logger.exception("generation_crashed")
            payload = {"message": message, "timestamp": datetime.now(timezone.utc).isoformat()}
            await self._record_failure(job_id, message, payload, "internal")
            return

        items = [annotation.to_item_values() for annotation in annotations]
        raw = [annotation.model_dump(by_alias=True, mode="json") for annotation in annotations]
        try:
            completed = await self._persist_with_retry(
                "complete_job",
                job_id,
                lambda session: store.complete_job(session, job_id, image_id, items, raw, attempts),
            )
        except PersistenceError as e:
            await self._record_failure(
                job_id,
                e.message,
                {"message": e.message, "timestamp": datetime.now(timezone.utc).isoformat()},
                "persistence",
                attempts,
            )
            return

        if not completed:
            logger.warning("job_closed_before_completion")
            return

        generation_jobs_completed_total.inc()
        generation_duration_seconds.observe(time.perf_counter() - start)
        for annotation in annotations:
            annotations_generated_total.labels(annotation_type=annotation.type.value).inc()
        logger.info("generation_completed", items=len(items), attempts=attempts)

    async def _generate_with_retry(
        self,
        job_id: str,
        image_url: str,
        image_id: str,
        species: Optional[str],
    ) -> tuple[list[GeneratedAnnotation], int]:
        """
        Bounded retries with doubling delay. Total sleep is capped so a
        failing provider is not hammered for longer than the configured budget.
        """
        waited = 0.0
        attempt = 0
        while True:
            attempt += 1
            try:
                annotations = await self.generator.generate(image_url, image_id, species)
                return annotations, attempt
            except GenerationError as e:
                delay = settings.GENERATION_RETRY_BASE_DELAY * (2 ** (attempt - 1))
                out_of_attempts = attempt >= settings.GENERATION_MAX_ATTEMPTS
                out_of_budget = waited + delay > settings.GENERATION_RETRY_MAX_TOTAL_SECONDS
                logger.warning(
                    "generation_attempt_failed",
                    job_id=job_id,
                    attempt=attempt,
                    error=e.message,
                    will_retry=not (out_of_attempts or out_of_budget),
                )
                if out_of_attempts or out_of_budget:
                    raise GenerationError(e.message, attempts=attempt) from e
                await asyncio.sleep(delay)
                waited += delay

    async def _persist_with_retry(
        self,
        operation: str,
        job_id: str,
        fn: Callable[[AsyncSession], Awaitable[Any]],
    ) -> Any:
        """Run fn in its own transaction, retrying transient database failures."""
        for attempt in range(1, settings.PERSISTENCE_MAX_ATTEMPTS + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        return await fn(session)
            except SQLAlchemyError as e:
                logger.warning(
                    "job_update_failed",
                    operation=operation,
                    job_id=job_id,
                    attempt=attempt,
                    error=str(e)[:300],
                )
                if attempt == settings.PERSISTENCE_MAX_ATTEMPTS:
                    raise PersistenceError(
                        f"Failed to {operation.replace('_', ' ')} after {attempt} attempts"
                    ) from e
                await asyncio.sleep(settings.PERSISTENCE_RETRY_BASE_DELAY * (2 ** (attempt - 1)))

    async def _record_failure(
        self,
        job_id: str,
        message: str,
        payload: dict,
        reason: str,
        attempts: Optional[int] = None,
    ) -> None:
        try:
            failed = await self._persist_with_retry(
                "fail_job",
                job_id,
                lambda session: store.fail_job(session, job_id, message, payload, attempts),
            )
        except PersistenceError:
            # Still 'processing'; the deadline reaper will close it
            logger.error("job_failure_not_recorded", job_id=job_id, reason=reason)
            return
        if failed:
            generation_jobs_failed_total.labels(reason=reason).inc()
            logger.warning("generation_failed", job_id=job_id, reason=reason, error=message)

    async def _on_timeout(self, job_id: str, timeout: float) -> None:
        message = f"Processing timeout after {timeout:g} seconds"
        await self._record_failure(job_id, message, {"error": message, "timeout": True}, "timeout")
