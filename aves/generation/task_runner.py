"""
In-process runner for generation jobs.

Each job runs as an asyncio.Task under a deadline. When the deadline passes
the work is cancelled and the on_timeout callback records the failure, so
the timeout is part of the task's own lifecycle.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from aves.observability.metrics import generation_jobs_active

logger = structlog.get_logger(__name__)

TimeoutHandler = Callable[[str, float], Awaitable[None]]


class GenerationTaskRunner:

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def active_jobs(self) -> list[str]:
        return list(self._tasks)

    def submit(
        self,
        job_id: str,
        work: Awaitable[None],
        timeout: float,
        on_timeout: Optional[TimeoutHandler] = None,
    ) -> asyncio.Task:
        """Schedule work for job_id and return its task."""
        if job_id in self._tasks:
            raise ValueError(f"Job {job_id} is already running")

        task = asyncio.create_task(
            self._supervise(job_id, work, timeout, on_timeout), name=f"generation:{job_id}"
        )
        self._tasks[job_id] = task
        generation_jobs_active.inc()
        task.add_done_callback(lambda _t: self._forget(job_id))
        return task

    def _forget(self, job_id: str) -> None:
        if self._tasks.pop(job_id, None) is not None:
            generation_jobs_active.dec()

    async def _supervise(
        self,
        job_id: str,
        work: Awaitable[None],
        timeout: float,
        on_timeout: Optional[TimeoutHandler],
    ) -> None:
        try:
            await asyncio.wait_for(work, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("generation_timeout", job_id=job_id, timeout_seconds=timeout)
            if on_timeout is not None:
                try:
                    await on_timeout(job_id, timeout)
                except Exception as e:
                    # The stale-job reaper marks the job failed later
                    logger.error("timeout_handler_failed", job_id=job_id, error=str(e)[:200])
        except asyncio.CancelledError:
            logger.info("generation_cancelled", job_id=job_id)
            raise
        except Exception as e:
            logger.error("generation_task_crashed", job_id=job_id, error=str(e)[:200])

    def cancel(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def wait(self, job_id: str) -> None:
        """Wait for a job's task to finish (tests and shutdown)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel everything still running."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("generation_runner_stopped", cancelled=len(tasks))
