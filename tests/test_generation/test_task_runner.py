"""
Tests for the in-process generation task runner.
"""

import asyncio

from aves.generation.task_runner import GenerationTaskRunner


class TestGenerationTaskRunner:

    async def test_runs_work(self, runner):
        done = []

        async def work():
            done.append(True)

        runner.submit("job-1", work(), timeout=1.0)
        await runner.wait("job-1")
        assert done == [True]
        assert runner.active_jobs == []

    async def test_deadline_cancels_and_reports(self, runner):
        timeouts = []
        cancelled = []

        async def slow():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        async def on_timeout(job_id, timeout):
            timeouts.append((job_id, timeout))

        runner.submit("job-slow", slow(), timeout=0.05, on_timeout=on_timeout)
        await runner.wait("job-slow")
        assert timeouts == [("job-slow", 0.05)]
        assert cancelled == [True]

    async def test_cancel(self, runner):
        runner.submit("job-c", asyncio.sleep(10), timeout=30)
        assert runner.cancel("job-c") is True
        await runner.wait("job-c")
        assert runner.active_jobs == []
        assert runner.cancel("job-c") is False

    async def test_crash_is_contained(self, runner):
        async def broken():
            raise RuntimeError("boom")

        task = runner.submit("job-b", broken(), timeout=1.0)
        await runner.wait("job-b")
        assert task.done() and not task.cancelled()

    async def test_shutdown_cancels_everything(self):
        runner = GenerationTaskRunner()
        runner.submit("a", asyncio.sleep(10), timeout=30)
        runner.submit("b", asyncio.sleep(10), timeout=30)
        await runner.shutdown()
        assert runner.active_jobs == []
