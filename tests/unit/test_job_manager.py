"""Unit tests for the job registry."""

import asyncio

import pytest

from conftest import ScriptedProvider
from dreambook.models import JobState
from dreambook.services.job_manager import JobManager


class TestJobManager:
    """Test JobManager."""

    @pytest.mark.asyncio
    async def test_job_runs_to_completion(self, make_orchestrator, make_request, sequence_store):
        orchestrator = make_orchestrator()
        manager = JobManager()

        job = manager.start(orchestrator, orchestrator.validate(make_request()))
        events = [event async for event in job.channel.events()]
        await job.task

        assert events[-1].terminal
        assert job.done
        assert job.state == JobState.COMPLETED
        assert job.result.id in sequence_store.saved

        status = manager.status(job.job_id)
        assert status["state"] == "completed"
        assert status["percent"] == 100
        assert status["sequence_id"] == job.result.id

    @pytest.mark.asyncio
    async def test_detach_stops_new_scenes(self, make_orchestrator, make_request, sequence_store):
        orchestrator = make_orchestrator([ScriptedProvider("primary", delay=0.01)])
        manager = JobManager()

        job = manager.start(orchestrator, orchestrator.validate(make_request(scenes=["one", "two"])))
        manager.detach(job.job_id)
        await job.task

        assert job.channel.detached
        assert job.cancel_event.is_set()
        assert job.state == JobState.COMPLETED
        assert job.result.scenes == []
        assert sequence_store.saved == [job.result.id]

    @pytest.mark.asyncio
    async def test_detach_after_finish_does_not_cancel(self, make_orchestrator, make_request):
        orchestrator = make_orchestrator()
        manager = JobManager()

        job = manager.start(orchestrator, orchestrator.validate(make_request()))
        events = [event async for event in job.channel.events()]
        await job.task
        manager.detach(job.job_id)

        assert events[-1].terminal
        assert not job.cancel_event.is_set()
        assert manager.status(job.job_id)["cancel_requested"] is False

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_scene(self, make_orchestrator, make_request, sequence_store):
        orchestrator = make_orchestrator()
        manager = JobManager()

        job = manager.start(orchestrator, orchestrator.validate(make_request(scenes=["one", "two", "three"])))
        assert manager.cancel(job.job_id)
        manager.detach(job.job_id)
        await job.task

        # The job was cancelled before its first scene; what exists is still saved
        assert job.result.scenes == []
        assert sequence_store.saved == [job.result.id]
        assert manager.status(job.job_id)["cancel_requested"] is True

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished(self, make_orchestrator, make_request):
        orchestrator = make_orchestrator()
        manager = JobManager()

        assert not manager.cancel("missing")

        job = manager.start(orchestrator, orchestrator.validate(make_request()))
        manager.detach(job.job_id)
        await job.task
        assert not manager.cancel(job.job_id)

    def test_status_unknown_job(self):
        assert JobManager().status("missing") is None

    @pytest.mark.asyncio
    async def test_finished_jobs_are_pruned(self, make_orchestrator, make_request):
        orchestrator = make_orchestrator()
        manager = JobManager(max_finished_jobs=1)

        first = manager.start(orchestrator, orchestrator.validate(make_request()))
        manager.detach(first.job_id)
        await first.task
        second = manager.start(orchestrator, orchestrator.validate(make_request()))
        manager.detach(second.job_id)
        await second.task
        manager.start(orchestrator, orchestrator.validate(make_request()))

        assert manager.get(first.job_id) is None
        assert manager.get(second.job_id) is not None
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_running_jobs(self, make_orchestrator, make_request):
        orchestrator = make_orchestrator([ScriptedProvider("primary", delay=0.01)])
        manager = JobManager()

        job = manager.start(orchestrator, orchestrator.validate(make_request()))
        manager.detach(job.job_id)
        await asyncio.wait_for(manager.shutdown(), timeout=5)

        assert job.done
