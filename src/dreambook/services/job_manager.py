"""Registry of running dream sequence jobs."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict

from dreambook.models import JobState, SequenceResult
from dreambook.orchestrator import PreparedRequest, SequenceOrchestrator
from dreambook.progress import ProgressChannel

logger = logging.getLogger(__name__)


@dataclass
class Job:
    """One running or finished job, its progress channel and cancel flag."""
    job_id: str
    channel: ProgressChannel
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    result: SequenceResult | None = None
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def state(self) -> JobState:
        event = self.channel.last_event
        if event is None or event.state is None:
            return JobState.VALIDATING
        return event.state

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()


class JobManager:
    """Starts jobs as background tasks and keeps them addressable by id.

    A disconnect or an explicit ``cancel`` stops further scenes from
    starting; the scene in flight finishes and the completed scenes are
    still persisted.
    """

    def __init__(self, progress_queue_size: int = 64, max_finished_jobs: int = 100):
        self.jobs: Dict[str, Job] = {}
        self.progress_queue_size = progress_queue_size
        self.max_finished_jobs = max_finished_jobs

    def start(self, orchestrator: SequenceOrchestrator, prepared: PreparedRequest) -> Job:
        job = Job(job_id=uuid.uuid4().hex, channel=ProgressChannel(self.progress_queue_size).open())
        job.task = asyncio.create_task(self._run(orchestrator, prepared, job))
        self.jobs[job.job_id] = job
        self._prune()
        logger.info("Started dream sequence job %s", job.job_id)
        return job

    async def _run(self, orchestrator: SequenceOrchestrator, prepared: PreparedRequest, job: Job) -> SequenceResult | None:
        job.result = await orchestrator.run(prepared, job.channel, job.cancel_event)
        logger.info("Job %s finished in state %s", job.job_id, job.state.value)
        return job.result

    def get(self, job_id: str) -> Job | None:
        return self.jobs.get(job_id)

    def detach(self, job_id: str) -> None:
        """The listener disconnected: stop delivering events and start no new scenes."""
        job = self.jobs.get(job_id)
        if job is None:
            return
        job.channel.detach()
        if not job.done and not job.cancel_event.is_set():
            job.cancel_event.set()
            logger.info("Listener for job %s disconnected; no further scenes will start", job_id)

    def cancel(self, job_id: str) -> bool:
        """Ask a job to stop before its next scene. Returns False for unknown or finished jobs."""
        job = self.jobs.get(job_id)
        if job is None or job.done:
            return False
        job.cancel_event.set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def status(self, job_id: str) -> Dict | None:
        job = self.jobs.get(job_id)
        if job is None:
            return None
        last = job.channel.last_event
        return {
            "job_id": job.job_id,
            "state": job.state.value,
            "percent": last.percent if last else 0,
            "message": last.message if last else "",
            "done": job.done,
            "cancel_requested": job.cancel_event.is_set(),
            "sequence_id": job.result.id if job.result else None,
            "started_at": job.started_at,
        }

    def _prune(self) -> None:
        finished = [job_id for job_id, job in self.jobs.items() if job.done]
        excess = len(finished) - self.max_finished_jobs
        for job_id in finished[:max(excess, 0)]:
            del self.jobs[job_id]

    async def shutdown(self) -> None:
        """Wait for running jobs so their results are persisted."""
        tasks = [job.task for job in self.jobs.values() if job.task is not None and not job.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
