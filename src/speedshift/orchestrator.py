"""Job orchestrator: validates requests, runs transform jobs, emits events.

Jobs are kept in a short-lived in-memory table so every terminal event can
be attributed through its ``jobId``. Concurrent requests that resolve to
the same output name share one in-flight job instead of racing on the
output file.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

from speedshift.events import EventBus
from speedshift.exceptions import ExecutionError, InvalidName, NotFound, PartialDeleteFailure
from speedshift.executor import JobExecutor
from speedshift.models import (
    EventType,
    FileDeleted,
    FileEntry,
    JobFailed,
    JobStarted,
    JobState,
    JobSucceeded,
    TransformJob,
    UploadReceived,
)
from speedshift.naming import derive_name, is_derived
from speedshift.planner import plan, validate_speed
from speedshift.storage import DeleteResult, FileStore

logger = logging.getLogger(__name__)

IDENTITY_SPEED = 1.0


class JobOrchestrator:
    def __init__(
        self,
        store: FileStore,
        executor: JobExecutor,
        bus: EventBus,
        job_retention_s: float = 300.0,
    ):
        self.store = store
        self.executor = executor
        self.bus = bus
        self.job_retention_s = job_retention_s

        self._jobs: Dict[str, TransformJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._inflight: Dict[str, str] = {}  # output name -> job id

    # --- uploads -------------------------------------------------------

    def notify_upload(self, entry: FileEntry) -> None:
        logger.info("Received file: %s (%d bytes)", entry.storedName, entry.size)
        self.bus.broadcast(
            EventType.UPLOAD_RECEIVED, UploadReceived(fileName=entry.storedName, size=entry.size)
        )

    # --- jobs ----------------------------------------------------------

    def prepare(self, input_name: str, speed) -> TransformJob:
        """Validate a request and build its job without starting it.

        Raises:
            InvalidSpeed: speed outside [0.25, 4.0].
            InvalidName: name escapes storage or is itself a Derived file.
            NotFound: input file is not stored.
        """
        speed = validate_speed(speed)
        steps = plan(speed)
        if not self.store.exists(input_name):
            raise NotFound(input_name)
        if is_derived(input_name):
            raise InvalidName(input_name, "Cannot change the speed of a processed file")

        if speed == IDENTITY_SPEED:
            output_name = input_name
        else:
            output_name = derive_name(input_name, speed)
        return TransformJob(
            job_id=uuid.uuid4().hex,
            input_name=input_name,
            output_name=output_name,
            requested_speed=speed,
            steps=steps,
        )

    def start(self, input_name: str, speed) -> TransformJob:
        """Validate and launch a job; returns immediately.

        Identity speed finishes synchronously without an engine pass. A
        request whose output is already being produced joins that job.
        """
        self._prune()
        job = self.prepare(input_name, speed)

        if job.output_name == job.input_name:
            self._jobs[job.job_id] = job
            self._succeed(job, IDENTITY_SPEED)
            return job

        existing_id = self._inflight.get(job.output_name)
        if existing_id is not None:
            logger.info("Joining in-flight job %s for %s", existing_id, job.output_name)
            return self._jobs[existing_id]

        self._jobs[job.job_id] = job
        self._inflight[job.output_name] = job.job_id
        self._tasks[job.job_id] = asyncio.create_task(self._execute(job))
        return job

    async def run(self, input_name: str, speed) -> TransformJob:
        """Launch a job (or join one) and wait for its terminal state."""
        job = self.start(input_name, speed)
        task = self._tasks.get(job.job_id)
        if task is not None:
            await asyncio.shield(task)
        return job

    async def _execute(self, job: TransformJob) -> None:
        job.state = JobState.RUNNING
        logger.info(
            "Processing %s at %sx (steps=%s)", job.input_name, job.requested_speed, job.steps
        )
        self.bus.broadcast(
            EventType.JOB_STARTED,
            JobStarted(jobId=job.job_id, inputName=job.input_name, requestedSpeed=job.requested_speed),
        )
        # The encoder writes a hidden partial file; listings only see the
        # output once it is moved into place.
        try:
            await self.executor.run(
                self.store.resolve(job.input_name),
                job.steps,
                self.store.partial_path(job.output_name),
            )
            self.store.commit(job.output_name)
        except ExecutionError as e:
            self.store.discard(job.output_name)
            self._fail(job, e.diagnostic)
        except Exception as e:
            logger.exception("Unexpected error in job %s", job.job_id)
            self.store.discard(job.output_name)
            self._fail(job, str(e) or type(e).__name__)
        else:
            self._succeed(job, job.requested_speed)
        finally:
            self._inflight.pop(job.output_name, None)
            self._tasks.pop(job.job_id, None)

    def _succeed(self, job: TransformJob, applied_speed: float) -> None:
        job.state = JobState.SUCCEEDED
        job.applied_speed = applied_speed
        job.finished_at = datetime.now()
        logger.info("Job %s succeeded: %s", job.job_id, job.output_name)
        self.bus.broadcast(
            EventType.JOB_SUCCEEDED,
            JobSucceeded(
                jobId=job.job_id,
                inputName=job.input_name,
                outputName=job.output_name,
                appliedSpeed=applied_speed,
            ),
        )

    def _fail(self, job: TransformJob, diagnostic: str) -> None:
        job.state = JobState.FAILED
        job.error = diagnostic
        job.finished_at = datetime.now()
        logger.error("Job %s failed for %s: %s", job.job_id, job.input_name, diagnostic)
        self.bus.broadcast(
            EventType.JOB_FAILED,
            JobFailed(
                jobId=job.job_id,
                inputName=job.input_name,
                requestedSpeed=job.requested_speed,
                diagnostic=diagnostic,
            ),
        )

    def get_job(self, job_id: str) -> Optional[TransformJob]:
        self._prune()
        return self._jobs.get(job_id)

    def active_jobs(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until every in-flight job has reached a terminal state."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()))

    def _prune(self) -> None:
        """Drop finished jobs older than the retention window."""
        cutoff = datetime.now() - timedelta(seconds=self.job_retention_s)
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.is_terminal and job.finished_at is not None and job.finished_at <= cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]

    # --- deletion ------------------------------------------------------

    def delete(self, name: str) -> DeleteResult:
        """Delete ``name`` and its Derived files, then notify clients.

        Raises:
            InvalidName, NotFound: before anything is removed.
            PartialDeleteFailure: when some removals failed.
        """
        result = self.store.delete_cascade(name)
        if result.deleted:
            self.bus.broadcast(
                EventType.FILE_DELETED, FileDeleted(fileName=name, deletedFiles=result.deleted)
            )
        if result.partial:
            raise PartialDeleteFailure(result)
        return result
